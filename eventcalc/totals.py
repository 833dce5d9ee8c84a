from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from eventcalc.bundle_config import BundleConfig, effective_limit, get_markup_x
from eventcalc.bus import EVENTINFO_CHANGED, SAVED, TOTALS_EVENTS, Debouncer, Notifier
from eventcalc.errors import RemoteError, msg_of
from eventcalc.guards import clamp_pos, js_round, to_num
from eventcalc.normalize import gross_unit_cost
from eventcalc.remote import RowStoreClient

logger = logging.getLogger(__name__)

TOTAL_UPDATED = "event_total:updated"


def _finite(value: Any) -> float:
    n = to_num(value, 0.0)
    return n if math.isfinite(n) else 0.0


def _markup(value: Any) -> float:
    n = to_num(value, 1.0)
    return n if n > 0 else 1.0


# staff

def calc_staff_cost(cost_per_hour: Any, hours: Any) -> float:
    c, h = _finite(cost_per_hour), _finite(hours)
    if c < 0 or h < 0:
        return 0.0
    return c * h


def calc_staff_price(cost: Any, markup_x: Any) -> float:
    base = _finite(cost)
    return max(base, 0.0) * _markup(markup_x)


def calc_staff_totals(rows: Iterable[Mapping[str, Any]], markup_x: Any) -> tuple[float, float]:
    """(cost, price) for a set of staff rows under one card markup; no rounding."""
    cost = sum(calc_staff_cost(r.get("cost_per_hour"), r.get("hours")) for r in rows)
    return cost, calc_staff_price(cost, markup_x)


# other centers

def bundles_totals(
    bundles: Iterable[Mapping[str, Any]],
    configs: Mapping[str, BundleConfig],
    item_costs: Mapping[str, Any],
) -> tuple[float, float]:
    cost = price = 0.0
    for bundle in bundles:
        cfg = configs.get(bundle.get("type_key") or "")
        limit = effective_limit(cfg)
        markup = get_markup_x(cfg)
        for row in bundle.get("rows") or []:
            qty = clamp_pos(to_num(row.get("qty"), 0.0))
            ids = [row.get("dish_id")] + list(row.get("modifiers") or [])[:limit]
            for item_id in ids:
                if not item_id:
                    continue
                unit = _finite(item_costs.get(item_id))
                cost += unit * qty
                price += unit * markup * qty
    return cost, price


def equipment_totals(
    rows: Iterable[Mapping[str, Any]],
    catalog: Mapping[str, Mapping[str, Any]],
) -> tuple[float, float]:
    """Override or catalog unit cost, grossed up for VAT, times qty.

    Price uses the row's markup override when set, else the catalog final
    price, else the unit cost.
    """
    cost = price = 0.0
    for row in rows:
        qty = _finite(row.get("qty"))
        item = catalog.get(row.get("equipment_id") or "") or {}
        override = row.get("unit_cost_override")
        vat_override = row.get("vat_override_percent")
        net = _finite(override) if override is not None else _finite(item.get("cost"))
        if vat_override is not None:
            unit_cost = gross_unit_cost(net, vat_override, True)
        else:
            unit_cost = gross_unit_cost(
                net,
                item.get("vat_rate_percent"),
                bool(item.get("uses_vat")),
                item.get("cost_vat_inclusive") if override is None else None,
            )
        markup = row.get("markup_x_override")
        if markup is not None:
            unit_price = unit_cost * _markup(markup)
        else:
            unit_price = _finite(item.get("final_price")) or unit_cost
        cost += qty * unit_cost
        price += qty * unit_price
    return cost, price


def _cost_per_km(vehicle_types: list[Mapping[str, Any]], vehicle_key: Optional[str]) -> Optional[float]:
    if not vehicle_key:
        return None
    for field in ("id", "name"):
        for vt in vehicle_types:
            if vt.get(field) == vehicle_key:
                return _finite(vt.get("cost_per_km"))
    return None


def transport_totals(
    rows: Iterable[Mapping[str, Any]],
    vehicle_types: Iterable[Mapping[str, Any]],
    settings_markup: Any = 1.0,
) -> tuple[float, float]:
    vts = list(vehicle_types)
    default_markup = _markup(settings_markup)
    cost = price = 0.0
    for row in rows:
        km = _finite(row.get("distance_km")) * (2 if row.get("round_trip") else 1)
        cpk = row.get("cost_per_km")
        if cpk is None:
            cpk = _cost_per_km(vts, row.get("vehicle_key"))
        row_cost = km * _finite(cpk)
        markup = row.get("markup_x")
        cost += row_cost
        price += row_cost * (default_markup if markup is None else _markup(markup))
    return cost, price


def assets_price(rows: Iterable[Mapping[str, Any]]) -> float:
    return sum(
        _finite(r.get("qty")) * _finite(r.get("unit_price_vnd"))
        for r in rows
        if r.get("include_price")
    )


def _is_percent_fee(row: Mapping[str, Any]) -> bool:
    return (
        row.get("percent_norm") is not None
        and not row.get("calc_mode")
        and not _finite(row.get("unit_price"))
        and not _finite(row.get("amount"))
    )


def extra_fee_totals(
    rows: Iterable[Mapping[str, Any]],
    subtotals: Optional[Mapping[str, float]] = None,
) -> tuple[float, float]:
    """Calculated, manual and percentage fees.

    A percentage fee is ``percent_norm`` of the subtotal named by its
    ``scope_norm``; ``subtotals`` holds the price of each center plus
    ``total`` before any fee.
    """
    subtotals = subtotals or {}
    cost = price = 0.0
    for row in rows:
        qty = _finite(row.get("qty") if row.get("qty") is not None else 1) or 1
        if row.get("calc_mode"):
            c = _finite(row.get("cost"))
            if c > 0:
                cost += qty * c
                price += qty * c * _markup(row.get("markup_x"))
            else:
                price += _finite(row.get("amount"))
        elif _is_percent_fee(row):
            price += row["percent_norm"] * subtotals.get(row.get("scope_norm") or "total", 0.0)
        elif row.get("unit_price") is not None:
            price += qty * _finite(row.get("unit_price"))
        else:
            price += _finite(row.get("amount"))
    return cost, price


def discounts_total(rows: Iterable[Mapping[str, Any]]) -> float:
    return sum(_finite(r.get("amount")) for r in rows)


def hours_between_iso(start: Optional[str], end: Optional[str]) -> float:
    if not start or not end:
        return 0.0
    try:
        s = datetime.fromisoformat(str(start).replace("Z", "+00:00"))
        e = datetime.fromisoformat(str(end).replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    try:
        hours = (e - s).total_seconds() / 3600
    except TypeError:
        return 0.0
    if hours < 0:
        hours += 24
    return round(max(0.0, hours), 2)


class TotalsSnapshot(BaseModel):
    """Stable per-event totals, stored as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bundles_cost: float = 0.0
    bundles_price: float = 0.0
    equipment_cost: float = 0.0
    equipment_price: float = 0.0
    staff_cost: float = 0.0
    staff_price: float = 0.0
    transport_cost: float = 0.0
    transport_price: float = 0.0
    assets_price: float = 0.0
    extra_fee_cost: float = 0.0
    extra_fee_price: float = 0.0
    grand_cost: float = 0.0
    grand_price: float = 0.0
    discounts_total: float = 0.0
    price_after_discounts: float = 0.0
    margin_after: float = 0.0
    margin_after_pct: float = 0.0
    cost_pct_after: float = 0.0
    people_count: float = 0.0
    budget_total: float = 0.0
    budget_per_person: float = 0.0
    service_hours: float = 0.0


def snapshot_key(notifier: Notifier, event_id: str) -> str:
    return notifier.key(f"snap.totals:{event_id}")


def read_snapshot(notifier: Notifier, event_id: Optional[str]) -> Optional[TotalsSnapshot]:
    if not event_id:
        return None
    raw = notifier.storage.get_item(snapshot_key(notifier, event_id))
    if not raw:
        return None
    try:
        return TotalsSnapshot.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        logger.warning("ignoring unreadable totals snapshot for %s", event_id)
        return None


class EventTotals:
    """Per-center and grand totals of one event, computed from live stores.

    Every source is optional; a missing one contributes zero. The snapshot is
    only written while no source is loading, so a reader never sees a partial
    total.
    """

    def __init__(
        self,
        notifier: Notifier,
        event_id: Optional[str],
        *,
        bundles=None,
        equipment=None,
        staff=None,
        transport=None,
        assets=None,
        extra_fees=None,
        discounts=None,
        header=None,
        staff_settings=None,
        transport_settings=None,
        bundle_configs: Optional[Mapping[str, BundleConfig]] = None,
        item_costs: Optional[Mapping[str, Any]] = None,
        equipment_catalog: Optional[Mapping[str, Mapping[str, Any]]] = None,
        debounce_ms: Optional[int] = None,
    ) -> None:
        self.notifier = notifier
        self.event_id = event_id or None
        self.bundles = bundles
        self.equipment = equipment
        self.staff = staff
        self.transport = transport
        self.assets = assets
        self.extra_fees = extra_fees
        self.discounts = discounts
        self.header = header
        self.staff_settings = staff_settings
        self.transport_settings = transport_settings
        self.bundle_configs = dict(bundle_configs or getattr(bundles, "configs", None) or {})
        self.item_costs = dict(item_costs or {})
        self.equipment_catalog = dict(equipment_catalog or {})
        self.snapshot: Optional[TotalsSnapshot] = read_snapshot(notifier, self.event_id)
        self._unsubscribers: list[Callable[[], None]] = []
        self.debouncer = Debouncer(debounce_ms)

    @property
    def sources(self) -> list:
        return [
            s
            for s in (
                self.bundles,
                self.equipment,
                self.staff,
                self.transport,
                self.assets,
                self.extra_fees,
                self.discounts,
                self.header,
                self.staff_settings,
                self.transport_settings,
            )
            if s is not None
        ]

    @property
    def loading(self) -> bool:
        return not self.event_id or any(getattr(s, "loading", False) for s in self.sources)

    @staticmethod
    def _rows(store) -> list[dict]:
        return store.list() if store is not None else []

    def _people_and_budget(self) -> tuple[float, float, float, float]:
        header = (self.header.header if self.header is not None else None) or {}
        people = _finite(header.get("people_count"))
        per_person = _finite(header.get("budget_per_person_vnd"))
        total = header.get("budget_total_vnd")
        budget_total = _finite(total) if total is not None else people * per_person
        hours = hours_between_iso(header.get("start_at"), header.get("end_at"))
        return people, per_person, budget_total, hours

    def compute(self) -> TotalsSnapshot:
        bundles_cost, bundles_price = bundles_totals(self._rows(self.bundles), self.bundle_configs, self.item_costs)
        equipment_cost, equipment_price = equipment_totals(self._rows(self.equipment), self.equipment_catalog)

        staff_markup = self.staff_settings.markup_x if self.staff_settings is not None else 1.0
        staff_cost, staff_price = calc_staff_totals(self._rows(self.staff), staff_markup)

        if self.transport_settings is not None:
            vehicle_types = self.transport_settings.vehicle_types
            transport_markup = self.transport_settings.markup_x
        else:
            vehicle_types, transport_markup = [], 1.0
        transport_cost, transport_price = transport_totals(self._rows(self.transport), vehicle_types, transport_markup)

        asset_total = assets_price(self._rows(self.assets))
        subtotals = {
            "bundles": bundles_price,
            "equipment": equipment_price,
            "staff": staff_price,
            "transport": transport_price,
            "assets": asset_total,
        }
        subtotals["total"] = sum(subtotals.values())
        fee_cost, fee_price = extra_fee_totals(self._rows(self.extra_fees), subtotals)
        discount = discounts_total(self._rows(self.discounts))

        grand_cost = bundles_cost + equipment_cost + staff_cost + transport_cost + fee_cost
        grand_price = subtotals["total"] + fee_price
        after = grand_price - discount
        margin = after - grand_cost
        people, per_person, budget_total, hours = self._people_and_budget()
        return TotalsSnapshot(
            bundles_cost=bundles_cost,
            bundles_price=bundles_price,
            equipment_cost=equipment_cost,
            equipment_price=equipment_price,
            staff_cost=staff_cost,
            staff_price=staff_price,
            transport_cost=transport_cost,
            transport_price=transport_price,
            assets_price=asset_total,
            extra_fee_cost=fee_cost,
            extra_fee_price=fee_price,
            grand_cost=grand_cost,
            grand_price=grand_price,
            discounts_total=discount,
            price_after_discounts=after,
            margin_after=margin,
            margin_after_pct=(margin / after) * 100 if after > 0 else 0.0,
            cost_pct_after=(grand_cost / after) * 100 if after > 0 else 0.0,
            people_count=people,
            budget_total=budget_total,
            budget_per_person=per_person,
            service_hours=hours,
        )

    def refresh(self) -> TotalsSnapshot:
        """Recompute; persist the snapshot only when every source has settled."""
        current = self.compute()
        if self.loading:
            return self.snapshot or current
        self.snapshot = current
        self.notifier.storage.set_item(
            snapshot_key(self.notifier, self.event_id),
            current.model_dump_json(by_alias=True),
        )
        return current

    def attach(self) -> None:
        def on_change(_detail: Any = None) -> None:
            self.debouncer.schedule(lambda: self.refresh())

        self._unsubscribers.append(self.notifier.on_calc_tick(on_change))
        for name in TOTALS_EVENTS + (EVENTINFO_CHANGED,):
            self._unsubscribers.append(self.notifier.page.add_listener(name, on_change))

    def close(self) -> None:
        for off in self._unsubscribers:
            off()
        self._unsubscribers = []
        self.debouncer.cancel()


def save_total_on_save(notifier: Notifier, client: RowStoreClient, event_id: Optional[str]) -> Callable[[], None]:
    """Push the stable snapshot total to ``event_totals`` on every save.

    Nothing is written without a snapshot or when the rounded price after
    discounts is not positive. Returns the unsubscribe callable.
    """
    if not event_id:
        return lambda: None

    def handler(_detail: Any = None) -> None:
        snap = read_snapshot(notifier, event_id)
        if snap is None or not math.isfinite(snap.price_after_discounts):
            return
        total = js_round(snap.price_after_discounts)
        if total <= 0:
            return
        try:
            client.rpc("event_totals_set_total", {"p_event_id": event_id, "p_total": total})
        except RemoteError as exc:
            logger.error("[event_totals_set_total] RPC error: %s", msg_of(exc))
            return
        notifier.broadcast(TOTAL_UPDATED, {"event_id": event_id, "total": total})

    return notifier.page.add_listener(SAVED, handler)
