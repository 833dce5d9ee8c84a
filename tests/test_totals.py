import json
import logging

import pytest

from eventcalc.bundle_config import BundleConfig, ModifierSlotConfig
from eventcalc.defaults import GlobalStaffDefaults
from eventcalc.errors import RemoteError
from eventcalc.normalize import normalize_extra_fee_row
from eventcalc.remote import MemoryRowStoreClient
from eventcalc.resolvers import StaffSettingsResolver
from eventcalc.stores import EventDiscountStore, EventExtraFeeStore, EventHeaderStore, EventStaffStore
from eventcalc.totals import (
    TOTAL_UPDATED,
    EventTotals,
    TotalsSnapshot,
    assets_price,
    bundles_totals,
    calc_staff_cost,
    calc_staff_price,
    calc_staff_totals,
    equipment_totals,
    extra_fee_totals,
    hours_between_iso,
    js_round,
    read_snapshot,
    save_total_on_save,
    snapshot_key,
    transport_totals,
)


def test_js_round_is_half_up() -> None:
    assert js_round(2.5) == 3
    assert js_round(2.49) == 2
    assert js_round(-2.5) == -2


def test_staff_calculations() -> None:
    assert calc_staff_cost(100, 2) == 200
    assert calc_staff_cost(-1, 2) == 0
    assert calc_staff_cost("abc", 2) == 0
    assert calc_staff_price(100, 0) == 100
    assert calc_staff_totals(
        [{"cost_per_hour": 100, "hours": 2}, {"cost_per_hour": 50, "hours": 1}], 1.5
    ) == (250, 375)


def test_bundle_modifiers_are_limited() -> None:
    cfg = BundleConfig(max_modifiers=1, modifier_slots=[ModifierSlotConfig(label="Side")], markup_x=2)
    bundles = [{"type_key": "set", "rows": [{"dish_id": "d1", "qty": 2, "modifiers": ["m1", "m2"]}]}]
    cost, price = bundles_totals(bundles, {"set": cfg}, {"d1": 10, "m1": 3, "m2": 100})
    assert cost == 26
    assert price == 52


def test_equipment_totals() -> None:
    catalog = {"eq1": {"cost": 100, "vat_rate_percent": 10, "uses_vat": True, "final_price": 150}}
    cost, price = equipment_totals([{"equipment_id": "eq1", "qty": 2}], catalog)
    assert cost == pytest.approx(220)
    assert price == pytest.approx(300)

    row = {"equipment_id": "eq1", "qty": 1, "unit_cost_override": 50, "vat_override_percent": 8, "markup_x_override": 2}
    cost, price = equipment_totals([row], catalog)
    assert cost == pytest.approx(54)
    assert price == pytest.approx(108)

    cost, price = equipment_totals([{"equipment_id": "unknown", "qty": 3}], catalog)
    assert (cost, price) == (0, 0)


def test_transport_totals() -> None:
    vehicles = [{"id": "van", "name": "Van", "cost_per_km": 0.7}]
    rows = [
        {"distance_km": 10, "round_trip": True, "vehicle_key": "Van"},
        {"distance_km": 5, "round_trip": False, "cost_per_km": 1, "markup_x": 2},
    ]
    cost, price = transport_totals(rows, vehicles, 1.5)
    assert cost == pytest.approx(19)
    assert price == pytest.approx(31)


def test_assets_price_counts_included_rows_only() -> None:
    rows = [
        {"qty": 2, "unit_price_vnd": 100, "include_price": True},
        {"qty": 5, "unit_price_vnd": 100, "include_price": False},
    ]
    assert assets_price(rows) == 200


def test_extra_fee_totals() -> None:
    rows = [
        normalize_extra_fee_row({"calc_mode": True, "cost": 10, "markup_x": 1.5, "qty": 2}),
        normalize_extra_fee_row({"percent": 10, "scope": "staff", "unit_price": 0, "amount": 0}),
        normalize_extra_fee_row({"unit_price": 50, "qty": 3}),
        normalize_extra_fee_row({"amount": 70}),
    ]
    cost, price = extra_fee_totals(rows, {"staff": 1000, "total": 5000})
    assert cost == pytest.approx(20)
    assert price == pytest.approx(30 + 100 + 150 + 70)


def test_hours_between_iso() -> None:
    assert hours_between_iso("2024-05-01T18:00:00Z", "2024-05-01T22:30:00Z") == 4.5
    assert hours_between_iso("2024-05-01T22:00:00Z", "2024-05-01T02:00:00Z") == 4.0
    assert hours_between_iso(None, "2024-05-01T02:00:00Z") == 0
    assert hours_between_iso("2024-05-01T18:00:00", "2024-05-01T22:00:00Z") == 0
    assert hours_between_iso("nope", "2024-05-01T22:00:00Z") == 0


def test_snapshot_serializes_in_camel_case() -> None:
    data = TotalsSnapshot(price_after_discounts=1, margin_after_pct=5).model_dump(by_alias=True)
    assert data["priceAfterDiscounts"] == 1
    assert data["marginAfterPct"] == 5
    assert TotalsSnapshot.model_validate(data).price_after_discounts == 1


def _event(client, tab, debounce_ms=None):
    client.seed("event_headers", [{"id": "e1", "people_count": 10, "budget_per_person_vnd": 40}])
    defaults = GlobalStaffDefaults(client, tab)
    defaults.set_markup_x(1.5)
    staff = EventStaffStore(client, "e1", tab)
    staff.create({"name": "Chef", "cost_per_hour": 100, "hours": 2})
    discounts = EventDiscountStore(client, "e1", tab)
    discounts.create({"label": "Loyalty", "amount": 50})
    fees = EventExtraFeeStore(client, "e1", tab)
    fees.create({"label": "Service", "percent": 10})
    totals = EventTotals(
        tab,
        "e1",
        staff=staff,
        discounts=discounts,
        extra_fees=fees,
        header=EventHeaderStore(client, "e1", tab),
        staff_settings=StaffSettingsResolver(client, "e1", tab, defaults),
        debounce_ms=debounce_ms,
    )
    return totals, staff


def test_event_totals_writes_snapshot(client, tab) -> None:
    totals, _ = _event(client, tab)
    snap = totals.refresh()
    assert snap.staff_cost == 200
    assert snap.staff_price == pytest.approx(300)
    assert snap.extra_fee_price == pytest.approx(30)
    assert snap.grand_cost == 200
    assert snap.grand_price == pytest.approx(330)
    assert snap.discounts_total == 50
    assert snap.price_after_discounts == pytest.approx(280)
    assert snap.margin_after == pytest.approx(80)
    assert snap.margin_after_pct == pytest.approx(80 / 280 * 100)
    assert snap.budget_total == 400

    stored = json.loads(tab.storage.get_item("eventcalc.snap.totals:e1"))
    assert stored["priceAfterDiscounts"] == pytest.approx(280)
    assert read_snapshot(tab, "e1") == snap


def test_attached_totals_follow_row_changes(client, tab) -> None:
    totals, staff = _event(client, tab)
    totals.attach()
    staff.create({"name": "Waiter", "cost_per_hour": 50, "hours": 1})
    assert read_snapshot(tab, "e1").staff_cost == 250

    totals.close()
    staff.create({"name": "Runner", "cost_per_hour": 10, "hours": 1})
    assert read_snapshot(tab, "e1").staff_cost == 250


def test_attached_totals_debounce_bursts(client, tab) -> None:
    totals, staff = _event(client, tab, debounce_ms=10_000)
    refreshes = []
    compute = totals.refresh
    totals.refresh = lambda: refreshes.append(1) or compute()
    totals.attach()

    for name in ("Waiter", "Runner", "Porter"):
        staff.create({"name": name, "cost_per_hour": 10, "hours": 1})
    assert refreshes == []
    assert totals.debouncer.pending

    totals.debouncer.flush()
    assert len(refreshes) == 1
    assert read_snapshot(tab, "e1").staff_cost == 230

    staff.create({"name": "Driver", "cost_per_hour": 10, "hours": 1})
    totals.close()
    assert not totals.debouncer.pending
    assert len(refreshes) == 1


def test_no_snapshot_while_loading(client, tab) -> None:
    assert EventTotals(tab, None).loading
    totals, staff = _event(client, tab)
    staff.loading = True
    totals.refresh()
    assert tab.storage.get_item(snapshot_key(tab, "e1")) is None


def test_save_pushes_rounded_total(client, tab) -> None:
    totals, _ = _event(client, tab)
    totals.refresh()
    updates = []
    tab.page.add_listener(TOTAL_UPDATED, updates.append)
    off = save_total_on_save(tab, client, "e1")

    tab.mark_saved("e1")
    assert client.tables["event_totals"][0]["total_vnd"] == 280
    assert client.calls.count(("rpc", "event_totals_set_total")) == 1
    assert updates == [{"event_id": "e1", "total": 280}]

    off()
    tab.mark_saved("e1")
    assert client.calls.count(("rpc", "event_totals_set_total")) == 1


def test_save_skips_non_positive_total(client, tab) -> None:
    tab.storage.set_item(
        snapshot_key(tab, "e2"),
        TotalsSnapshot(price_after_discounts=0.4).model_dump_json(by_alias=True),
    )
    save_total_on_save(tab, client, "e2")
    tab.mark_saved("e2")
    assert ("rpc", "event_totals_set_total") not in client.calls


def test_save_logs_rpc_failure(tab, caplog) -> None:
    def failing(_client, _params):
        raise RemoteError("rpc unavailable")

    client = MemoryRowStoreClient(procedures={"event_totals_set_total": failing})
    tab.storage.set_item(
        snapshot_key(tab, "e3"),
        TotalsSnapshot(price_after_discounts=99.5).model_dump_json(by_alias=True),
    )
    updates = []
    tab.page.add_listener(TOTAL_UPDATED, updates.append)
    save_total_on_save(tab, client, "e3")
    with caplog.at_level(logging.ERROR, logger="eventcalc.totals"):
        tab.mark_saved("e3")
    assert "rpc unavailable" in caplog.text
    assert updates == []


def test_unreadable_snapshot_is_ignored(tab) -> None:
    tab.storage.set_item(snapshot_key(tab, "e4"), "not json")
    assert read_snapshot(tab, "e4") is None
