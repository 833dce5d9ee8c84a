from __future__ import annotations

import enum
import logging
from typing import Any, Iterable, Mapping, Optional

from eventcalc.bus import SETTINGS_CHANGED, Notifier
from eventcalc.defaults import GlobalStaffDefaults, GlobalTransportDefaults
from eventcalc.errors import RemoteError, msg_of
from eventcalc.guards import clamp_markup, to_num
from eventcalc.normalize import slugify
from eventcalc.remote import RowStoreClient

logger = logging.getLogger(__name__)


class SeedState(enum.Enum):
    UNSEEDED = "unseeded"
    SEEDING = "seeding"
    RESOLVED = "resolved"


class _SettingsResolver:
    """Per-event settings layered over the global default.

    The per-event row is only written on explicit adoption or by the single
    seed attempt for the event, which is guarded by a persistent marker and an
    in-memory flag.
    """

    center = ""
    settings_table = ""
    rows_table = ""

    def __init__(self, client: RowStoreClient, event_id: Optional[str], notifier: Notifier, defaults) -> None:
        self.client = client
        self.event_id = (str(event_id).strip() or None) if event_id is not None else None
        self.notifier = notifier
        self.defaults = defaults
        self.state = SeedState.UNSEEDED
        self.error: Optional[str] = None
        self.loading = False
        self.mounted = True
        self._row: Optional[dict] = None
        self._seeding = False

    @property
    def seed_key(self) -> str:
        return self.notifier.key(f"{self.center}.seeded:{self.event_id}")

    @property
    def seeded_marker(self) -> bool:
        return bool(self.notifier.storage.get_item(self.seed_key))

    @property
    def markup_x(self) -> float:
        if self.state is SeedState.RESOLVED and self._row is not None and self._row.get("markup_x") is not None:
            return clamp_markup(self._row["markup_x"])
        if self.state is SeedState.RESOLVED:
            return 1.0
        return clamp_markup(self.defaults.markup_x)

    @property
    def settings(self) -> Optional[dict]:
        if not self.event_id:
            return None
        updated_at = self._row.get("updated_at") if self._row else None
        return {"event_id": self.event_id, "markup_x": self.markup_x, "updated_at": updated_at}

    def unmount(self) -> None:
        self.mounted = False

    def _read_settings(self) -> Optional[dict]:
        rows = self.client.select(self.settings_table, filters={"event_id": self.event_id}, limit=1)
        return rows[0] if rows else None

    def _mark_seeded(self) -> None:
        self.notifier.storage.set_item(self.seed_key, str(self.notifier.next_stamp()))
        self.notifier.bump_settings()

    def _upsert_markup(self, markup: float) -> None:
        self._row = self.client.upsert(
            self.settings_table,
            {"event_id": self.event_id, "markup_x": markup},
            on_conflict="event_id",
        )

    def _announce(self, markup: float) -> None:
        self.notifier.bump_settings()
        self.notifier.broadcast(SETTINGS_CHANGED, {"event_id": self.event_id, "center": self.center, "markup_x": markup})

    def propagate_markup_to_rows(self, value: Any) -> bool:
        if not self.event_id:
            self.error = "Missing event id"
            return False
        markup = clamp_markup(value)
        try:
            self.client.update(self.rows_table, {"markup_x": markup}, {"event_id": self.event_id})
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.error("[%s] propagate error: %s", self.settings_table, self.error)
            return False
        self.notifier.bump_settings()
        self.notifier.emit_calc_tick()
        return True


class StaffSettingsResolver(_SettingsResolver):
    """Staff markup for one event; a brand-new event is seeded on load."""

    center = "staff"
    settings_table = "event_staff_settings"
    rows_table = "event_staff_rows"

    def __init__(
        self,
        client: RowStoreClient,
        event_id: Optional[str],
        notifier: Notifier,
        defaults: GlobalStaffDefaults,
        autoload: bool = True,
    ) -> None:
        super().__init__(client, event_id, notifier, defaults)
        if autoload:
            self.refresh()

    def refresh(self) -> None:
        if not self.event_id:
            self._row = None
            self.state = SeedState.UNSEEDED
            self.error = None
            return
        self.loading = True
        self.error = None
        try:
            row = self._read_settings()
        except RemoteError as exc:
            self.loading = False
            if self.mounted:
                self.error = msg_of(exc)
                logger.error("[%s] load error: %s", self.settings_table, self.error)
            return
        if not self.mounted:
            return
        if row is not None and row.get("markup_x") is not None:
            self._row = row
            self.state = SeedState.RESOLVED
        elif not self._seeding and not self.seeded_marker:
            self._seed()
        else:
            self._row = row
            self.state = SeedState.UNSEEDED
        self.loading = False

    def _seed(self) -> None:
        self._seeding = True
        self.state = SeedState.SEEDING
        try:
            self._upsert_markup(clamp_markup(self.defaults.markup_x))
            self._mark_seeded()
            self.state = SeedState.RESOLVED
            logger.info("[%s] seeded event %s", self.settings_table, self.event_id)
        except Exception as exc:
            self.error = msg_of(exc)
            self.state = SeedState.UNSEEDED
            logger.error("[%s] seed error: %s", self.settings_table, self.error)
        finally:
            self._seeding = False

    def set_markup_x(self, value: Any) -> bool:
        if not self.event_id:
            self.error = "Missing event id"
            return False
        markup = clamp_markup(value)
        try:
            self._upsert_markup(markup)
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.error("[%s] save error: %s", self.settings_table, self.error)
            return False
        self.state = SeedState.RESOLVED
        self.error = None
        self.defaults.set_markup_x(markup)
        self._announce(markup)
        return True


class TransportSettingsResolver(_SettingsResolver):
    """Transport markup and vehicle types for one event.

    Until adopted, a new event shows the global defaults, with vehicle types
    exposed as virtual rows whose ids are ``global:<slug>``; nothing is
    written before the first explicit save.
    """

    center = "transport"
    settings_table = "event_transport_settings"
    rows_table = "event_transport_rows"
    vehicles_table = "event_transport_vehicle_types"

    def __init__(
        self,
        client: RowStoreClient,
        event_id: Optional[str],
        notifier: Notifier,
        defaults: GlobalTransportDefaults,
        autoload: bool = True,
    ) -> None:
        super().__init__(client, event_id, notifier, defaults)
        self._vehicles: list[dict] = []
        if autoload:
            self.refresh()

    @property
    def vehicle_types(self) -> list[dict]:
        if not self.event_id:
            return []
        if self.state is SeedState.RESOLVED:
            return [dict(v) for v in self._vehicles]
        return [
            {
                "id": f"global:{slugify(v.name)}",
                "event_id": self.event_id,
                "name": v.name,
                "cost_per_km": v.cost_per_km,
            }
            for v in self.defaults.vehicle_types
        ]

    def _read_vehicles(self) -> list[dict]:
        return self.client.select(
            self.vehicles_table,
            columns=["id", "event_id", "name", "cost_per_km", "created_at", "updated_at"],
            filters={"event_id": self.event_id},
            order=[("created_at", True)],
        )

    def refresh(self) -> None:
        if not self.event_id:
            self._row = None
            self._vehicles = []
            self.state = SeedState.UNSEEDED
            self.error = None
            return
        self.loading = True
        self.error = None
        try:
            row = self._read_settings()
            vehicles = self._read_vehicles()
        except RemoteError as exc:
            self.loading = False
            if self.mounted:
                self.error = msg_of(exc)
                logger.error("[%s] load error: %s", self.settings_table, self.error)
            return
        if not self.mounted:
            return
        self._row = row
        self._vehicles = vehicles
        has_settings = row is not None and row.get("markup_x") is not None
        self.state = SeedState.RESOLVED if vehicles or has_settings else SeedState.UNSEEDED
        self.loading = False

    def _insert_vehicles(self, items: Iterable[Mapping[str, Any]]) -> None:
        for item in items:
            name = str(item.get("name") or "").strip()
            if name:
                self.client.insert(
                    self.vehicles_table,
                    {"event_id": self.event_id, "name": name, "cost_per_km": to_num(item.get("cost_per_km"), 0.0)},
                )

    def adopt(self) -> bool:
        """Copy the global defaults into per-event rows; a no-op once resolved."""
        if not self.event_id:
            self.error = "Missing event id"
            return False
        if self.state is SeedState.RESOLVED:
            return True
        if self._seeding or self.seeded_marker:
            return False
        self._seeding = True
        self.state = SeedState.SEEDING
        try:
            self._upsert_markup(clamp_markup(self.defaults.markup_x))
            self._insert_vehicles(v.model_dump() for v in self.defaults.vehicle_types)
            self._vehicles = self._read_vehicles()
            self._mark_seeded()
            self.state = SeedState.RESOLVED
            logger.info("[%s] seeded event %s", self.settings_table, self.event_id)
            return True
        except Exception as exc:
            self.error = msg_of(exc)
            self.state = SeedState.UNSEEDED
            logger.error("[%s] seed error: %s", self.settings_table, self.error)
            return False
        finally:
            self._seeding = False

    def set_markup_x(self, value: Any) -> bool:
        if not self.event_id:
            self.error = "Missing event id"
            return False
        markup = clamp_markup(value)
        self.adopt()
        try:
            self._upsert_markup(markup)
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.error("[%s] save error: %s", self.settings_table, self.error)
            return False
        self.state = SeedState.RESOLVED
        self.error = None
        self.defaults.set_markup_x(markup)
        self._announce(markup)
        return True

    def replace_vehicle_types(self, items: Iterable[Mapping[str, Any]]) -> bool:
        if not self.event_id:
            self.error = "Missing event id"
            return False
        items = list(items or [])
        self.adopt()
        try:
            self.client.delete(self.vehicles_table, {"event_id": self.event_id})
            self._insert_vehicles(items)
            self._vehicles = self._read_vehicles()
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.error("[%s] replace error: %s", self.vehicles_table, self.error)
            return False
        self.state = SeedState.RESOLVED
        self.error = None
        self.notifier.bump_settings()
        self.notifier.emit_calc_tick()
        return True
