from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from eventcalc.bus import Notifier
from eventcalc.config import settings
from eventcalc.errors import RemoteError, msg_of
from eventcalc.guards import clamp_markup, to_num
from eventcalc.remote import RowStoreClient
from eventcalc.storage import StorageEvent

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
ROW_KEY = "global"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _ts_ms(value: Any) -> int:
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str) and value:
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return _now_ms()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return _now_ms()


class VehicleDefault(BaseModel):
    id: str
    name: str
    cost_per_km: float = 0.0


class StaffDefaultsSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    markup_x: float = Field(1.0, alias="markupX")
    updated_at: int = Field(default_factory=_now_ms, alias="updatedAt")
    schema_version: int = Field(SCHEMA_VERSION, alias="__v")


class TransportDefaultsSnapshot(StaffDefaultsSnapshot):
    vehicle_types: list[VehicleDefault] = Field(default_factory=list, alias="vehicleTypes")


def clean_vehicle_types(items: Optional[Iterable[Any]]) -> list[VehicleDefault]:
    """Trim names, drop unnamed entries and give every entry an id."""
    cleaned = []
    for item in items or []:
        if isinstance(item, BaseModel):
            item = item.model_dump()
        if not isinstance(item, Mapping):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        cleaned.append(
            VehicleDefault(
                id=str(item.get("id") or "").strip() or str(uuid4()),
                name=name,
                cost_per_km=to_num(item.get("cost_per_km"), 0.0),
            )
        )
    return cleaned


def factory_staff_defaults() -> StaffDefaultsSnapshot:
    return StaffDefaultsSnapshot(markup_x=settings.factory_markup_x)


def factory_transport_defaults() -> TransportDefaultsSnapshot:
    return TransportDefaultsSnapshot(
        markup_x=settings.factory_markup_x,
        vehicle_types=[
            VehicleDefault(id="van", name="Van", cost_per_km=0.7),
            VehicleDefault(id="truck", name="Truck", cost_per_km=1.2),
        ],
    )


class _GlobalDefaults:
    """Shared ``global`` settings row, mirrored into local storage.

    The remote row wins when it can be read; otherwise the mirror, otherwise
    the factory values. Every local change rewrites the whole mirror and
    bumps the settings key, and instances in other tabs reload their mirror
    when they see that bump.
    """

    table_name = ""
    mirror_suffix = ""
    snapshot_cls: type[StaffDefaultsSnapshot] = StaffDefaultsSnapshot

    def __init__(self, client: RowStoreClient, notifier: Notifier, autoload: bool = True) -> None:
        self.client = client
        self.notifier = notifier
        self.storage = notifier.storage
        self.error: Optional[str] = None
        self.loading = False
        self.defaults = self._read_mirror()
        self._off_storage: Optional[Callable[[], None]] = self.storage.add_listener(self._on_storage)
        if autoload:
            self.refresh()

    @property
    def mirror_key(self) -> str:
        return self.notifier.key(self.mirror_suffix)

    @property
    def markup_x(self) -> float:
        return self.defaults.markup_x

    def factory(self) -> StaffDefaultsSnapshot:
        raise NotImplementedError

    def _from_remote(self, row: Mapping[str, Any]) -> StaffDefaultsSnapshot:
        raise NotImplementedError

    def _normalize(self, snapshot: StaffDefaultsSnapshot) -> StaffDefaultsSnapshot:
        return snapshot.model_copy(
            update={
                "markup_x": clamp_markup(snapshot.markup_x),
                "updated_at": _now_ms(),
                "schema_version": SCHEMA_VERSION,
            }
        )

    def _read_mirror(self) -> StaffDefaultsSnapshot:
        raw = self.storage.get_item(self.mirror_key)
        if not raw:
            return self.factory()
        try:
            data = json.loads(raw)
            snapshot = self.snapshot_cls.model_validate(data if isinstance(data, dict) else {})
        except (ValueError, ValidationError):
            logger.warning("ignoring unreadable mirror %s", self.mirror_key)
            return self.factory()
        return snapshot.model_copy(update={"markup_x": clamp_markup(snapshot.markup_x)})

    def _write_mirror(self, snapshot: StaffDefaultsSnapshot) -> StaffDefaultsSnapshot:
        normalized = self._normalize(snapshot)
        self.storage.set_item(self.mirror_key, normalized.model_dump_json(by_alias=True))
        self.notifier.bump_settings()
        self.defaults = normalized
        return normalized

    def _read_remote(self) -> Optional[StaffDefaultsSnapshot]:
        try:
            rows = self.client.select(
                self.table_name,
                filters={"key": ROW_KEY},
                order=[("updated_at", False)],
                limit=1,
            )
        except RemoteError as exc:
            logger.warning("[%s] read error: %s", self.table_name, msg_of(exc))
            return None
        return self._from_remote(rows[0]) if rows else None

    def _on_storage(self, event: StorageEvent) -> None:
        if event.key == self.notifier.settings_bump_key:
            fresh = self._read_mirror()
            if fresh.model_dump() != self.defaults.model_dump():
                self.defaults = fresh

    def refresh(self) -> None:
        self.loading = True
        self.error = None
        remote = self._read_remote()
        self._write_mirror(remote if remote is not None else self._read_mirror())
        self.loading = False

    def reset_to_factory(self) -> None:
        self._write_mirror(self.factory())

    def close(self) -> None:
        if self._off_storage is not None:
            self._off_storage()
            self._off_storage = None


class GlobalStaffDefaults(_GlobalDefaults):
    table_name = "staff_defaults"
    mirror_suffix = "global.staff.defaults"
    snapshot_cls = StaffDefaultsSnapshot

    def factory(self) -> StaffDefaultsSnapshot:
        return factory_staff_defaults()

    def _from_remote(self, row: Mapping[str, Any]) -> StaffDefaultsSnapshot:
        return StaffDefaultsSnapshot(
            markup_x=clamp_markup(row.get("markup_x")),
            updated_at=_ts_ms(row.get("updated_at")),
        )

    def set_markup_x(self, value: Any) -> bool:
        """Store a new global staff markup locally and on the shared row."""
        markup = clamp_markup(value)
        self._write_mirror(self.defaults.model_copy(update={"markup_x": markup}))
        try:
            self.client.upsert(
                self.table_name,
                {"key": ROW_KEY, "markup_x": markup, "updated_at": _now()},
                on_conflict="key",
            )
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.warning("[%s] write error: %s", self.table_name, self.error)
            return False
        return True


class GlobalTransportDefaults(_GlobalDefaults):
    table_name = "transport_defaults"
    mirror_suffix = "global.transport.defaults"
    snapshot_cls = TransportDefaultsSnapshot

    defaults: TransportDefaultsSnapshot

    def factory(self) -> TransportDefaultsSnapshot:
        return factory_transport_defaults()

    @property
    def vehicle_types(self) -> list[VehicleDefault]:
        return list(self.defaults.vehicle_types)

    def _normalize(self, snapshot: StaffDefaultsSnapshot) -> StaffDefaultsSnapshot:
        normalized = super()._normalize(snapshot)
        return normalized.model_copy(update={"vehicle_types": clean_vehicle_types(normalized.vehicle_types)})

    def _from_remote(self, row: Mapping[str, Any]) -> TransportDefaultsSnapshot:
        items = row.get("vehicle_types")
        return TransportDefaultsSnapshot(
            markup_x=clamp_markup(row.get("markup_x")),
            vehicle_types=clean_vehicle_types(items if isinstance(items, list) else []),
            updated_at=_ts_ms(row.get("updated_at")),
        )

    def _mutate(self, **changes: Any) -> None:
        self._write_mirror(self.defaults.model_copy(update=changes))

    def set_markup_x(self, value: Any) -> bool:
        self._mutate(markup_x=clamp_markup(value))
        return True

    def replace_vehicle_types(self, items: Iterable[Any]) -> None:
        self._mutate(vehicle_types=clean_vehicle_types(items))

    def add_vehicle_type(self, name: str, cost_per_km: Any) -> Optional[VehicleDefault]:
        cleaned = clean_vehicle_types([{"name": name, "cost_per_km": cost_per_km}])
        if not cleaned:
            return None
        self._mutate(vehicle_types=self.vehicle_types + cleaned)
        return cleaned[0]

    def update_vehicle_type(self, vehicle_id: str, patch: Mapping[str, Any]) -> None:
        items = []
        for item in self.vehicle_types:
            if item.id == vehicle_id:
                update: dict[str, Any] = {}
                name = patch.get("name")
                if isinstance(name, str) and name.strip():
                    update["name"] = name.strip()
                if patch.get("cost_per_km") is not None:
                    update["cost_per_km"] = to_num(patch["cost_per_km"], item.cost_per_km)
                item = item.model_copy(update=update)
            items.append(item)
        self._mutate(vehicle_types=items)

    def remove_vehicle_type(self, vehicle_id: str) -> None:
        self._mutate(vehicle_types=[v for v in self.vehicle_types if v.id != vehicle_id])

    def save_all(self, markup_x: Any = None, vehicle_types: Optional[Iterable[Any]] = None) -> bool:
        """Write the shared row (update, then insert if missing) and adopt its echo."""
        self.error = None
        payload = {
            "markup_x": clamp_markup(self.markup_x if markup_x is None else markup_x),
            "vehicle_types": [
                v.model_dump() for v in clean_vehicle_types(self.vehicle_types if vehicle_types is None else vehicle_types)
            ],
            "updated_at": _now(),
        }
        try:
            echo = self.client.update(self.table_name, payload, {"key": ROW_KEY})
            row = echo[0] if echo else self.client.insert(self.table_name, {"key": ROW_KEY, **payload})
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.error("[%s] save error: %s", self.table_name, self.error)
            return False
        self._write_mirror(self._from_remote(row))
        return True
