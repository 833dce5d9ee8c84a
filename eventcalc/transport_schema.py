from __future__ import annotations

import enum
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, TypeVar

from eventcalc.errors import SchemaProbeError, is_invalid_integer, is_missing_column, msg_of
from eventcalc.guards import js_round
from eventcalc.remote import AbortHandle, Filters, Order, RowStoreClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_TABLE = "event_transport_rows"

FIXED_COLUMNS = (
    "id",
    "event_id",
    "vehicle_key",
    "distance_km",
    "eta_minutes",
    "cost_per_km",
    "markup_x",
    "notes",
    "created_at",
    "updated_at",
)

NUMERIC_FIELDS = ("distance_km", "eta_minutes", "cost_per_km", "markup_x")


@dataclass(frozen=True)
class ColumnMap:
    from_col: str
    to_col: str
    round_trip_col: str

    def columns(self) -> list[str]:
        return list(FIXED_COLUMNS) + [self.from_col, self.to_col, self.round_trip_col]


CANDIDATES = (
    ColumnMap("from_text", "to_text", "round_trip"),
    ColumnMap("from_address", "to_address", "roundtrip"),
    ColumnMap("from", "to", "round_trip"),
    ColumnMap("from_label", "to_label", "round_trip"),
)


class ProbeState(enum.Enum):
    UNPROBED = "unprobed"
    PROBING = "probing"
    RESOLVED = "resolved"


def _coerce_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return value
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ColumnProber:
    """Detects which origin/destination/round-trip columns a table exposes.

    The candidates are tried in order; the first select that does not fail on
    a missing column wins and is kept for the life of the prober. Integer
    columns found by a failed write are remembered so later payloads are
    rounded up front.
    """

    def __init__(self, table_name: str = TRANSPORT_TABLE) -> None:
        self.table_name = table_name
        self.state = ProbeState.UNPROBED
        self.index: Optional[int] = None
        self.mapping: Optional[ColumnMap] = None
        self.integer_fields: set[str] = {"eta_minutes"}
        self._lock = threading.RLock()

    def select(
        self,
        client: RowStoreClient,
        filters: Optional[Filters] = None,
        order: Optional[Order] = None,
        abort: Optional[AbortHandle] = None,
    ) -> list[dict]:
        order = order or [("created_at", True)]
        with self._lock:
            if self.mapping is not None:
                rows = client.select(self.table_name, self.mapping.columns(), filters, order, abort=abort)
                return [self.to_canonical(r) for r in rows]
            self.state = ProbeState.PROBING
            try:
                for index, candidate in enumerate(CANDIDATES):
                    self.index = index
                    try:
                        rows = client.select(self.table_name, candidate.columns(), filters, order, abort=abort)
                    except Exception as exc:
                        if is_missing_column(exc):
                            logger.debug("%s: candidate %s rejected: %s", self.table_name, candidate, msg_of(exc))
                            continue
                        raise
                    self.mapping = candidate
                    self.state = ProbeState.RESOLVED
                    logger.info("%s: using columns %s/%s/%s", self.table_name, candidate.from_col, candidate.to_col, candidate.round_trip_col)
                    return [self.to_canonical(r) for r in rows]
            finally:
                if self.state is ProbeState.PROBING:
                    self.state = ProbeState.UNPROBED
                    self.index = None
            raise SchemaProbeError(f"Unable to detect {self.table_name} columns (from/to/round_trip).")

    def ensure(self, client: RowStoreClient, event_id: str) -> ColumnMap:
        if self.mapping is None:
            self.select(client, filters={"event_id": event_id})
        if self.mapping is None:
            raise SchemaProbeError(f"Unable to detect {self.table_name} columns (from/to/round_trip).")
        return self.mapping

    def to_canonical(self, raw: Mapping[str, Any]) -> dict:
        mapping = self.mapping or CANDIDATES[0]
        row = {name: raw.get(name) for name in FIXED_COLUMNS}
        row["from_text"] = raw.get(mapping.from_col)
        row["to_text"] = raw.get(mapping.to_col)
        row["round_trip"] = raw.get(mapping.round_trip_col)
        return row

    def to_db_patch(self, patch: Mapping[str, Any]) -> dict:
        out: dict[str, Any] = {}
        for name in ("event_id", "vehicle_key", "notes"):
            if name in patch:
                out[name] = patch[name]
        for name in NUMERIC_FIELDS:
            if name not in patch:
                continue
            value = _coerce_number(patch[name])
            if _is_number(value) and name in self.integer_fields:
                value = js_round(value)
            out[name] = value
        if self.mapping is not None:
            if "from_text" in patch:
                out[self.mapping.from_col] = patch["from_text"]
            if "to_text" in patch:
                out[self.mapping.to_col] = patch["to_text"]
            if "round_trip" in patch:
                out[self.mapping.round_trip_col] = patch["round_trip"]
        return out

    def write_with_retry(self, write: Callable[[dict], T], payload: dict) -> T:
        """Run ``write``; on an integer-type rejection round and retry exactly once."""
        try:
            return write(payload)
        except Exception as exc:
            if not is_invalid_integer(exc):
                raise
            retried = dict(payload)
            adapted = False
            for name in ("distance_km", "eta_minutes"):
                value = retried.get(name)
                if _is_number(value) and not float(value).is_integer():
                    retried[name] = js_round(value)
                    self.integer_fields.add(name)
                    adapted = True
            if not adapted:
                raise
            logger.info("%s: integer column detected, retrying with %s", self.table_name, sorted(self.integer_fields))
            return write(retried)


_registry: dict[str, ColumnProber] = {}
_registry_lock = threading.Lock()


def prober_for(table_name: str = TRANSPORT_TABLE) -> ColumnProber:
    with _registry_lock:
        if table_name not in _registry:
            _registry[table_name] = ColumnProber(table_name)
        return _registry[table_name]


def reset_probes() -> None:
    with _registry_lock:
        _registry.clear()
