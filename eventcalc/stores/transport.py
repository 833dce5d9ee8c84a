from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from eventcalc.errors import is_abort_like, msg_of
from eventcalc.guards import to_null_int, to_null_num
from eventcalc.remote import AbortHandle, RowStoreClient
from eventcalc.stores.base import RowStore
from eventcalc.transport_schema import TRANSPORT_TABLE, prober_for

logger = logging.getLogger(__name__)

EDITABLE = (
    "from_text",
    "to_text",
    "round_trip",
    "vehicle_key",
    "distance_km",
    "eta_minutes",
    "cost_per_km",
    "markup_x",
    "notes",
)


class EventTransportStore(RowStore):
    """Transport legs, read and written through the column prober.

    Callers always see ``from_text``/``to_text``/``round_trip`` whatever the
    table calls them. A new read aborts the one in flight.
    """

    table_name = TRANSPORT_TABLE
    totals_event = "transport:totals"
    remote_order = [("created_at", True)]

    def __init__(self, client: RowStoreClient, event_id: Optional[str], notifier=None, autoload: bool = True) -> None:
        self.prober = prober_for(self.table_name)
        self._abort: Optional[AbortHandle] = None
        super().__init__(client, event_id, notifier, autoload)

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        round_trip = raw.get("round_trip")
        return {
            "id": str(raw.get("id")),
            "event_id": str(raw.get("event_id")),
            "from_text": raw.get("from_text"),
            "to_text": raw.get("to_text"),
            "vehicle_key": raw.get("vehicle_key"),
            "round_trip": None if round_trip is None else bool(round_trip),
            "distance_km": to_null_num(raw.get("distance_km")),
            "eta_minutes": to_null_int(raw.get("eta_minutes")),
            "cost_per_km": to_null_num(raw.get("cost_per_km")),
            "markup_x": to_null_num(raw.get("markup_x")),
            "notes": raw.get("notes"),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
        }

    def _reset_abort(self) -> AbortHandle:
        if self._abort is not None:
            self._abort.abort()
        self._abort = AbortHandle()
        return self._abort

    def unmount(self) -> None:
        if self._abort is not None:
            self._abort.abort()
        super().unmount()

    def _fail(self, op: str, exc: BaseException) -> None:
        if is_abort_like(exc):
            logger.debug("[%s] %s aborted: %s", self.name, op, msg_of(exc))
            return
        super()._fail(op, exc)

    def _fetch(self) -> list[dict]:
        handle = self._reset_abort()
        return self.prober.select(
            self.client,
            filters={"event_id": self.event_id},
            order=self.remote_order,
            abort=handle,
        )

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        round_trip = patch.get("round_trip")
        return {
            "from_text": patch.get("from_text"),
            "to_text": patch.get("to_text"),
            "vehicle_key": patch.get("vehicle_key"),
            "round_trip": round_trip if isinstance(round_trip, bool) else True,
            "distance_km": patch.get("distance_km"),
            "eta_minutes": patch.get("eta_minutes"),
            "cost_per_km": patch.get("cost_per_km"),
            "markup_x": patch.get("markup_x", 1.0),
            "notes": patch.get("notes"),
        }

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        return {k: v for k, v in patch.items() if k in EDITABLE}

    def _insert(self, payload: Mapping[str, Any]) -> dict:
        self.prober.ensure(self.client, self.event_id)
        db_payload = self.prober.to_db_patch(payload)
        echo = self.prober.write_with_retry(lambda p: self.client.insert(self.table_name, p), db_payload)
        return self.prober.to_canonical(echo)

    def _update(self, row_id: str, payload: Mapping[str, Any]) -> Optional[dict]:
        self.prober.ensure(self.client, self.event_id)
        db_payload = self.prober.to_db_patch(payload)
        echo = self.prober.write_with_retry(
            lambda p: self.client.update(self.table_name, p, {"id": row_id}),
            db_payload,
        )
        return self.prober.to_canonical(echo[0]) if echo else None
