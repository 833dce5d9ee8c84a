from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from eventcalc.bus import FOCUS, VISIBILITY, Notifier
from eventcalc.errors import RemoteError, StoreValidationError, is_abort_like, is_network_failure, msg_of
from eventcalc.guards import sort_rows_stable
from eventcalc.remote import RowStoreClient

logger = logging.getLogger(__name__)

MISSING_EVENT_ID = "Missing event id"


def tentative_id() -> str:
    return f"tmp:{uuid4().hex}"


def is_tentative(row: Mapping[str, Any]) -> bool:
    return str(row.get("id", "")).startswith("tmp:")


class RowStore:
    """Rows of one cost-center table for one event.

    Creates and deletes are two-phase: the local list changes first and the
    remote write either confirms it (the echo replaces the tentative row) or
    the local change is undone. Updates are applied locally up front only
    when ``optimistic_update`` is set; otherwise the remote echo is applied
    after success. Remote failures are logged and kept in ``error``.
    """

    table_name = ""
    optimistic_update = False
    totals_event: Optional[str] = None
    refresh_on: tuple[str, ...] = ()
    remote_order = [("created_at", True), ("id", True)]

    def __init__(
        self,
        client: RowStoreClient,
        event_id: Optional[str],
        notifier: Optional[Notifier] = None,
        autoload: bool = True,
    ) -> None:
        self.client = client
        self.event_id = event_id or None
        self.notifier = notifier
        self.rows: list[dict] = []
        self.error: Optional[str] = None
        self.loading = False
        self.mounted = True
        self._unsubscribers: list[Callable[[], None]] = []
        if notifier is not None:
            page = notifier.page
            self._unsubscribers.append(page.add_listener(FOCUS, self._on_focus))
            self._unsubscribers.append(page.add_listener(VISIBILITY, self._on_visibility))
            for name in self.refresh_on:
                self._unsubscribers.append(page.add_listener(name, self._on_focus))
        if autoload:
            self.refresh()

    @property
    def name(self) -> str:
        return type(self).__name__

    def list(self) -> list[dict]:
        return [dict(row) for row in self.rows]

    def find(self, row_id: str) -> Optional[dict]:
        for row in self.rows:
            if row.get("id") == row_id:
                return dict(row)
        return None

    def unmount(self) -> None:
        self.mounted = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _on_focus(self, _detail: Any = None) -> None:
        if self.mounted and self.event_id:
            self.refresh()

    def _on_visibility(self, _detail: Any = None) -> None:
        if self.notifier is not None and self.notifier.page.visible:
            self._on_focus()

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        return dict(raw)

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        return dict(patch)

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        return {k: v for k, v in patch.items() if k not in ("id", "event_id", "created_at")}

    def _fetch(self) -> list[dict]:
        return self.client.select(
            self.table_name,
            filters={"event_id": self.event_id},
            order=self.remote_order,
        )

    def _insert(self, payload: Mapping[str, Any]) -> dict:
        return self.client.insert(self.table_name, payload)

    def _update(self, row_id: str, payload: Mapping[str, Any]) -> Optional[dict]:
        echo = self.client.update(self.table_name, payload, {"id": row_id})
        return echo[0] if echo else None

    def _delete(self, row_id: str) -> None:
        self.client.delete(self.table_name, {"id": row_id})

    def _fail(self, op: str, exc: BaseException) -> None:
        message = msg_of(exc)
        if is_abort_like(exc) or is_network_failure(exc):
            logger.warning("[%s] %s warning: %s", self.name, op, message)
        else:
            logger.error("[%s] %s error: %s", self.name, op, message)
        self.error = message

    def _changed(self) -> None:
        if self.notifier is None:
            return
        self.notifier.emit_calc_tick()
        self.notifier.mark_dirty(self.event_id)
        if self.totals_event:
            self.notifier.broadcast(self.totals_event, {"event_id": self.event_id})

    def _replace(self, row_id: str, row: Optional[dict]) -> None:
        if row is None:
            self.rows = [r for r in self.rows if r.get("id") != row_id]
        else:
            self.rows = [row if r.get("id") == row_id else r for r in self.rows]

    def refresh(self) -> None:
        if not self.event_id:
            self.rows = []
            self.loading = False
            self.error = None
            return
        self.loading = True
        try:
            raw = self._fetch()
        except RemoteError as exc:
            self.loading = False
            if self.mounted:
                self._fail("refresh", exc)
            return
        if not self.mounted:
            self.loading = False
            return
        self.rows = sort_rows_stable(self.normalize(r) for r in raw)
        self.error = None
        self.loading = False

    def create(self, patch: Optional[Mapping[str, Any]] = None) -> Optional[dict]:
        if not self.event_id:
            self.error = MISSING_EVENT_ID
            return None
        try:
            payload = self.prepare_create(dict(patch or {}))
        except StoreValidationError as exc:
            self.error = str(exc)
            return None
        payload["event_id"] = self.event_id
        tmp_id = tentative_id()
        self.rows.append(self.normalize({**payload, "id": tmp_id}))
        try:
            echo = self._insert(payload)
        except RemoteError as exc:
            self._replace(tmp_id, None)
            self._fail("create", exc)
            return None
        row = self.normalize(echo)
        self._replace(tmp_id, row)
        self.error = None
        self._changed()
        return dict(row)

    def update(self, row_id: str, patch: Mapping[str, Any]) -> bool:
        if not row_id:
            self.error = "Missing id"
            return False
        try:
            payload = self.prepare_update(dict(patch))
        except StoreValidationError as exc:
            self.error = str(exc)
            return False
        if not payload:
            return True
        before = self.find(row_id)
        if self.optimistic_update and before is not None:
            self._replace(row_id, self.normalize({**before, **payload}))
        try:
            echo = self._update(row_id, payload)
        except RemoteError as exc:
            if self.optimistic_update and before is not None:
                self._replace(row_id, before)
            self._fail("update", exc)
            return False
        current = self.find(row_id)
        if echo is not None:
            self._replace(row_id, self.normalize({**(current or {}), **echo}))
        elif current is not None and not self.optimistic_update:
            self._replace(row_id, self.normalize({**current, **payload}))
        self.error = None
        self._changed()
        return True

    def delete(self, row_id: str) -> bool:
        if not row_id:
            self.error = "Missing id"
            return False
        snapshot = [dict(r) for r in self.rows]
        self.rows = [r for r in self.rows if r.get("id") != row_id]
        try:
            self._delete(row_id)
        except RemoteError as exc:
            self.rows = snapshot
            self._fail("delete", exc)
            return False
        self.error = None
        self._changed()
        return True
