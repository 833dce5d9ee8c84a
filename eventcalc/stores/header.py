from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping, Optional

from eventcalc.bus import EVENTINFO_CHANGED, FOCUS, VISIBILITY, Notifier
from eventcalc.errors import RemoteError, msg_of
from eventcalc.guards import to_bool, to_null_int, to_null_num, to_null_str
from eventcalc.remote import RowStoreClient

logger = logging.getLogger(__name__)

TABLE = "event_headers"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _title(value: Any) -> Optional[str]:
    return None if value is None else str(value)


CORE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "event_name": to_null_str,
    "host_name": to_null_str,
    "title": _title,
    "start_at": to_null_str,
    "end_at": to_null_str,
    "location": to_null_str,
    "contact_name": to_null_str,
    "contact_phone": to_null_str,
    "contact_email": to_null_str,
    "customer_type": to_null_str,
    "company": to_null_str,
    "company_director": to_null_str,
    "company_tax_code": to_null_str,
    "company_address": to_null_str,
    "company_city": to_null_str,
    "billing_email": to_null_str,
    "preferred_contact": to_null_str,
    "people_count": to_null_int,
    "budget_per_person_vnd": to_null_num,
    "budget_total_vnd": to_null_num,
    "notes": to_null_str,
}

OPTIONAL_FIELDS: dict[str, Callable[[Any], Any]] = {
    "payment_plan": to_null_str,
    "is_full_payment": lambda v: None if v is None else to_bool(v, False),
    "payment_term": to_null_str,
    "payment_terms": to_null_str,
    "payment_policy": to_null_str,
    "payment_condition": to_null_str,
    "deposit_percent": to_null_num,
    "deposit_percentage": to_null_num,
    "deposit_percent_01": to_null_num,
    "balance_percent": to_null_num,
    "balance_percentage": to_null_num,
    "balance_percent_01": to_null_num,
    "deposit_due_date": to_null_str,
    "deposit_due_at": to_null_str,
    "deposit_due_on": to_null_str,
    "balance_due_date": to_null_str,
    "balance_due_at": to_null_str,
    "balance_due_on": to_null_str,
    "provider_branch_id": to_null_str,
}


def to_iso_date_start_utc(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if _DATE_ONLY.match(text):
        return f"{text}T00:00:00Z"
    return text


def _norm_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class EventHeaderStore:
    """The event header row.

    Columns beyond the core set differ between deployments, so ``save`` only
    writes the optional ones the last load actually saw.
    """

    def __init__(
        self,
        client: RowStoreClient,
        event_id: Optional[str],
        notifier: Optional[Notifier] = None,
        autoload: bool = True,
    ) -> None:
        self.client = client
        self.event_id = _norm_id(event_id)
        self.notifier = notifier
        self.header: Optional[dict] = None
        self.capabilities: set[str] = set()
        self.error: Optional[str] = None
        self.loading = False
        self.mounted = True
        self._unsubscribers: list[Callable[[], None]] = []
        if notifier is not None:
            self._unsubscribers.append(notifier.page.add_listener(FOCUS, lambda _d: self.refresh()))
            self._unsubscribers.append(notifier.page.add_listener(VISIBILITY, self._on_visibility))
        if autoload:
            self.refresh()

    def _on_visibility(self, _detail: Any = None) -> None:
        if self.notifier is not None and self.notifier.page.visible:
            self.refresh()

    def unmount(self) -> None:
        self.mounted = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def refresh(self) -> None:
        if not self.event_id:
            self.header = None
            self.capabilities = set()
            self.loading = False
            self.error = None
            return
        self.loading = True
        try:
            rows = self.client.select(TABLE, filters={"id": self.event_id}, limit=1)
        except RemoteError as exc:
            if not self.mounted:
                return
            self.error = msg_of(exc)
            logger.warning("[EventHeaderStore] load error: %s (event %s)", self.error, self.event_id)
            self.header = None
            self.loading = False
            return
        if not self.mounted:
            return
        row = rows[0] if rows else {}
        self.capabilities = set(row)
        self.header = dict(row) if row else None
        self.error = None
        self.loading = False

    def build_payload(self, patch: Mapping[str, Any], event_id: str) -> dict:
        payload: dict[str, Any] = {"id": event_id}
        if "event_date" in patch:
            payload["event_date"] = to_iso_date_start_utc(patch["event_date"])
        for field, convert in CORE_FIELDS.items():
            if field in patch:
                payload[field] = convert(patch[field])
        for field, convert in OPTIONAL_FIELDS.items():
            if field in patch and field in self.capabilities:
                payload[field] = convert(patch[field])
        return payload

    def save(self, patch: Mapping[str, Any]) -> bool:
        """Create or update the header; True on success."""
        event_id = _norm_id(patch.get("id") or self.event_id)
        if not event_id:
            self.error = "Missing event id"
            return False
        payload = self.build_payload(patch, event_id)
        try:
            row = self.client.upsert(TABLE, payload, on_conflict="id")
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.error("[EventHeaderStore] save error: %s", self.error)
            return False
        self.header = dict(row)
        self.capabilities |= set(row)
        self.error = None
        if self.notifier is not None:
            self.notifier.broadcast(EVENTINFO_CHANGED, {"event_id": event_id})
        return True
