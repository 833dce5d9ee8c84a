from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping, Optional

from eventcalc.bus import EVENTINFO_CHANGED, FOCUS, TOTALS_EVENTS, VISIBILITY, Debouncer, Notifier
from eventcalc.errors import RemoteError, msg_of
from eventcalc.guards import to_null_num
from eventcalc.remote import RowStoreClient
from eventcalc.storage import StorageEvent

logger = logging.getLogger(__name__)

HEADERS_TABLE = "event_headers"
TOTALS_TABLE = "event_totals"

# storage key suffixes (after the prefix) that mean some event's total moved
WATCHED_KEYS = ("snap.totals:", "save.lastAt:")

_DEPOSIT_DATE_FIELDS = ("deposit_due_date", "deposit_due_at", "deposit_due_on")
_BALANCE_DATE_FIELDS = ("balance_due_date", "balance_due_at", "balance_due_on")
_DEPOSIT_PCT_FIELDS = ("deposit_percent", "deposit_percentage", "deposit_percent_01")
_BALANCE_PCT_FIELDS = ("balance_percent", "balance_percentage", "balance_percent_01")


def percent_0_100(value: Any) -> Optional[float]:
    """Stored percents come as 0..1 or 0..100; anything else is unknown."""
    n = to_null_num(value)
    if n is None:
        return None
    if 0 <= n <= 1:
        return n * 100
    if 1 < n <= 100:
        return n
    return None


def _first(row: Mapping[str, Any], fields: tuple[str, ...]) -> Any:
    for field in fields:
        if row.get(field) is not None:
            return row[field]
    return None


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def payment_fields(header: Mapping[str, Any], today: date) -> dict:
    """Plan, percents and next due instalment of one event header."""
    deposit_pct = percent_0_100(_first(header, _DEPOSIT_PCT_FIELDS))
    balance_pct = percent_0_100(_first(header, _BALANCE_PCT_FIELDS))
    plan = header.get("payment_plan")
    if plan not in ("full", "installments"):
        if header.get("is_full_payment") is True:
            plan = "full"
        elif deposit_pct is not None and 0 < deposit_pct < 100:
            plan = "installments"
        elif deposit_pct is not None or balance_pct is not None or header.get("is_full_payment") is False:
            plan = "full"
        else:
            plan = None

    deposit_due = _as_date(_first(header, _DEPOSIT_DATE_FIELDS))
    balance_due = _as_date(_first(header, _BALANCE_DATE_FIELDS))
    if plan == "installments" and deposit_due is not None and (balance_due is None or today <= deposit_due):
        next_kind, next_date = "deposit", deposit_due
    elif balance_due is not None:
        next_kind, next_date = "balance", balance_due
    else:
        next_kind, next_date = None, None

    return {
        "payment_plan": plan,
        "deposit_percent_0_100": deposit_pct,
        "deposit_due_date": _iso(deposit_due),
        "balance_percent_0_100": balance_pct,
        "balance_due_date": _iso(balance_due),
        "next_due_kind": next_kind,
        "next_due_date": _iso(next_date),
        "is_overdue": None if next_date is None else next_date < today,
    }


def _desc_nulls_last(value: Any) -> tuple[int, float]:
    if value is None:
        return (1, 0.0)
    return (0, -value.timestamp())


def sort_event_rows(rows: list[dict]) -> list[dict]:
    """updated_at desc, event_date desc (nulls last), then id asc."""

    def key(row: dict) -> tuple:
        event_date = _as_date(row.get("event_date"))
        event_dt = datetime(event_date.year, event_date.month, event_date.day, tzinfo=timezone.utc) if event_date else None
        return (
            _desc_nulls_last(_as_datetime(row.get("updated_at"))),
            _desc_nulls_last(event_dt),
            str(row.get("id")),
        )

    return sorted(rows, key=key)


def _latest(*values: Any) -> Optional[datetime]:
    stamps = [v for v in (_as_datetime(x) for x in values) if v is not None]
    return max(stamps) if stamps else None


class EventList:
    """All events with their last stored total and payment status.

    The list refreshes itself, debounced, when the tab regains focus or
    becomes visible, on calc ticks, on any per-center totals broadcast and
    when another tab writes one of the watched storage keys.
    """

    def __init__(
        self,
        client: RowStoreClient,
        notifier: Notifier,
        today: Optional[Callable[[], date]] = None,
        debounce_ms: Optional[int] = None,
        autoload: bool = True,
    ) -> None:
        self.client = client
        self.notifier = notifier
        self.today = today or (lambda: datetime.now(timezone.utc).date())
        self.rows: list[dict] = []
        self.error: Optional[str] = None
        self.loading = False
        self.debouncer = Debouncer(debounce_ms)
        self._unsubscribers: list[Callable[[], None]] = []
        self._subscribe()
        if autoload:
            self.refresh()

    def _subscribe(self) -> None:
        page = self.notifier.page
        self._unsubscribers.append(page.add_listener(FOCUS, lambda _d=None: self.schedule_refresh("window:focus")))
        self._unsubscribers.append(page.add_listener(VISIBILITY, self._on_visibility))
        for name in TOTALS_EVENTS + (EVENTINFO_CHANGED,):
            self._unsubscribers.append(
                page.add_listener(name, lambda _d=None, name=name: self.schedule_refresh(f"event:{name}"))
            )
        self._unsubscribers.append(self.notifier.on_calc_tick(lambda: self.schedule_refresh("calc:tick")))
        self._unsubscribers.append(self.notifier.storage.add_listener(self._on_storage))

    def _on_visibility(self, _detail: Any = None) -> None:
        if self.notifier.page.visible:
            self.schedule_refresh("visibility:visible")

    def _on_storage(self, event: StorageEvent) -> None:
        key = event.key or ""
        if any(key.startswith(self.notifier.key(suffix)) for suffix in WATCHED_KEYS):
            self.schedule_refresh(f"storage:{key.split(':')[0]}")

    def schedule_refresh(self, reason: str) -> None:
        def run() -> None:
            logger.debug("list refresh: %s", reason)
            self.refresh()

        self.debouncer.schedule(run)

    def _row(self, header: Mapping[str, Any], total: Optional[Mapping[str, Any]], today: date) -> dict:
        total_vnd = to_null_num(total.get("total_vnd")) if total else None
        return {
            "id": str(header.get("id") or ""),
            "event_date": _iso(header.get("event_date")),
            "event_name": header.get("event_name"),
            "host_name": header.get("host_name"),
            "total_vnd": total_vnd,
            "updated_at": _iso(_latest(header.get("updated_at"), total.get("updated_at") if total else None)),
            **payment_fields(header, today),
        }

    def refresh(self) -> None:
        self.loading = True
        self.error = None
        try:
            headers = self.client.select(HEADERS_TABLE)
            totals = self.client.select(TOTALS_TABLE)
        except RemoteError as exc:
            self.error = msg_of(exc)
            logger.debug("event list error: %s", self.error)
            self.rows = []
            self.loading = False
            return
        by_event = {str(t.get("event_id")): t for t in totals}
        today = self.today()
        self.rows = sort_event_rows([self._row(h, by_event.get(str(h.get("id"))), today) for h in headers])
        self.loading = False

    def list(self) -> list[dict]:
        return [dict(r) for r in self.rows]

    def close(self) -> None:
        self.debouncer.cancel()
        for off in self._unsubscribers:
            off()
        self._unsubscribers = []
