from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from eventcalc.config import settings
from eventcalc.storage import StorageArea, StorageEvent

logger = logging.getLogger(__name__)

Handler = Callable[..., None]

TICK = "calc:tick"
DIRTY = "eventcalc:dirty"
SAVED = "eventcalc:saved"
SETTINGS_CHANGED = "settings:changed"
EVENT_CHANGED = "event:changed"
EVENTINFO_CHANGED = "eventinfo:changed"
FOCUS = "focus"
VISIBILITY = "visibilitychange"

TOTALS_EVENTS = (
    "bundles:totals",
    "equipment:totals",
    "staff:totals",
    "transport:totals",
    "assets:total",
    "extrafee:total",
    "discounts:total",
    "events:refetch",
)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _call_all(handlers: list[Handler], name: str, *args: Any) -> None:
    for handler in handlers:
        try:
            handler(*args)
        except Exception:
            logger.warning("listener for %s failed", name, exc_info=True)


class EventBus:
    """Named-event registry for one tab."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._lock = threading.RLock()

    def on(self, name: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)
        return lambda: self.off(name, handler)

    def off(self, name: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, name: str, *args: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(name, []))
        _call_all(handlers, name, *args)


class PageEvents:
    """Page-global event target; also carries focus and visibility changes."""

    def __init__(self) -> None:
        self._bus = EventBus()
        self.visible = True

    def add_listener(self, name: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        return self._bus.on(name, handler)

    def remove_listener(self, name: str, handler: Callable[[Any], None]) -> None:
        self._bus.off(name, handler)

    def dispatch(self, name: str, detail: Any = None) -> None:
        self._bus.emit(name, detail)

    def focus(self) -> None:
        self.dispatch(FOCUS)

    def set_visible(self, visible: bool) -> None:
        self.visible = visible
        self.dispatch(VISIBILITY, {"visible": visible})


class Notifier:
    """Calc tick, settings bump and save-state signalling for one tab.

    A tick goes out on three channels: the tab's EventBus, the ``calc:tick``
    page event, and a timestamp under ``<prefix>tick`` in storage that the
    other tabs observe.
    """

    def __init__(
        self,
        storage: StorageArea,
        page: Optional[PageEvents] = None,
        bus: Optional[EventBus] = None,
        key_prefix: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.page = page or PageEvents()
        self.bus = bus or EventBus()
        self.key_prefix = key_prefix if key_prefix is not None else settings.key_prefix
        self._last_stamp = 0

    def key(self, suffix: str) -> str:
        return f"{self.key_prefix}{suffix}"

    @property
    def tick_key(self) -> str:
        return self.key("tick")

    @property
    def settings_bump_key(self) -> str:
        return self.key("settings.bump")

    def dirty_key(self, event_id: Optional[str]) -> str:
        return self.key(f"save.dirty:{event_id or ''}")

    def last_at_key(self, event_id: Optional[str]) -> str:
        return self.key(f"save.lastAt:{event_id or ''}")

    def next_stamp(self) -> str:
        # strictly increasing so two ticks in the same millisecond still differ
        stamp = max(_now_ms(), self._last_stamp + 1)
        self._last_stamp = stamp
        return str(stamp)

    def _store(self, key: str, value: str) -> None:
        try:
            self.storage.set_item(key, value)
        except Exception:
            logger.warning("could not write %s", key, exc_info=True)

    def emit_calc_tick(self) -> None:
        self.bus.emit("tick")
        self.page.dispatch(TICK)
        self._store(self.tick_key, self.next_stamp())

    def on_calc_tick(self, handler: Callable[[], None]) -> Callable[[], None]:
        off_bus = self.bus.on("tick", handler)

        def on_storage(event: StorageEvent) -> None:
            if event.key == self.tick_key:
                handler()

        off_storage = self.storage.add_listener(on_storage)

        def unsubscribe() -> None:
            off_bus()
            off_storage()

        return unsubscribe

    def broadcast(self, name: str, detail: Any = None) -> None:
        self.page.dispatch(name, detail)

    def bump_settings(self) -> None:
        self._store(self.settings_bump_key, self.next_stamp())

    def mark_dirty(self, event_id: Optional[str]) -> None:
        self._store(self.dirty_key(event_id), "1")
        self.page.dispatch(DIRTY, {"event_id": event_id})

    def mark_saved(self, event_id: Optional[str]) -> None:
        self._store(self.dirty_key(event_id), "0")
        self._store(self.last_at_key(event_id), str(_now_ms()))
        self.page.dispatch(SAVED, {"event_id": event_id})

    def is_dirty(self, event_id: Optional[str]) -> bool:
        return self.storage.get_item(self.dirty_key(event_id)) == "1"

    def last_saved_at(self, event_id: Optional[str]) -> Optional[int]:
        raw = self.storage.get_item(self.last_at_key(event_id))
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None


class Debouncer:
    """Runs the last scheduled callable once a quiet period has passed."""

    def __init__(self, delay_ms: Optional[int] = None) -> None:
        self.delay_ms = settings.debounce_ms if delay_ms is None else delay_ms
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[Callable[[], None]] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def schedule(self, fn: Callable[[], None]) -> None:
        if self.delay_ms <= 0:
            self.cancel()
            fn()
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = fn
            self._timer = threading.Timer(self.delay_ms / 1000, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            fn, self._pending, self._timer = self._pending, None, None
        if fn is not None:
            try:
                fn()
            except Exception:
                logger.exception("debounced call failed")

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
        self._fire()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = None
