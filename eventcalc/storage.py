from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from eventcalc.models import KeyValueEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageEvent:
    key: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class StorageBackend:
    """Persistent key-value data shared by every attached StorageArea.

    A write through one area is announced to the listeners of every *other*
    attached area, the way a browser announces localStorage writes to the
    other tabs of the same origin.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._areas: "weakref.WeakSet[StorageArea]" = weakref.WeakSet()

    def _read(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _write(self, key: str, value: Optional[str]) -> None:
        raise NotImplementedError

    def keys(self) -> list[str]:
        raise NotImplementedError

    def area(self) -> "StorageArea":
        area = StorageArea(self)
        self._areas.add(area)
        return area

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key)

    def put(self, key: str, value: Optional[str], origin: Optional["StorageArea"] = None) -> None:
        with self._lock:
            old = self._read(key)
            self._write(key, value)
        if old != value:
            self._announce(StorageEvent(key, old, value), origin)

    def _announce(self, event: StorageEvent, origin: Optional["StorageArea"]) -> None:
        for area in list(self._areas):
            if area is not origin:
                area._deliver(event)


class MemoryStorageBackend(StorageBackend):
    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, str] = {}

    def _read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def _write(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class SqlStorageBackend(StorageBackend):
    """Key-value data kept in the ``kv_entries`` table.

    Writes from other processes are not pushed; ``reload()`` diffs the table
    against the last known snapshot and announces every changed key.
    """

    def __init__(self, engine: Engine) -> None:
        super().__init__()
        self._session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
        self._snapshot: dict[str, str] = {}
        self.reload(announce=False)

    def _session(self) -> Session:
        return self._session_factory()

    def _read(self, key: str) -> Optional[str]:
        return self._snapshot.get(key)

    def _write(self, key: str, value: Optional[str]) -> None:
        db = self._session()
        try:
            entry = db.get(KeyValueEntry, key)
            if value is None:
                if entry is not None:
                    db.delete(entry)
            elif entry is None:
                db.add(KeyValueEntry(key=key, value=value, updated_at=datetime.now(timezone.utc)))
            else:
                entry.value = value
                entry.updated_at = datetime.now(timezone.utc)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("kv write failed for %s", key, exc_info=True)
            raise
        finally:
            db.close()
        if value is None:
            self._snapshot.pop(key, None)
        else:
            self._snapshot[key] = value

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._snapshot)

    def reload(self, announce: bool = True) -> None:
        db = self._session()
        try:
            fresh = {row.key: row.value for row in db.scalars(select(KeyValueEntry))}
        finally:
            db.close()
        with self._lock:
            previous, self._snapshot = self._snapshot, fresh
        if not announce:
            return
        for key in set(previous) | set(fresh):
            if previous.get(key) != fresh.get(key):
                self._announce(StorageEvent(key, previous.get(key), fresh.get(key)), None)


class StorageArea:
    """One tab's handle on the shared key-value store."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend
        self._listeners: list[StorageListener] = []

    def get_item(self, key: str) -> Optional[str]:
        return self.backend.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.backend.put(key, str(value), origin=self)

    def remove_item(self, key: str) -> None:
        self.backend.put(key, None, origin=self)

    def add_listener(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _deliver(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("storage listener failed for %s", event.key, exc_info=True)
