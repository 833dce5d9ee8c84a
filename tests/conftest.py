import os

os.environ.setdefault("EVENTCALC_DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENTCALC_DEBOUNCE_MS", "0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from eventcalc import models  # noqa: F401
from eventcalc.bus import Notifier
from eventcalc.db import Base
from eventcalc.remote import MemoryRowStoreClient
from eventcalc.storage import MemoryStorageBackend
from eventcalc.transport_schema import reset_probes


@pytest.fixture(autouse=True)
def _fresh_probes():
    reset_probes()
    yield
    reset_probes()


def make_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


def make_tabs(count: int = 2, backend=None) -> list[Notifier]:
    backend = backend or MemoryStorageBackend()
    return [Notifier(backend.area(), key_prefix="eventcalc.") for _ in range(count)]


@pytest.fixture
def client() -> MemoryRowStoreClient:
    return MemoryRowStoreClient()


@pytest.fixture
def tab() -> Notifier:
    return make_tabs(1)[0]
