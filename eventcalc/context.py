from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from sqlalchemy.engine import Engine

from eventcalc.aggregates import EventList
from eventcalc.bundle_config import BundleConfig, load_bundle_configs
from eventcalc.bus import Notifier
from eventcalc.config import settings
from eventcalc.defaults import GlobalStaffDefaults, GlobalTransportDefaults
from eventcalc.errors import RemoteError, msg_of
from eventcalc.remote import MemoryRowStoreClient, RowStoreClient, SqlRowStoreClient
from eventcalc.resolvers import StaffSettingsResolver, TransportSettingsResolver
from eventcalc.storage import MemoryStorageBackend, SqlStorageBackend, StorageBackend
from eventcalc.stores import ROW_STORES, EventBundleStore, EventHeaderStore
from eventcalc.totals import EventTotals

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything one application root shares: the remote client, the
    key-value backend and this process's tab.

    ``item_costs`` (dish/material id to unit cost), ``dish_categories`` (dish
    id to category name) and ``equipment_catalog`` (equipment id to catalog
    row) are fed in by the catalog screens, which live outside this package.
    """

    client: RowStoreClient
    backend: StorageBackend
    notifier: Notifier
    staff_defaults: GlobalStaffDefaults
    transport_defaults: GlobalTransportDefaults
    item_costs: dict[str, Any] = field(default_factory=dict)
    dish_categories: dict[str, str] = field(default_factory=dict)
    equipment_catalog: dict[str, dict] = field(default_factory=dict)

    def tab(self) -> Notifier:
        """A further tab on the same storage backend."""
        return Notifier(self.backend.area(), key_prefix=self.notifier.key_prefix)

    def row_store(self, center: str, event_id: Optional[str]):
        store_cls = ROW_STORES.get(center)
        if store_cls is None:
            raise KeyError(center)
        return store_cls(self.client, event_id, self.notifier)

    def bundle_configs(self) -> dict[str, BundleConfig]:
        try:
            return load_bundle_configs(self.client)
        except RemoteError as exc:
            logger.warning("bundle types unavailable: %s", msg_of(exc))
            return {}

    def bundle_store(self, event_id: Optional[str]) -> EventBundleStore:
        category_of = self.dish_categories.get if self.dish_categories else None
        return EventBundleStore(
            self.client,
            event_id,
            self.notifier,
            configs=self.bundle_configs(),
            category_of=category_of,
        )

    def header_store(self, event_id: Optional[str]) -> EventHeaderStore:
        return EventHeaderStore(self.client, event_id, self.notifier)

    def staff_settings(self, event_id: Optional[str]) -> StaffSettingsResolver:
        return StaffSettingsResolver(self.client, event_id, self.notifier, self.staff_defaults)

    def transport_settings(self, event_id: Optional[str]) -> TransportSettingsResolver:
        return TransportSettingsResolver(self.client, event_id, self.notifier, self.transport_defaults)

    def event_list(self) -> EventList:
        return EventList(self.client, self.notifier, debounce_ms=0)

    @contextmanager
    def totals(self, event_id: Optional[str]) -> Iterator[EventTotals]:
        """Mount every source of one event, yield its totals, then unmount."""
        bundles = self.bundle_store(event_id)
        sources = {
            "bundles": bundles,
            "equipment": self.row_store("equipment", event_id),
            "staff": self.row_store("staff", event_id),
            "transport": self.row_store("transport", event_id),
            "assets": self.row_store("asset", event_id),
            "extra_fees": self.row_store("extra-fee", event_id),
            "discounts": self.row_store("discount", event_id),
            "header": self.header_store(event_id),
            "staff_settings": self.staff_settings(event_id),
            "transport_settings": self.transport_settings(event_id),
        }
        try:
            yield EventTotals(
                self.notifier,
                event_id,
                bundle_configs=bundles.configs,
                item_costs=self.item_costs,
                equipment_catalog=self.equipment_catalog,
                **sources,
            )
        finally:
            for source in sources.values():
                source.unmount()

    def close(self) -> None:
        self.staff_defaults.close()
        self.transport_defaults.close()


def build_context(
    engine: Optional[Engine] = None,
    client: Optional[RowStoreClient] = None,
    backend: Optional[StorageBackend] = None,
    storage_backend: Optional[str] = None,
) -> AppContext:
    """Wire the client, storage and notifier once for the application root.

    With neither ``engine`` nor ``client`` an in-memory client is used.
    """
    if client is None:
        if engine is not None:
            from eventcalc.db import Base
            from eventcalc import models  # noqa: F401

            client = SqlRowStoreClient(engine, metadata=Base.metadata)
        else:
            client = MemoryRowStoreClient()
    if backend is None:
        kind = storage_backend or settings.storage_backend
        if kind == "sql" and engine is not None:
            backend = SqlStorageBackend(engine)
        else:
            backend = MemoryStorageBackend()
    notifier = Notifier(backend.area())
    logger.info("context ready: client=%s storage=%s", type(client).__name__, type(backend).__name__)
    return AppContext(
        client=client,
        backend=backend,
        notifier=notifier,
        staff_defaults=GlobalStaffDefaults(client, notifier),
        transport_defaults=GlobalTransportDefaults(client, notifier),
    )
