from eventcalc.stores.assets import EventCompanyAssetStore
from eventcalc.stores.base import RowStore
from eventcalc.stores.bundles import EventBundleStore
from eventcalc.stores.discounts import EventDiscountStore
from eventcalc.stores.equipment import EventEquipmentStore
from eventcalc.stores.extra_fees import EventExtraFeeStore
from eventcalc.stores.header import EventHeaderStore
from eventcalc.stores.staff import EventStaffStore
from eventcalc.stores.transport import EventTransportStore

# URL segment -> store class for the per-event row endpoints
ROW_STORES = {
    "equipment": EventEquipmentStore,
    "staff": EventStaffStore,
    "transport": EventTransportStore,
    "asset": EventCompanyAssetStore,
    "extra-fee": EventExtraFeeStore,
    "discount": EventDiscountStore,
}

__all__ = [
    "ROW_STORES",
    "EventBundleStore",
    "EventCompanyAssetStore",
    "EventDiscountStore",
    "EventEquipmentStore",
    "EventExtraFeeStore",
    "EventHeaderStore",
    "EventStaffStore",
    "EventTransportStore",
    "RowStore",
]
