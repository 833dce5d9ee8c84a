from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from eventcalc.db import Base

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY_TYPE = Numeric(asdecimal=False)


class EventHeader(Base):
    __tablename__ = "event_headers"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_date: Mapped[str | None] = mapped_column(Text)
    event_name: Mapped[str | None] = mapped_column(Text)
    host_name: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(Text)
    start_at: Mapped[str | None] = mapped_column(Text)
    end_at: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(Text)
    contact_name: Mapped[str | None] = mapped_column(Text)
    contact_phone: Mapped[str | None] = mapped_column(Text)
    contact_email: Mapped[str | None] = mapped_column(Text)
    customer_type: Mapped[str | None] = mapped_column(Text)
    company: Mapped[str | None] = mapped_column(Text)
    company_director: Mapped[str | None] = mapped_column(Text)
    company_tax_code: Mapped[str | None] = mapped_column(Text)
    company_address: Mapped[str | None] = mapped_column(Text)
    company_city: Mapped[str | None] = mapped_column(Text)
    billing_email: Mapped[str | None] = mapped_column(Text)
    preferred_contact: Mapped[str | None] = mapped_column(Text)
    people_count: Mapped[int | None] = mapped_column(Integer)
    budget_per_person_vnd: Mapped[float | None] = mapped_column(MONEY_TYPE)
    budget_total_vnd: Mapped[float | None] = mapped_column(MONEY_TYPE)
    notes: Mapped[str | None] = mapped_column(Text)
    payment_plan: Mapped[str | None] = mapped_column(Text)
    is_full_payment: Mapped[bool | None] = mapped_column(Boolean)
    deposit_percent: Mapped[float | None] = mapped_column(Float)
    balance_percent: Mapped[float | None] = mapped_column(Float)
    deposit_due_date: Mapped[str | None] = mapped_column(Text)
    balance_due_date: Mapped[str | None] = mapped_column(Text)
    provider_branch_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventBundle(Base):
    __tablename__ = "event_bundles"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    type_key: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventBundleRow(Base):
    __tablename__ = "event_bundle_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    bundle_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    dish_id: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    modifiers: Mapped[list | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventEquipmentRow(Base):
    __tablename__ = "event_equipment_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    equipment_id: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text)
    unit_cost_override: Mapped[float | None] = mapped_column(MONEY_TYPE)
    vat_override_percent: Mapped[float | None] = mapped_column(Float)
    markup_x_override: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventStaffRow(Base):
    __tablename__ = "event_staff_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[str | None] = mapped_column(Text)
    cost_per_hour: Mapped[float] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    markup_x: Mapped[float | None] = mapped_column(Float)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventTransportRow(Base):
    __tablename__ = "event_transport_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    from_text: Mapped[str | None] = mapped_column(Text)
    to_text: Mapped[str | None] = mapped_column(Text)
    round_trip: Mapped[bool | None] = mapped_column(Boolean)
    vehicle_key: Mapped[str | None] = mapped_column(Text)
    distance_km: Mapped[float | None] = mapped_column(Float)
    eta_minutes: Mapped[int | None] = mapped_column(Integer)
    cost_per_km: Mapped[float | None] = mapped_column(MONEY_TYPE)
    markup_x: Mapped[float | None] = mapped_column(Float)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventCompanyAssetRow(Base):
    __tablename__ = "event_company_asset_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    asset_name: Mapped[str | None] = mapped_column(Text)
    asset_id: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    include_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unit_price_vnd: Mapped[float | None] = mapped_column(MONEY_TYPE)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventExtraFeeRow(Base):
    __tablename__ = "event_extra_fee_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    label: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[float] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[float | None] = mapped_column(MONEY_TYPE)
    calc_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cost: Mapped[float | None] = mapped_column(MONEY_TYPE)
    markup_x: Mapped[float | None] = mapped_column(Float)
    percent: Mapped[str | None] = mapped_column(Text)
    scope: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventDiscountRow(Base):
    __tablename__ = "event_discount_rows"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    label: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[float] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    calc_mode: Mapped[bool | None] = mapped_column(Boolean)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventStaffSettings(Base):
    __tablename__ = "event_staff_settings"

    event_id: Mapped[str] = mapped_column(Text, primary_key=True)
    markup_x: Mapped[float | None] = mapped_column(Float)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventTransportSettings(Base):
    __tablename__ = "event_transport_settings"

    event_id: Mapped[str] = mapped_column(Text, primary_key=True)
    markup_x: Mapped[float | None] = mapped_column(Float)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class EventTransportVehicleType(Base):
    __tablename__ = "event_transport_vehicle_types"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    cost_per_km: Mapped[float] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    created_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class StaffDefaults(Base):
    __tablename__ = "staff_defaults"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    markup_x: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class TransportDefaults(Base):
    __tablename__ = "transport_defaults"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    markup_x: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    vehicle_types: Mapped[list | None] = mapped_column(JSON_TYPE)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class BundleType(Base):
    __tablename__ = "bundle_types"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    label: Mapped[str | None] = mapped_column(Text)
    max_modifiers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dish_categories: Mapped[list | None] = mapped_column(JSON_TYPE)
    modifier_slots: Mapped[list | None] = mapped_column(JSON_TYPE)
    markup_x: Mapped[float | None] = mapped_column(Float)


class EventTotal(Base):
    __tablename__ = "event_totals"

    event_id: Mapped[str] = mapped_column(Text, primary_key=True)
    total_vnd: Mapped[float | None] = mapped_column(MONEY_TYPE)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_kv_entries_updated_at", "updated_at"),)
