from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from eventcalc import __version__
from eventcalc.config import configure_logging
from eventcalc.context import AppContext, build_context
from eventcalc.errors import RemoteError, msg_of
from eventcalc.totals import save_total_on_save

app = FastAPI(title="Event Calculator", version=__version__)

_context: Optional[AppContext] = None


class Meta(BaseModel):
    request_id: str
    warnings: list[str]


class Envelope(BaseModel):
    data: Any
    meta: Meta


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_context() -> Iterator[AppContext]:
    global _context
    if _context is None:
        from eventcalc import models  # noqa: F401
        from eventcalc.db import Base, engine

        configure_logging()
        Base.metadata.create_all(bind=engine)
        _context = build_context(engine=engine)
    yield _context


@contextmanager
def _mounted(store) -> Iterator[Any]:
    try:
        yield store
    finally:
        store.unmount()


def _fail(store, status_code: int = 400) -> None:
    raise HTTPException(status_code=status_code, detail=store.error or "request failed")


@app.get("/", tags=["root"])
def root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["root"])
def health() -> dict:
    return {"status": "healthy"}


# events


@app.get("/api/v1/events", tags=["Events"])
def list_events(ctx: AppContext = Depends(get_context)) -> dict:
    events = ctx.event_list()
    try:
        if events.error:
            raise HTTPException(status_code=400, detail=events.error)
        return {"data": events.list(), "meta": _meta()}
    finally:
        events.close()


class HeaderUpdate(BaseModel):
    model_config = {
        "extra": "allow",
        "json_schema_extra": {
            "example": {
                "event_name": "Wedding Nguyen",
                "event_date": "2025-05-10",
                "people_count": 120,
                "budget_per_person_vnd": 450000,
                "payment_plan": "installments",
                "deposit_percent": 30,
            }
        },
    }


@app.get("/api/v1/events/{event_id}/header", tags=["Event Header"])
def get_header(event_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.header_store(event_id)) as store:
        if store.error:
            _fail(store)
        if store.header is None:
            raise HTTPException(status_code=404, detail="event not found")
        return {"data": store.header, "meta": _meta()}


@app.put("/api/v1/events/{event_id}/header", tags=["Event Header"])
def save_header(event_id: str, payload: HeaderUpdate, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.header_store(event_id)) as store:
        if not store.save(payload.model_dump()):
            _fail(store)
        return {"data": store.header, "meta": _meta()}


# bundles


class BundleCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"type_key": "lunch-set", "label": "Lunch set"}}}
    type_key: str
    label: Optional[str] = None


class BundleRowCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"dish_id": "dish-1", "qty": 40, "modifiers": ["mod-1"]}}}
    dish_id: str
    qty: float = 1
    modifiers: list[str] = Field(default_factory=list)


class BundleRowUpdate(BaseModel):
    dish_id: Optional[str] = None
    qty: Optional[float] = None
    modifiers: Optional[list[str]] = None


@app.get("/api/v1/events/{event_id}/bundles", tags=["Bundles"])
def list_bundles(event_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.bundle_store(event_id)) as store:
        if store.error:
            _fail(store)
        return {"data": store.list(), "meta": _meta()}


@app.post("/api/v1/events/{event_id}/bundles", tags=["Bundles"])
def create_bundle(event_id: str, payload: BundleCreate, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.bundle_store(event_id)) as store:
        bundle = store.create_bundle(payload.type_key, payload.label)
        if bundle is None:
            _fail(store)
        return {"data": bundle, "meta": _meta()}


@app.delete("/api/v1/events/{event_id}/bundles/{bundle_id}", tags=["Bundles"])
def delete_bundle(event_id: str, bundle_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.bundle_store(event_id)) as store:
        if store.find(bundle_id) is None:
            raise HTTPException(status_code=404, detail="bundle not found")
        if not store.delete_bundle(bundle_id):
            _fail(store)
        return {"data": {"id": bundle_id, "deleted": True}, "meta": _meta()}


@app.post("/api/v1/events/{event_id}/bundles/{bundle_id}/rows", tags=["Bundles"])
def add_bundle_row(
    event_id: str,
    bundle_id: str,
    payload: BundleRowCreate,
    ctx: AppContext = Depends(get_context),
) -> dict:
    with _mounted(ctx.bundle_store(event_id)) as store:
        if store.find(bundle_id) is None:
            raise HTTPException(status_code=404, detail="bundle not found")
        row = store.add_row(bundle_id, payload.dish_id, payload.qty, payload.modifiers)
        if row is None:
            _fail(store)
        return {"data": row, "meta": _meta()}


@app.patch("/api/v1/events/{event_id}/bundles/{bundle_id}/rows/{row_id}", tags=["Bundles"])
def update_bundle_row(
    event_id: str,
    bundle_id: str,
    row_id: str,
    payload: BundleRowUpdate,
    ctx: AppContext = Depends(get_context),
) -> dict:
    with _mounted(ctx.bundle_store(event_id)) as store:
        bundle = store.find(bundle_id)
        if bundle is None or not any(r["id"] == row_id for r in bundle["rows"]):
            raise HTTPException(status_code=404, detail="bundle row not found")
        if not store.update_row(row_id, payload.model_dump(exclude_unset=True)):
            _fail(store)
        return {"data": store.find(bundle_id), "meta": _meta()}


@app.delete("/api/v1/events/{event_id}/bundles/{bundle_id}/rows/{row_id}", tags=["Bundles"])
def delete_bundle_row(event_id: str, bundle_id: str, row_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.bundle_store(event_id)) as store:
        bundle = store.find(bundle_id)
        if bundle is None or not any(r["id"] == row_id for r in bundle["rows"]):
            raise HTTPException(status_code=404, detail="bundle row not found")
        if not store.delete_row(row_id):
            _fail(store)
        return {"data": {"id": row_id, "deleted": True}, "meta": _meta()}


# settings


class MarkupUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"markup_x": 1.5, "propagate": False}}}
    markup_x: float
    propagate: bool = False


class VehicleTypeIn(BaseModel):
    id: Optional[str] = None
    name: str
    cost_per_km: float = 0


class VehicleTypesUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"items": [{"name": "Van", "cost_per_km": 0.7}, {"name": "Truck", "cost_per_km": 1.2}]}
        }
    }
    items: list[VehicleTypeIn]


def _settings_data(resolver) -> dict:
    data = {"markup_x": resolver.markup_x, "state": resolver.state.value, "settings": resolver.settings}
    if hasattr(resolver, "vehicle_types"):
        data["vehicle_types"] = resolver.vehicle_types
    return data


def _set_markup(resolver, payload: MarkupUpdate) -> dict:
    if not resolver.set_markup_x(payload.markup_x):
        _fail(resolver)
    if payload.propagate and not resolver.propagate_markup_to_rows(payload.markup_x):
        _fail(resolver)
    return {"data": _settings_data(resolver), "meta": _meta()}


@app.get("/api/v1/events/{event_id}/settings/staff", tags=["Settings"])
def get_staff_settings(event_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.staff_settings(event_id)) as resolver:
        if resolver.error:
            _fail(resolver)
        return {"data": _settings_data(resolver), "meta": _meta()}


@app.put("/api/v1/events/{event_id}/settings/staff/markup", tags=["Settings"])
def set_staff_markup(event_id: str, payload: MarkupUpdate, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.staff_settings(event_id)) as resolver:
        return _set_markup(resolver, payload)


@app.get("/api/v1/events/{event_id}/settings/transport", tags=["Settings"])
def get_transport_settings(event_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.transport_settings(event_id)) as resolver:
        if resolver.error:
            _fail(resolver)
        return {"data": _settings_data(resolver), "meta": _meta()}


@app.put("/api/v1/events/{event_id}/settings/transport/markup", tags=["Settings"])
def set_transport_markup(event_id: str, payload: MarkupUpdate, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(ctx.transport_settings(event_id)) as resolver:
        return _set_markup(resolver, payload)


@app.put("/api/v1/events/{event_id}/settings/transport/vehicle-types", tags=["Settings"])
def replace_transport_vehicle_types(
    event_id: str,
    payload: VehicleTypesUpdate,
    ctx: AppContext = Depends(get_context),
) -> dict:
    with _mounted(ctx.transport_settings(event_id)) as resolver:
        if not resolver.replace_vehicle_types(item.model_dump() for item in payload.items):
            _fail(resolver)
        return {"data": _settings_data(resolver), "meta": _meta()}


# global defaults


class StaffDefaultsUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"markup_x": 1.5}}}
    markup_x: float


class TransportDefaultsUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"markup_x": 1.3, "vehicle_types": [{"name": "Van", "cost_per_km": 0.7}]}}
    }
    markup_x: Optional[float] = None
    vehicle_types: Optional[list[VehicleTypeIn]] = None


def _defaults_data(defaults) -> dict:
    return defaults.defaults.model_dump(exclude={"schema_version"})


@app.get("/api/v1/defaults/staff", tags=["Defaults"])
def get_staff_defaults(ctx: AppContext = Depends(get_context)) -> dict:
    ctx.staff_defaults.refresh()
    return {"data": _defaults_data(ctx.staff_defaults), "meta": _meta()}


@app.put("/api/v1/defaults/staff", tags=["Defaults"])
def save_staff_defaults(payload: StaffDefaultsUpdate, ctx: AppContext = Depends(get_context)) -> dict:
    if not ctx.staff_defaults.set_markup_x(payload.markup_x):
        _fail(ctx.staff_defaults)
    return {"data": _defaults_data(ctx.staff_defaults), "meta": _meta()}


@app.get("/api/v1/defaults/transport", tags=["Defaults"])
def get_transport_defaults(ctx: AppContext = Depends(get_context)) -> dict:
    ctx.transport_defaults.refresh()
    return {"data": _defaults_data(ctx.transport_defaults), "meta": _meta()}


@app.put("/api/v1/defaults/transport", tags=["Defaults"])
def save_transport_defaults(payload: TransportDefaultsUpdate, ctx: AppContext = Depends(get_context)) -> dict:
    vehicle_types = None
    if payload.vehicle_types is not None:
        vehicle_types = [item.model_dump() for item in payload.vehicle_types]
    if not ctx.transport_defaults.save_all(markup_x=payload.markup_x, vehicle_types=vehicle_types):
        _fail(ctx.transport_defaults)
    return {"data": _defaults_data(ctx.transport_defaults), "meta": _meta()}


@app.post("/api/v1/defaults/{kind}/reset", tags=["Defaults"])
def reset_defaults(kind: str, ctx: AppContext = Depends(get_context)) -> dict:
    defaults = {"staff": ctx.staff_defaults, "transport": ctx.transport_defaults}.get(kind)
    if defaults is None:
        raise HTTPException(status_code=404, detail="defaults not found")
    defaults.reset_to_factory()
    return {"data": _defaults_data(defaults), "meta": _meta()}


# totals and save


@app.get("/api/v1/events/{event_id}/totals", tags=["Totals"])
def get_totals(event_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with ctx.totals(event_id) as totals:
        snapshot = totals.refresh()
    return {"data": snapshot.model_dump(), "meta": _meta()}


@app.post("/api/v1/events/{event_id}/save", tags=["Totals"])
def save_event(event_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    """Settle the totals snapshot, then mark the event saved so the stored total follows."""
    with ctx.totals(event_id) as totals:
        snapshot = totals.refresh()
    off = save_total_on_save(ctx.notifier, ctx.client, event_id)
    try:
        ctx.notifier.mark_saved(event_id)
    finally:
        off()
    try:
        stored = ctx.client.select("event_totals", filters={"event_id": event_id}, limit=1)
    except RemoteError as exc:
        raise HTTPException(status_code=400, detail=msg_of(exc))
    return {
        "data": {
            "event_id": event_id,
            "price_after_discounts": snapshot.price_after_discounts,
            "total_vnd": stored[0].get("total_vnd") if stored else None,
            "saved_at": ctx.notifier.last_saved_at(event_id),
        },
        "meta": _meta(),
    }


# per-center rows


class RowPayload(BaseModel):
    model_config = {
        "extra": "allow",
        "json_schema_extra": {"example": {"equipment_id": "eq-1", "qty": 4, "markup_x_override": 1.4}},
    }


def _row_store(ctx: AppContext, center: str, event_id: str):
    try:
        return ctx.row_store(center, event_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="cost center not found")


@app.get("/api/v1/events/{event_id}/{center}-rows", tags=["Cost Centers"])
def list_rows(event_id: str, center: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(_row_store(ctx, center, event_id)) as store:
        if store.error:
            _fail(store)
        return {"data": store.list(), "meta": _meta()}


@app.post("/api/v1/events/{event_id}/{center}-rows", tags=["Cost Centers"])
def create_row(event_id: str, center: str, payload: RowPayload, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(_row_store(ctx, center, event_id)) as store:
        row = store.create(payload.model_dump())
        if row is None:
            _fail(store)
        return {"data": row, "meta": _meta()}


@app.patch("/api/v1/events/{event_id}/{center}-rows/{row_id}", tags=["Cost Centers"])
def update_row(
    event_id: str,
    center: str,
    row_id: str,
    payload: RowPayload,
    ctx: AppContext = Depends(get_context),
) -> dict:
    with _mounted(_row_store(ctx, center, event_id)) as store:
        if store.find(row_id) is None:
            raise HTTPException(status_code=404, detail="row not found")
        if not store.update(row_id, payload.model_dump()):
            _fail(store)
        return {"data": store.find(row_id), "meta": _meta()}


@app.delete("/api/v1/events/{event_id}/{center}-rows/{row_id}", tags=["Cost Centers"])
def delete_row(event_id: str, center: str, row_id: str, ctx: AppContext = Depends(get_context)) -> dict:
    with _mounted(_row_store(ctx, center, event_id)) as store:
        if store.find(row_id) is None:
            raise HTTPException(status_code=404, detail="row not found")
        if not store.delete(row_id):
            _fail(store)
        return {"data": {"id": row_id, "deleted": True}, "meta": _meta()}
