from __future__ import annotations

from typing import Any, Mapping

from eventcalc.guards import clamp_pos, sanitize_patch, to_null_num, to_num
from eventcalc.stores.base import RowStore

EDITABLE = ("asset_name", "asset_id", "qty", "include_price", "unit_price_vnd", "notes")


def sanitize_asset_patch(patch: Mapping[str, Any]) -> dict:
    """Clamp qty and keep ``unit_price_vnd`` in step with ``include_price``."""
    return sanitize_patch(
        patch,
        money_fields=("unit_price_vnd",),
        price_toggles={"include_price": "unit_price_vnd"},
    )


class EventCompanyAssetStore(RowStore):
    table_name = "event_company_asset_rows"
    totals_event = "assets:total"

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        return {
            "id": str(raw.get("id")),
            "event_id": str(raw.get("event_id")),
            "asset_name": raw.get("asset_name"),
            "asset_id": raw.get("asset_id"),
            "qty": clamp_pos(to_num(raw.get("qty"), 0.0)),
            "include_price": bool(raw.get("include_price")),
            "unit_price_vnd": to_null_num(raw.get("unit_price_vnd")),
            "notes": raw.get("notes"),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
        }

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        defaults = {
            "asset_name": None,
            "asset_id": None,
            "qty": 1,
            "include_price": False,
            "unit_price_vnd": None,
            "notes": None,
        }
        defaults.update({k: v for k, v in patch.items() if k in EDITABLE})
        return sanitize_asset_patch(defaults)

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        return sanitize_asset_patch({k: v for k, v in patch.items() if k in EDITABLE})

    @property
    def total_price(self) -> float:
        return sum(
            r["qty"] * clamp_pos(to_num(r.get("unit_price_vnd"), 0.0))
            for r in self.rows
            if r.get("include_price")
        )
