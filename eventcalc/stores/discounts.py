from __future__ import annotations

from typing import Any, Mapping

from eventcalc.bus import EVENT_CHANGED, SAVED
from eventcalc.guards import sanitize_patch, to_num
from eventcalc.stores.base import RowStore

EDITABLE = ("label", "amount", "calc_mode")


class EventDiscountStore(RowStore):
    """Discount rows; a positive amount is subtracted from the price."""

    table_name = "event_discount_rows"
    totals_event = "discounts:total"
    refresh_on = (SAVED, EVENT_CHANGED)

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        calc_mode = raw.get("calc_mode")
        return {
            "id": str(raw.get("id")),
            "event_id": str(raw.get("event_id")),
            "label": raw.get("label"),
            "amount": to_num(raw.get("amount"), 0.0),
            "calc_mode": None if calc_mode is None else bool(calc_mode),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
        }

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        return sanitize_patch(
            {
                "label": patch.get("label") or "",
                "amount": patch.get("amount", 0),
                "calc_mode": bool(patch.get("calc_mode")),
            },
            qty_fields=(),
            money_fields=("amount",),
        )

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        return sanitize_patch(
            {k: v for k, v in patch.items() if k in EDITABLE},
            qty_fields=(),
            money_fields=("amount",),
        )

    @property
    def total_amount(self) -> float:
        return sum(r["amount"] for r in self.rows)
