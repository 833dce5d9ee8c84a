from __future__ import annotations

from typing import Any, Mapping

from eventcalc.guards import clamp_pos, sanitize_patch, to_null_num, to_num
from eventcalc.stores.base import RowStore

EDITABLE = (
    "equipment_id",
    "qty",
    "notes",
    "unit_cost_override",
    "vat_override_percent",
    "markup_x_override",
)


class EventEquipmentStore(RowStore):
    table_name = "event_equipment_rows"
    totals_event = "equipment:totals"

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        return {
            "id": str(raw.get("id")),
            "event_id": str(raw.get("event_id")),
            "equipment_id": raw.get("equipment_id"),
            "qty": clamp_pos(to_num(raw.get("qty"), 0.0)),
            "notes": raw.get("notes"),
            "unit_cost_override": to_null_num(raw.get("unit_cost_override")),
            "vat_override_percent": to_null_num(raw.get("vat_override_percent")),
            "markup_x_override": to_null_num(raw.get("markup_x_override")),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
        }

    def _sanitize(self, patch: Mapping[str, Any]) -> dict:
        return sanitize_patch(patch, money_fields=("unit_cost_override", "markup_x_override"))

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        return self._sanitize(
            {
                "equipment_id": patch.get("equipment_id"),
                "qty": patch.get("qty", 1),
                "notes": patch.get("notes"),
                "unit_cost_override": patch.get("unit_cost_override"),
                "vat_override_percent": patch.get("vat_override_percent"),
                "markup_x_override": patch.get("markup_x_override"),
            }
        )

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        return self._sanitize({k: v for k, v in patch.items() if k in EDITABLE})
