from __future__ import annotations

from typing import Any, Mapping

from eventcalc.guards import clamp_pos, sanitize_patch, to_null_num, to_num
from eventcalc.stores.base import RowStore

EDITABLE = ("name", "role", "cost_per_hour", "hours", "markup_x", "notes")


class EventStaffStore(RowStore):
    table_name = "event_staff_rows"
    totals_event = "staff:totals"
    optimistic_update = True

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        return {
            "id": str(raw.get("id")),
            "event_id": str(raw.get("event_id")),
            "name": str(raw.get("name") or ""),
            "role": str(raw.get("role") or ""),
            "cost_per_hour": clamp_pos(to_num(raw.get("cost_per_hour"), 0.0)),
            "hours": clamp_pos(to_num(raw.get("hours"), 0.0)),
            "markup_x": to_null_num(raw.get("markup_x")),
            "notes": raw.get("notes"),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
        }

    def _sanitize(self, patch: Mapping[str, Any]) -> dict:
        out = sanitize_patch(patch, qty_fields=("hours",), money_fields=("cost_per_hour", "markup_x"))
        for field in ("name", "role"):
            if field in out:
                out[field] = str(out[field] or "")
        return out

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        return self._sanitize(
            {
                "name": patch.get("name", ""),
                "role": patch.get("role", ""),
                "cost_per_hour": patch.get("cost_per_hour", 0),
                "hours": patch.get("hours", 0),
                "markup_x": patch.get("markup_x"),
                "notes": patch.get("notes"),
            }
        )

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        return self._sanitize({k: v for k, v in patch.items() if k in EDITABLE})

    @property
    def cost_total(self) -> float:
        return sum(r["cost_per_hour"] * r["hours"] for r in self.rows)
