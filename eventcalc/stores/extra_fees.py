from __future__ import annotations

from typing import Any, Mapping, Optional

from eventcalc.guards import clamp_non_neg_int, clamp_pos, sanitize_patch, to_num
from eventcalc.normalize import normalize_extra_fee_row
from eventcalc.stores.base import RowStore

EDITABLE = ("label", "amount", "notes", "qty", "unit_price", "calc_mode", "cost", "markup_x", "percent", "scope")
MONEY_FIELDS = ("amount", "unit_price", "cost", "markup_x")


def _clean_notes(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


class EventExtraFeeStore(RowStore):
    """Extra fees; rows carry ``percent_norm`` and ``scope_norm`` next to the raw fields."""

    table_name = "event_extra_fee_rows"
    totals_event = "extrafee:total"
    optimistic_update = True

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        return normalize_extra_fee_row(raw)

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        calc_mode = bool(patch.get("calc_mode", False))
        payload = {
            "label": str(patch.get("label") or "").strip(),
            "amount": clamp_pos(to_num(patch.get("amount"), 0.0)),
            "notes": _clean_notes(patch.get("notes")),
            "qty": clamp_non_neg_int(to_num(patch.get("qty"), 1.0)),
            "calc_mode": calc_mode,
            "unit_price": None if calc_mode else clamp_pos(to_num(patch.get("unit_price"), 0.0)),
            "cost": clamp_pos(to_num(patch.get("cost"), 0.0)) if calc_mode else None,
            "markup_x": clamp_pos(to_num(patch.get("markup_x"), 0.0)) if calc_mode else None,
        }
        for field in ("percent", "scope"):
            if patch.get(field) is not None:
                payload[field] = patch[field]
        return payload

    def prepare_update(self, patch: Mapping[str, Any]) -> dict:
        out = sanitize_patch(
            {k: v for k, v in patch.items() if k in EDITABLE},
            money_fields=MONEY_FIELDS,
            int_qty=True,
        )
        if "label" in out:
            out["label"] = str(out["label"] or "").strip()
        if "notes" in out:
            out["notes"] = _clean_notes(out["notes"])
        if "calc_mode" in out:
            out["calc_mode"] = bool(out["calc_mode"])
        return out

    @property
    def total_amount(self) -> float:
        return sum(r["amount"] for r in self.rows)
