from __future__ import annotations

import math
import re
import unicodedata
from typing import Any, Iterable, Mapping, Optional

from eventcalc.guards import clamp_non_neg_int, clamp_pos, to_num

SCOPES = ("total", "bundles", "equipment", "staff", "transport", "assets")

PERCENT_FIELDS = ("percent", "percentage", "rate")
SCOPE_FIELDS = ("scope", "apply_on", "base")

_SCOPE_ALIASES = {
    "total": "total",
    "grand": "total",
    "grand_total": "total",
    "price": "total",
    "bundles": "bundles",
    "bundle": "bundles",
    "equipment": "equipment",
    "staff": "staff",
    "transport": "transport",
    "assets": "assets",
    "asset": "assets",
}

WILDCARDS = ("any", "*")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _percent_from_number(value: float) -> Optional[float]:
    if not math.isfinite(value):
        return None
    if value <= 1:
        return value if value >= 0 else None
    if value < 1000:
        return value / 100
    return None


def parse_percent_any(record: Optional[Mapping[str, Any]]) -> Optional[float]:
    """Read percent/percentage/rate and return a fraction in [0, 1].

    Values up to 1 are already fractions, values in (1, 1000) are whole
    percents. Anything else is unknown and yields None. A literal 1 is read
    as 100%.
    """
    if not record:
        return None
    candidate = None
    for field in PERCENT_FIELDS:
        if record.get(field) is not None:
            candidate = record[field]
            break
    if candidate is None:
        return None
    if isinstance(candidate, str):
        text = re.sub(r"[%\s]", "", candidate.replace(",", ".", 1))
        if not text:
            return None
        try:
            return _percent_from_number(float(text))
        except ValueError:
            return None
    if isinstance(candidate, bool):
        return None
    try:
        return _percent_from_number(float(candidate))
    except (TypeError, ValueError):
        return None


def normalize_scope(raw: Any) -> str:
    key = str(raw if raw is not None else "").strip().lower()
    if not key:
        return "total"
    return _SCOPE_ALIASES.get(key, "total")


def scope_of(record: Mapping[str, Any]) -> str:
    for field in SCOPE_FIELDS:
        if record.get(field) is not None:
            return normalize_scope(record[field])
    return "total"


def gross_unit_cost(
    net: Any,
    vat_percent: Any,
    uses_vat: bool,
    vat_inclusive: Any = None,
) -> float:
    if vat_inclusive is not None:
        return clamp_pos(to_num(vat_inclusive, 0.0))
    base = clamp_pos(to_num(net, 0.0))
    if not uses_vat:
        return base
    return base * (1 + to_num(vat_percent, 0.0) / 100)


def normalize_extra_fee_row(raw: Mapping[str, Any]) -> dict:
    """Canonical extra-fee row; raw percent/scope fields are passed through."""
    return {
        "id": str(raw.get("id")),
        "event_id": str(raw.get("event_id")),
        "label": str(raw.get("label") or ""),
        "amount": clamp_pos(to_num(raw.get("amount"), 0.0)),
        "notes": raw.get("notes"),
        "qty": clamp_non_neg_int(to_num(raw.get("qty"), 1.0)),
        "unit_price": None if raw.get("unit_price") is None else clamp_pos(to_num(raw["unit_price"], 0.0)),
        "calc_mode": bool(raw.get("calc_mode")),
        "cost": None if raw.get("cost") is None else clamp_pos(to_num(raw["cost"], 0.0)),
        "markup_x": None if raw.get("markup_x") is None else clamp_pos(to_num(raw["markup_x"], 0.0)),
        "created_at": raw.get("created_at"),
        "updated_at": raw.get("updated_at"),
        "percent": raw.get("percent"),
        "percentage": raw.get("percentage"),
        "rate": raw.get("rate"),
        "percent_norm": parse_percent_any(raw),
        "base": raw.get("base"),
        "apply_on": raw.get("apply_on"),
        "scope": raw.get("scope"),
        "scope_norm": scope_of(raw),
    }


def cat_key(value: Optional[str]) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("-", stripped.lower().strip()).strip("-")


def cat_allowed(allowed: Optional[Iterable[str]], candidate: Optional[str]) -> bool:
    allowed_list = list(allowed or [])
    if not allowed_list:
        return False
    keys = {cat_key(item) for item in allowed_list}
    # cat_key("*") collapses to "", so the raw token is checked too
    if "any" in keys or any(str(item).strip() == "*" for item in allowed_list):
        return True
    key = cat_key(candidate)
    if not key:
        return False
    return key in keys


def slugify(value: str, fallback: str = "item") -> str:
    return cat_key(value) or fallback


_UOM_TABLE = {
    "kg": ("gr", 1000),
    "kilogram": ("gr", 1000),
    "kilograms": ("gr", 1000),
    "g": ("gr", 1),
    "gr": ("gr", 1),
    "gram": ("gr", 1),
    "grams": ("gr", 1),
    "l": ("ml", 1000),
    "lt": ("ml", 1000),
    "liter": ("ml", 1000),
    "liters": ("ml", 1000),
    "dl": ("ml", 100),
    "cl": ("ml", 10),
    "ml": ("ml", 1),
    "pc": ("unit", 1),
    "pcs": ("unit", 1),
    "piece": ("unit", 1),
    "pieces": ("unit", 1),
    "unit": ("unit", 1),
    "units": ("unit", 1),
}


def normalize_uom(raw: Optional[str]) -> tuple[str, int]:
    """Canonical unit of measure and the multiplier to apply to quantities."""
    return _UOM_TABLE.get(str(raw or "").strip().lower(), ("unit", 1))
