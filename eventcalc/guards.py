from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional


def to_num(value: Any, fallback: float = 0.0) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else fallback
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return fallback
        try:
            number = float(text)
        except ValueError:
            return fallback
        return number if math.isfinite(number) else fallback
    if value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def js_round(value: float) -> int:
    """Half-up rounding: 2.5 becomes 3 and -2.5 becomes -2."""
    return int(math.floor(value + 0.5))


def clamp_pos(value: float) -> float:
    return max(0.0, value) if math.isfinite(value) else 0.0


def clamp_non_neg_int(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return max(0, math.floor(value))


def clamp_markup(value: Any) -> float:
    number = to_num(value, 1.0)
    return number if number > 0 else 1.0


def to_bool(value: Any, fallback: bool) -> bool:
    if value is True or value in ("true", 1, "1"):
        return True
    if value is False or value in ("false", 0, "0"):
        return False
    return fallback


def to_null_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_null_num(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    number = to_num(value, math.nan)
    return None if math.isnan(number) else number


def to_null_int(value: Any) -> Optional[int]:
    number = to_null_num(value)
    return None if number is None else math.trunc(number)


def _created_ts(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, datetime):
        return value.timestamp()
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def stable_sort_key(row: Mapping[str, Any]) -> tuple[float, str]:
    return _created_ts(row.get("created_at")), str(row.get("id", ""))


def sort_rows_stable(rows: Iterable[Mapping[str, Any]]) -> list[dict]:
    """Order rows by creation time ascending, then id ascending."""
    return sorted((dict(row) for row in rows), key=stable_sort_key)


def sanitize_patch(
    patch: Mapping[str, Any],
    qty_fields: Iterable[str] = ("qty",),
    money_fields: Iterable[str] = (),
    price_toggles: Optional[Mapping[str, str]] = None,
    int_qty: bool = False,
) -> dict:
    """Clamp quantities and money fields and couple include-price toggles.

    Only keys present in ``patch`` are touched. A ``None`` money value stays
    ``None``; a toggle set to False forces its price field to ``None``, a
    toggle set to True forces it to a non-negative number (0 when missing).
    Applying the sanitizer to its own output returns the same dict.
    """
    out = dict(patch)
    for field in qty_fields:
        if field in out and out[field] is not None:
            number = to_num(out[field], 0.0)
            out[field] = clamp_non_neg_int(number) if int_qty else clamp_pos(number)
    for field in money_fields:
        if field in out and out[field] is not None:
            out[field] = clamp_pos(to_num(out[field], 0.0))
    for toggle, price_field in (price_toggles or {}).items():
        if toggle not in out or out[toggle] is None:
            continue
        enabled = bool(out[toggle])
        out[toggle] = enabled
        if not enabled:
            out[price_field] = None
        else:
            out[price_field] = clamp_pos(to_num(out.get(price_field), 0.0))
    return out
