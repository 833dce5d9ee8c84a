from __future__ import annotations

import logging
import re
import time
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventcalc.errors import msg_of
from eventcalc.normalize import cat_allowed

logger = logging.getLogger(__name__)

ANY = "Any"
MAX_MODS = 5


class ModifierSlotConfig(BaseModel):
    label: str = ""
    categories: list[str] = Field(default_factory=list)
    required: bool = False


class BundleConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str = ""
    max_modifiers: int = 0
    dish_categories: list[str] = Field(default_factory=list)
    modifier_slots: list[ModifierSlotConfig] = Field(default_factory=list)
    markup_x: Optional[float] = None
    markup: Optional[float] = None

    @field_validator("max_modifiers", mode="before")
    @classmethod
    def _clamp_max(cls, value: Any) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            return 0
        return max(0, min(number, MAX_MODS))

    @field_validator("modifier_slots", mode="after")
    @classmethod
    def _cap_slots(cls, value: list[ModifierSlotConfig]) -> list[ModifierSlotConfig]:
        return value[:MAX_MODS]


def effective_limit(cfg: Optional[BundleConfig]) -> int:
    if cfg is None:
        return 0
    return min(cfg.max_modifiers, len(cfg.modifier_slots), MAX_MODS)


def dish_allowed(cfg: BundleConfig, category: Optional[str]) -> bool:
    return cat_allowed(cfg.dish_categories, category)


def modifier_allowed(cfg: BundleConfig, slot_index: int, category: Optional[str]) -> bool:
    if slot_index < 0 or slot_index >= len(cfg.modifier_slots):
        return False
    return cat_allowed(cfg.modifier_slots[slot_index].categories, category)


def get_markup_x(cfg: Optional[BundleConfig]) -> float:
    """Bundle price multiplier; the legacy ``markup`` field is honoured too."""
    if cfg is None:
        return 1.0
    raw = cfg.markup_x if cfg.markup_x is not None else cfg.markup
    return float(raw) if raw is not None and raw > 0 else 1.0


def validate_bundle_row(
    cfg: BundleConfig,
    dish_category: Optional[str],
    modifier_categories: Sequence[Optional[str]] = (),
) -> list[str]:
    problems: list[str] = []
    if not dish_allowed(cfg, dish_category):
        problems.append(f"dish category {dish_category!r} is not allowed in {cfg.label or 'bundle'}")
    limit = effective_limit(cfg)
    if len(modifier_categories) > limit:
        problems.append(f"at most {limit} modifiers allowed, got {len(modifier_categories)}")
    for index, category in enumerate(modifier_categories[:limit]):
        if category is None:
            continue
        if not modifier_allowed(cfg, index, category):
            label = cfg.modifier_slots[index].label or f"slot {index + 1}"
            problems.append(f"modifier category {category!r} is not allowed in {label}")
    for index, slot in enumerate(cfg.modifier_slots[:limit]):
        filled = index < len(modifier_categories) and modifier_categories[index] is not None
        if slot.required and not filled:
            problems.append(f"{slot.label or f'slot {index + 1}'} is required")
    return problems


def slugify_label(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower().strip()).strip("-")
    return slug or f"bundle-{time.time_ns() // 1_000_000}"


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def load_bundle_configs(client) -> dict[str, BundleConfig]:
    """Read ``bundle_types`` into ``{key: BundleConfig}``; unreadable rows are skipped."""
    configs: dict[str, BundleConfig] = {}
    for row in client.select("bundle_types", order=[("key", True)]):
        key = str(row.get("key") or "")
        if not key:
            continue
        try:
            configs[key] = BundleConfig(
                label=row.get("label") or key,
                max_modifiers=row.get("max_modifiers") or 0,
                dish_categories=[str(c) for c in _as_list(row.get("dish_categories"))],
                modifier_slots=[
                    ModifierSlotConfig(**slot) if isinstance(slot, dict) else ModifierSlotConfig(label=str(slot))
                    for slot in _as_list(row.get("modifier_slots"))
                ],
                markup_x=row.get("markup_x"),
            )
        except ValueError as exc:
            logger.warning("skipping bundle type %s: %s", key, msg_of(exc))
    return configs
