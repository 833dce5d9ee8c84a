from __future__ import annotations

import copy
from typing import Any, Callable, Mapping, Optional, Sequence

from eventcalc.bundle_config import MAX_MODS, BundleConfig, effective_limit, validate_bundle_row
from eventcalc.errors import RemoteError, StoreValidationError
from eventcalc.guards import clamp_pos, sanitize_patch, sort_rows_stable, to_num
from eventcalc.remote import RowStoreClient
from eventcalc.stores.base import RowStore, tentative_id

ROWS_TABLE = "event_bundle_rows"

CategoryLookup = Callable[[str], Optional[str]]


def normalize_bundle_row(raw: Mapping[str, Any]) -> dict:
    modifiers = raw.get("modifiers")
    return {
        "id": str(raw.get("id")),
        "bundle_id": str(raw.get("bundle_id")),
        "dish_id": str(raw.get("dish_id") or ""),
        "qty": clamp_pos(to_num(raw.get("qty"), 0.0)),
        "modifiers": [str(m) for m in modifiers] if isinstance(modifiers, (list, tuple)) else [],
        "created_at": raw.get("created_at"),
    }


class EventBundleStore(RowStore):
    """Menu bundles of an event, each with its ordered bundle rows.

    With ``configs`` (keyed by bundle ``type_key``) the modifier count of a row
    is held to its bundle type's limit. With ``category_of`` (dish id to
    category name) as well, dish and modifier categories are checked too.
    Nothing is written when a check fails.
    """

    table_name = "event_bundles"
    totals_event = "bundles:totals"

    def __init__(
        self,
        client: RowStoreClient,
        event_id: Optional[str],
        notifier=None,
        configs: Optional[Mapping[str, BundleConfig]] = None,
        category_of: Optional[CategoryLookup] = None,
        autoload: bool = True,
    ) -> None:
        self.configs = dict(configs or {})
        self.category_of = category_of
        super().__init__(client, event_id, notifier, autoload)

    def list(self) -> list[dict]:
        return copy.deepcopy(self.rows)

    def normalize(self, raw: Mapping[str, Any]) -> dict:
        return {
            "id": str(raw.get("id")),
            "event_id": str(raw.get("event_id")),
            "type_key": str(raw.get("type_key") or ""),
            "label": str(raw.get("label") or ""),
            "created_at": raw.get("created_at"),
            "rows": sort_rows_stable(normalize_bundle_row(r) for r in raw.get("rows") or []),
        }

    def _fetch(self) -> list[dict]:
        bundles = self.client.select(self.table_name, filters={"event_id": self.event_id}, order=self.remote_order)
        ids = [b["id"] for b in bundles]
        rows = self.client.select(ROWS_TABLE, filters={"bundle_id": ids}, order=self.remote_order) if ids else []
        by_bundle: dict[str, list[dict]] = {}
        for row in rows:
            by_bundle.setdefault(str(row.get("bundle_id")), []).append(row)
        return [{**b, "rows": by_bundle.get(str(b["id"]), [])} for b in bundles]

    def prepare_create(self, patch: Mapping[str, Any]) -> dict:
        type_key = str(patch.get("type_key") or "").strip()
        if not type_key:
            raise StoreValidationError("Missing bundle type")
        cfg = self.configs.get(type_key)
        label = patch.get("label") or (cfg.label if cfg is not None else "") or type_key
        return {"type_key": type_key, "label": str(label)}

    def _insert(self, payload: Mapping[str, Any]) -> dict:
        return {**self.client.insert(self.table_name, payload), "rows": []}

    def create_bundle(self, type_key: str, label: Optional[str] = None) -> Optional[dict]:
        return self.create({"type_key": type_key, "label": label})

    def delete_bundle(self, bundle_id: str) -> bool:
        """Delete the bundle's rows, then the bundle itself."""
        snapshot = copy.deepcopy(self.rows)
        self.rows = [b for b in self.rows if b["id"] != bundle_id]
        try:
            self.client.delete(ROWS_TABLE, {"bundle_id": bundle_id})
            self.client.delete(self.table_name, {"id": bundle_id})
        except RemoteError as exc:
            self.rows = snapshot
            self._fail("delete_bundle", exc)
            return False
        self.error = None
        self._changed()
        return True

    def delete(self, row_id: str) -> bool:
        return self.delete_bundle(row_id)

    def _bundle(self, bundle_id: str) -> Optional[dict]:
        for bundle in self.rows:
            if bundle["id"] == bundle_id:
                return bundle
        return None

    def _bundle_of_row(self, row_id: str) -> Optional[dict]:
        for bundle in self.rows:
            if any(r["id"] == row_id for r in bundle["rows"]):
                return bundle
        return None

    def _validate(self, bundle: Optional[dict], dish_id: str, modifiers: Sequence[str]) -> None:
        if len(modifiers) > MAX_MODS:
            raise StoreValidationError(f"at most {MAX_MODS} modifiers allowed")
        if bundle is None:
            return
        cfg = self.configs.get(bundle["type_key"])
        if cfg is None:
            return
        limit = effective_limit(cfg)
        if len(modifiers) > limit:
            raise StoreValidationError(f"at most {limit} modifiers allowed, got {len(modifiers)}")
        if self.category_of is None:
            return
        problems = validate_bundle_row(
            cfg,
            self.category_of(dish_id),
            [self.category_of(m) for m in modifiers],
        )
        if problems:
            raise StoreValidationError("; ".join(problems))

    def add_row(
        self,
        bundle_id: str,
        dish_id: str,
        qty: Any = 1,
        modifiers: Optional[Sequence[str]] = None,
    ) -> Optional[dict]:
        bundle = self._bundle(bundle_id)
        if bundle is None:
            self.error = "bundle not found"
            return None
        mods = [str(m) for m in modifiers or []]
        try:
            if not dish_id:
                raise StoreValidationError("Missing dish")
            self._validate(bundle, dish_id, mods)
        except StoreValidationError as exc:
            self.error = str(exc)
            return None
        payload = sanitize_patch({"bundle_id": bundle_id, "dish_id": dish_id, "qty": qty, "modifiers": mods})
        tmp_id = tentative_id()
        bundle["rows"].append(normalize_bundle_row({**payload, "id": tmp_id}))
        try:
            echo = self.client.insert(ROWS_TABLE, payload)
        except RemoteError as exc:
            bundle["rows"] = [r for r in bundle["rows"] if r["id"] != tmp_id]
            self._fail("add_row", exc)
            return None
        row = normalize_bundle_row(echo)
        bundle["rows"] = [row if r["id"] == tmp_id else r for r in bundle["rows"]]
        self.error = None
        self._changed()
        return dict(row)

    def update_row(self, row_id: str, patch: Mapping[str, Any]) -> bool:
        bundle = self._bundle_of_row(row_id)
        current = next((r for r in bundle["rows"] if r["id"] == row_id), None) if bundle else None
        payload = sanitize_patch({k: v for k, v in patch.items() if k in ("dish_id", "qty", "modifiers")})
        if "modifiers" in payload:
            payload["modifiers"] = [str(m) for m in payload["modifiers"] or []]
        if not payload:
            return True
        try:
            if "dish_id" in payload and not payload["dish_id"]:
                raise StoreValidationError("Missing dish")
            if "dish_id" in payload or "modifiers" in payload:
                self._validate(
                    bundle,
                    payload.get("dish_id", current["dish_id"] if current else ""),
                    payload.get("modifiers", current["modifiers"] if current else []),
                )
        except StoreValidationError as exc:
            self.error = str(exc)
            return False
        try:
            echo = self.client.update(ROWS_TABLE, payload, {"id": row_id})
        except RemoteError as exc:
            self._fail("update_row", exc)
            return False
        if bundle is not None:
            merged = normalize_bundle_row(echo[0] if echo else {**(current or {}), **payload})
            bundle["rows"] = [merged if r["id"] == row_id else r for r in bundle["rows"]]
        self.error = None
        self._changed()
        return True

    def delete_row(self, row_id: str) -> bool:
        snapshot = copy.deepcopy(self.rows)
        bundle = self._bundle_of_row(row_id)
        if bundle is not None:
            bundle["rows"] = [r for r in bundle["rows"] if r["id"] != row_id]
        try:
            self.client.delete(ROWS_TABLE, {"id": row_id})
        except RemoteError as exc:
            self.rows = snapshot
            self._fail("delete_row", exc)
            return False
        self.error = None
        self._changed()
        return True
