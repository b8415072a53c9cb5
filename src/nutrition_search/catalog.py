"""Loads the scraped menu JSON into typed records."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .intent import mentions
from .models import MenuItem, NutritionAmount, NutritionProfile
from .rules import resolve_rule_family

logger = logging.getLogger(__name__)

INGREDIENT_CATEGORY = "Ingredient"


class MenuCatalog:
    """In-memory view of every catalog file under ``root``.

    Record ids follow the indexing job: an explicit ``id`` wins, otherwise
    ``<file stem>_<position>``, so ids line up with the record store.
    """

    def __init__(self, root: Optional[Path], rule_families: Iterable[str] = ()) -> None:
        self.root = Path(root) if root else None
        self.rule_families = [family.lower() for family in rule_families]
        self.items: List[MenuItem] = []
        self.item_lookup: Dict[str, MenuItem] = {}
        self.fingerprint: Optional[str] = None
        self._by_name: Dict[str, MenuItem] = {}
        self._add_ons: Dict[str, MenuItem] = {}

    def load(self) -> "MenuCatalog":
        if self.root is None or not self.root.exists():
            logger.warning("Catalog directory %s not found; rule lookups will use retrieval metadata", self.root)
            return self
        digest = hashlib.sha256()
        items: List[MenuItem] = []
        for path in sorted(self.root.glob("*.json")):
            raw_bytes = path.read_bytes()
            digest.update(raw_bytes)
            items.extend(self._iter_items(path.stem, json.loads(raw_bytes)))
        self.fingerprint = digest.hexdigest()
        self._index(items)
        logger.info("Catalog loaded: %s items (fingerprint %s)", len(items), self.fingerprint[:12])
        return self

    @classmethod
    def from_items(cls, items: Sequence[MenuItem]) -> "MenuCatalog":
        catalog = cls(None)
        catalog._index(items)
        return catalog

    def __len__(self) -> int:
        return len(self.items)

    def get(self, item_id: str) -> Optional[MenuItem]:
        return self.item_lookup.get(item_id)

    def find_by_name(self, name: Optional[str]) -> Optional[MenuItem]:
        if not name:
            return None
        return self._by_name.get(name.strip().lower())

    def add_on(self, name: str) -> Optional[MenuItem]:
        """Find an ingredient by exact name, then by whole-word containment either way."""
        key = name.strip().lower()
        if not key:
            return None
        if key in self._add_ons:
            return self._add_ons[key]
        for candidate_key, item in self._add_ons.items():
            if mentions(candidate_key, key) or mentions(key, candidate_key):
                return item
        return None

    def add_on_names(self) -> List[str]:
        return [item.name for item in self._add_ons.values()]

    # ------------------------------------------------------------------ #
    # Parsing
    # ------------------------------------------------------------------ #

    def _index(self, items: Sequence[MenuItem]) -> None:
        self.items = list(items)
        self.item_lookup = {item.id: item for item in self.items}
        self._by_name = {}
        self._add_ons = {}
        for item in self.items:
            self._by_name.setdefault(item.name.lower(), item)
            if item.category == INGREDIENT_CATEGORY:
                self._add_ons.setdefault(item.name.lower(), item)

    def _iter_items(self, stem: str, payload: Any) -> Iterable[MenuItem]:
        records = payload.get("items", []) if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            logger.warning("Skipping %s: expected a list of records", stem)
            return
        for position, raw in enumerate(records):
            if not isinstance(raw, dict) or not raw.get("name"):
                continue
            try:
                yield self._build_item(stem, position, raw)
            except (ValidationError, ValueError, TypeError) as exc:
                logger.warning("Skipping %s_%s (%s): %s", stem, position, raw.get("name"), exc)

    def _build_item(self, stem: str, position: int, raw: Mapping[str, Any]) -> MenuItem:
        name = str(raw["name"]).strip()
        sizes: List[str] = []
        size_nutrition: Dict[str, NutritionProfile] = {}
        for label, block in (raw.get("sizeInformation") or {}).items():
            sizes.append(label)
            size_nutrition[label] = self._normalize_nutrition((block or {}).get("nutritionInformation") or {})
        flat = raw.get("nutritionInformation") or raw.get("nutrition") or {}
        category = raw.get("category") or INGREDIENT_CATEGORY
        return MenuItem(
            id=str(raw.get("id") or f"{stem}_{position}"),
            name=name,
            category=str(category),
            serving_size=raw.get("servingSize"),
            allergens=frozenset(str(a) for a in raw.get("allergens") or []),
            ingredients=tuple(str(i) for i in raw.get("ingredients") or []),
            available_sizes=tuple(sizes),
            nutrition={} if sizes else self._normalize_nutrition(flat),
            size_nutrition=size_nutrition,
            rule_family=resolve_rule_family(name, self.rule_families),
        )

    @staticmethod
    def _normalize_nutrition(raw: Mapping[str, Any]) -> NutritionProfile:
        profile: NutritionProfile = {}
        for key, value in raw.items():
            if isinstance(value, dict):
                amount = value.get("amount")
                unit = str(value.get("unit") or "")
            else:
                amount = value
                unit = "kcal" if key == "calories" else ""
            if amount in (None, "", "N/A"):
                continue
            try:
                profile[key] = NutritionAmount(amount=float(amount), unit=unit)
            except (TypeError, ValueError):
                continue
        return profile
