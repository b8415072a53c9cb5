"""Customization rules that adjust catalog nutrition for size and add-ons.

Most products are served with the catalog's own per-size figures. Products in
a named rule family (for example every "Gladiator" smoothie) carry a base
protein dose that stays fixed across cup sizes while add-on ingredients are
scaled with the cup. The rule table is static configuration: it is loaded once
at start-up and never mutated by the pipeline.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import AddOnLimitExceeded, ProductNotFound
from .models import AdjustedNutrition, MenuItem, NutritionProfile

logger = logging.getLogger(__name__)

STANDARD_RULES_LABEL = "Standard nutrition calculation"
ADD_ON_POLICIES = ("truncate", "reject")

DEFAULT_RULES: Dict[str, Dict[str, Any]] = {
    "gladiator": {
        "baseMaxIngredients": 2,
        "sizeMultipliers": {
            "small(20 oz)": 1.0,
            "medium(32 oz)": 1.5,
            "large(44 oz)": 2.0,
        },
        "baseProtein": {"affectedByMultiplier": False},
        "addOns": {
            "affectedByMultiplier": True,
            "maxAddOns": 2,
            "description": "Add-ons scale with smoothie size: 1x for small, 1.5x for medium, and 2x for large.",
        },
    },
}


@dataclass(frozen=True)
class AddOnRule:
    affected_by_multiplier: bool = True
    max_add_ons: int = 2
    description: str = ""


@dataclass(frozen=True)
class CustomizationRule:
    """Scaling policy shared by every product of one family."""

    family: str
    base_max_ingredients: int
    size_multipliers: Mapping[str, float]
    base_protein_affected_by_multiplier: bool = False
    add_ons: AddOnRule = field(default_factory=AddOnRule)

    @property
    def label(self) -> str:
        return f"{self.family.title()} custom scaling rules"

    def multiplier_for(self, size: Optional[str]) -> float:
        if not size:
            return 1.0
        if size in self.size_multipliers:
            return float(self.size_multipliers[size])
        wanted = _squash(size)
        for label, multiplier in self.size_multipliers.items():
            if _squash(label) == wanted:
                return float(multiplier)
        return 1.0

    @classmethod
    def from_dict(cls, family: str, raw: Mapping[str, Any]) -> "CustomizationRule":
        add_ons = raw.get("addOns") or {}
        return cls(
            family=family.lower(),
            base_max_ingredients=int(raw.get("baseMaxIngredients", 0)),
            size_multipliers={str(k): float(v) for k, v in (raw.get("sizeMultipliers") or {}).items()},
            base_protein_affected_by_multiplier=bool(
                (raw.get("baseProtein") or {}).get("affectedByMultiplier", False)
            ),
            add_ons=AddOnRule(
                affected_by_multiplier=bool(add_ons.get("affectedByMultiplier", True)),
                max_add_ons=int(add_ons.get("maxAddOns", 0)),
                description=str(add_ons.get("description", "")),
            ),
        )


def load_rules(path: Optional[Path] = None) -> Dict[str, CustomizationRule]:
    """Build the rule table from ``path`` (JSON) or the built-in defaults."""
    raw: Mapping[str, Any] = DEFAULT_RULES
    if path is not None:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"{path} must contain a JSON object keyed by rule family")
    rules = {family.lower(): CustomizationRule.from_dict(family, body) for family, body in raw.items()}
    logger.info("Loaded customization rules for families: %s", ", ".join(sorted(rules)) or "none")
    return rules


def resolve_rule_family(name: str, families: Iterable[str]) -> Optional[str]:
    """Return the first family whose token appears in ``name``."""
    lowered = (name or "").lower()
    for family in families:
        if family.lower() in lowered:
            return family.lower()
    return None


# Size selection predicates, tried in order. Each receives the requested size
# (possibly None) and a candidate label.
SizePredicate = Callable[[Optional[str], str], bool]
SIZE_PREDICATES: Tuple[SizePredicate, ...] = (
    lambda requested, label: bool(requested) and requested.strip().lower() in label.lower(),
    lambda requested, label: True,
)


def resolve_size(available_sizes: Sequence[str], requested: Optional[str] = None) -> Optional[str]:
    if not available_sizes:
        return None
    for predicate in SIZE_PREDICATES:
        for label in available_sizes:
            if predicate(requested, label):
                return label
    return None


class CustomizationRuleEngine:
    """Applies family rules to a base record; pure with respect to its inputs."""

    def __init__(
        self,
        rules: Mapping[str, CustomizationRule],
        add_on_lookup: Callable[[str], Optional[MenuItem]],
        *,
        add_on_policy: str = "truncate",
    ) -> None:
        if add_on_policy not in ADD_ON_POLICIES:
            raise ValueError(f"add_on_policy must be one of {ADD_ON_POLICIES}, got '{add_on_policy}'")
        self.rules = dict(rules)
        self.add_on_lookup = add_on_lookup
        self.add_on_policy = add_on_policy

    @property
    def families(self) -> List[str]:
        return sorted(self.rules)

    def check_add_on_count(self, add_ons: Sequence[str]) -> None:
        """Reject an over-long add-on list before any record is looked at.

        Only the ``reject`` policy checks here, against the strictest family
        limit, so the outcome never depends on which products are retrieved.
        """
        if self.add_on_policy != "reject" or not self.rules:
            return
        strictest = min(self.rules.values(), key=lambda rule: rule.add_ons.max_add_ons)
        limit = strictest.add_ons.max_add_ons
        if len(add_ons) > limit:
            raise AddOnLimitExceeded(strictest.family, len(add_ons), limit)

    def apply_rules(
        self,
        base_record: Optional[MenuItem],
        requested_size: Optional[str] = None,
        add_ons: Sequence[str] = (),
    ) -> AdjustedNutrition:
        if base_record is None:
            raise ProductNotFound("Product not found")

        size = resolve_size(base_record.available_sizes, requested_size)
        base_profile = base_record.nutrition_for(size)
        rule = self.rules.get(base_record.rule_family or "")
        if rule is None:
            return AdjustedNutrition(
                name=base_record.name,
                size=size,
                add_ons=list(add_ons),
                base_nutrition=_amounts(base_profile),
                nutrition=_amounts(base_profile),
                units=_units(base_profile),
                applied_rules_label=STANDARD_RULES_LABEL,
            )
        return self._apply_family_rule(rule, base_record, size, base_profile, list(add_ons))

    def _apply_family_rule(
        self,
        rule: CustomizationRule,
        base_record: MenuItem,
        size: Optional[str],
        base_profile: NutritionProfile,
        add_ons: List[str],
    ) -> AdjustedNutrition:
        kept, dropped = self._cap_add_ons(rule, add_ons)
        multiplier = rule.multiplier_for(size) if rule.add_ons.affected_by_multiplier else 1.0

        base = _amounts(base_profile)
        units = _units(base_profile)
        if rule.base_protein_affected_by_multiplier and "protein" in base:
            base["protein"] = round(base["protein"] * rule.multiplier_for(size), 2)

        totals = dict(base)
        contributions: Dict[str, Dict[str, float]] = {}
        applied: List[str] = []
        skipped: List[str] = []
        for add_on in kept:
            record = self.add_on_lookup(add_on)
            if record is None:
                logger.warning("Unknown add-on '%s' for %s; skipping", add_on, base_record.name)
                skipped.append(add_on)
                continue
            applied.append(add_on)
            profile = record.nutrition_for(resolve_size(record.available_sizes))
            scaled = {key: round(value * multiplier, 2) for key, value in _amounts(profile).items()}
            contributions[record.name] = scaled
            for key, value in scaled.items():
                totals[key] = round(totals.get(key, 0.0) + value, 2)
            for key, unit in _units(profile).items():
                units.setdefault(key, unit)

        return AdjustedNutrition(
            name=base_record.name,
            size=size,
            add_ons=applied,
            dropped_add_ons=dropped,
            skipped_add_ons=skipped,
            base_nutrition=base,
            add_on_nutrition=contributions,
            nutrition=totals,
            units=units,
            applied_rules_label=rule.label,
        )

    def _cap_add_ons(self, rule: CustomizationRule, add_ons: List[str]) -> Tuple[List[str], List[str]]:
        limit = rule.add_ons.max_add_ons
        if len(add_ons) <= limit:
            return add_ons, []
        if self.add_on_policy == "reject":
            raise AddOnLimitExceeded(rule.family, len(add_ons), limit)
        logger.info("Dropping add-ons beyond %s for %s: %s", limit, rule.family, add_ons[limit:])
        return add_ons[:limit], add_ons[limit:]


def _amounts(profile: NutritionProfile) -> Dict[str, float]:
    return {key: float(value.amount) for key, value in profile.items()}


def _units(profile: NutritionProfile) -> Dict[str, str]:
    return {key: value.unit for key, value in profile.items() if value.unit}


def _squash(label: str) -> str:
    return "".join(label.lower().split())
