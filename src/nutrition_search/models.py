from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

# Nutrition scalars copied into the record store metadata by the indexing job.
FLATTENED_NUTRIENTS = ("calories", "protein", "carbs", "fat", "sugar", "fiber")
METADATA_INGREDIENT_LIMIT = 20

BOWL_TOKEN = "bowl"
POWER_EATS_LABEL = "power eats"


def is_bowl_category(label: Optional[str]) -> bool:
    return bool(label) and BOWL_TOKEN in label.lower()


def is_power_eats_category(label: Optional[str]) -> bool:
    return bool(label) and label.strip().lower() == POWER_EATS_LABEL


class CategoryFilter(str, Enum):
    ALL = "all"
    SMOOTHIES = "smoothies"
    BOWLS = "bowls"
    POWER_EATS = "power-eats"

    @property
    def display_name(self) -> str:
        """Plural label used when talking about the results in prose."""
        return {
            CategoryFilter.ALL: "items",
            CategoryFilter.SMOOTHIES: "smoothies",
            CategoryFilter.BOWLS: "smoothie bowls",
            CategoryFilter.POWER_EATS: "power eats",
        }[self]

    def matches(self, label: Optional[str]) -> bool:
        """Case-insensitive category predicate applied to every returned item."""
        if self is CategoryFilter.ALL:
            return True
        if self is CategoryFilter.BOWLS:
            return is_bowl_category(label)
        if self is CategoryFilter.POWER_EATS:
            return is_power_eats_category(label)
        return not is_bowl_category(label) and not is_power_eats_category(label)


class NutritionAmount(BaseModel):
    amount: float
    unit: str = ""


NutritionProfile = Dict[str, NutritionAmount]


class MenuItem(BaseModel):
    """A catalog entry: smoothie, bowl, power eat or ingredient."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str = ""
    serving_size: Optional[str] = None
    allergens: FrozenSet[str] = frozenset()
    ingredients: Tuple[str, ...] = ()
    available_sizes: Tuple[str, ...] = ()
    nutrition: NutritionProfile = Field(default_factory=dict)
    size_nutrition: Dict[str, NutritionProfile] = Field(default_factory=dict)
    rule_family: Optional[str] = None

    @field_validator("size_nutrition")
    @classmethod
    def _sizes_need_nutrition(
        cls, value: Dict[str, NutritionProfile], info: ValidationInfo
    ) -> Dict[str, NutritionProfile]:
        sizes = info.data.get("available_sizes") or ()
        missing = [size for size in sizes if size not in value]
        if missing:
            raise ValueError(f"no nutrition for sizes: {', '.join(missing)}")
        return value

    @property
    def has_sizes(self) -> bool:
        return bool(self.available_sizes)

    @property
    def display_size(self) -> Optional[str]:
        """Size the indexing job flattens into metadata: medium, then 20 oz, then first."""
        if not self.available_sizes:
            return None
        for predicate in (lambda s: "medium" in s, lambda s: "20" in s):
            for size in self.available_sizes:
                if predicate(size):
                    return size
        return self.available_sizes[0]

    def nutrition_for(self, size: Optional[str]) -> NutritionProfile:
        """Return a copy of the nutrition profile for ``size`` (flat records ignore it)."""
        if not self.has_sizes:
            return dict(self.nutrition)
        if size not in self.size_nutrition:
            raise KeyError(f"{self.name} has no size '{size}'")
        return dict(self.size_nutrition[size])

    def flat_metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "allergens": sorted(self.allergens),
            "ingredients": list(self.ingredients[:METADATA_INGREDIENT_LIMIT]),
        }
        if self.serving_size:
            metadata["servingSize"] = self.serving_size
        profile = self.nutrition
        if self.has_sizes:
            metadata["availableSizes"] = list(self.available_sizes)
            metadata["nutritionSize"] = self.display_size
            profile = self.size_nutrition[self.display_size]
        for key in FLATTENED_NUTRIENTS:
            if key in profile:
                metadata[f"nutrition_{key}"] = profile[key].amount
        return metadata


class QueryIntent(BaseModel):
    product_name_hint: str = ""
    size_hint: Optional[str] = None
    add_ons: List[str] = Field(default_factory=list)
    info_requested: Set[str] = Field(default_factory=set)


class AdjustedNutrition(BaseModel):
    """Outcome of running a record through the customization rules."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    size: Optional[str] = None
    add_ons: List[str] = Field(default_factory=list, alias="addOns")
    dropped_add_ons: List[str] = Field(default_factory=list, alias="droppedAddOns")
    skipped_add_ons: List[str] = Field(default_factory=list, alias="skippedAddOns")
    base_nutrition: Dict[str, float] = Field(default_factory=dict, alias="baseNutrition")
    add_on_nutrition: Dict[str, Dict[str, float]] = Field(default_factory=dict, alias="addOnNutrition")
    nutrition: Dict[str, float] = Field(default_factory=dict)
    units: Dict[str, str] = Field(default_factory=dict)
    applied_rules_label: str = Field(..., alias="appliedRulesLabel")


class RankedResult(BaseModel):
    """A retrieval match joined with its rerank score, as returned to callers."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    score: float = 0.0
    rerank_score: Optional[float] = Field(None, alias="rerankScore")
    name: Optional[str] = None
    category: Optional[str] = None
    serving_size: Optional[str] = Field(None, alias="servingSize")
    allergens: List[str] = Field(default_factory=list)
    ingredients: List[str] = Field(default_factory=list)
    available_sizes: List[str] = Field(default_factory=list, alias="availableSizes")
    nutrition_size: Optional[str] = Field(None, alias="nutritionSize")
    nutrition_calories: Optional[float] = None
    nutrition_protein: Optional[float] = None
    nutrition_carbs: Optional[float] = None
    nutrition_fat: Optional[float] = None
    nutrition_sugar: Optional[float] = None
    nutrition_fiber: Optional[float] = None
    customization: Optional[AdjustedNutrition] = None

    @classmethod
    def from_metadata(
        cls,
        item_id: str,
        score: float,
        metadata: Mapping[str, Any],
        *,
        rerank_score: Optional[float] = None,
    ) -> "RankedResult":
        payload: Dict[str, Any] = {
            "id": item_id,
            "score": score,
            "rerankScore": rerank_score,
            "name": metadata.get("name"),
            "category": metadata.get("category"),
            "servingSize": metadata.get("servingSize"),
            "allergens": list(metadata.get("allergens") or []),
            "ingredients": list(metadata.get("ingredients") or []),
            "availableSizes": list(metadata.get("availableSizes") or []),
            "nutritionSize": metadata.get("nutritionSize"),
        }
        for key in FLATTENED_NUTRIENTS:
            payload[f"nutrition_{key}"] = metadata.get(f"nutrition_{key}")
        return cls.model_validate(payload)

    def flattened_nutrition(self) -> Dict[str, float]:
        values = {key: getattr(self, f"nutrition_{key}") for key in FLATTENED_NUTRIENTS}
        return {key: value for key, value in values.items() if value is not None}


class ResolvedAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    category: CategoryFilter = CategoryFilter.ALL
    top_recommendation: Optional[RankedResult] = Field(None, alias="topRecommendation")
    top_five: List[RankedResult] = Field(default_factory=list, alias="topFive")
    all_results: List[RankedResult] = Field(default_factory=list, alias="allResults")
    total: int = 0
    ai_response: Optional[str] = Field(None, alias="aiResponse")
    reranked: bool = True


class BasicSearchResponse(BaseModel):
    query: str
    documents: List[RankedResult] = Field(default_factory=list)
    total: int = 0
