"""Smoothie menu nutrition search package."""

from .catalog import MenuCatalog
from .composer import ResponseComposer
from .config import ServerConfig
from .models import AdjustedNutrition, CategoryFilter, MenuItem, RankedResult, ResolvedAnswer
from .rate_limiter import Admission, RateLimiter
from .resolver import QueryResolver, build_resolver
from .rules import CustomizationRuleEngine, load_rules

__all__ = [
    "AdjustedNutrition",
    "Admission",
    "CategoryFilter",
    "CustomizationRuleEngine",
    "MenuCatalog",
    "MenuItem",
    "QueryResolver",
    "RankedResult",
    "RateLimiter",
    "ResolvedAnswer",
    "ResponseComposer",
    "ServerConfig",
    "build_resolver",
    "load_rules",
]
