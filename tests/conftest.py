from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest

from nutrition_search.catalog import MenuCatalog
from nutrition_search.composer import ResponseComposer
from nutrition_search.models import MenuItem, NutritionAmount
from nutrition_search.rerank_client import RerankDocument, RerankHit
from nutrition_search.resolver import QueryResolver
from nutrition_search.rules import CustomizationRuleEngine, load_rules
from nutrition_search.vector_store import RetrievalMatch

SIZES = ("small(20 oz)", "medium(32 oz)", "large(44 oz)")


def profile(**amounts: float) -> Dict[str, NutritionAmount]:
    units = {"calories": "kcal"}
    return {key: NutritionAmount(amount=value, unit=units.get(key, "g")) for key, value in amounts.items()}


def sized_item(item_id: str, name: str, category: str, calories: Sequence[float], protein: float, **extra) -> MenuItem:
    return MenuItem(
        id=item_id,
        name=name,
        category=category,
        allergens=frozenset(extra.pop("allergens", ())),
        ingredients=tuple(extra.pop("ingredients", ())),
        available_sizes=SIZES,
        size_nutrition={
            size: profile(calories=cal, protein=protein, sugar=30.0) for size, cal in zip(SIZES, calories)
        },
        **extra,
    )


def flat_item(item_id: str, name: str, category: str, **amounts: float) -> MenuItem:
    return MenuItem(id=item_id, name=name, category=category, nutrition=profile(**amounts))


def sample_items() -> List[MenuItem]:
    return [
        sized_item(
            "smoothies_0",
            "Strawberry Blast",
            "Smoothie",
            (250, 380, 510),
            6.0,
            ingredients=("strawberries", "banana", "yogurt"),
            allergens=("Milk",),
        ),
        sized_item(
            "smoothies_1",
            "Gladiator Chocolate",
            "Smoothie",
            (220, 330, 440),
            45.0,
            ingredients=("gladiator protein", "cocoa"),
            rule_family="gladiator",
        ),
        sized_item("smoothie_bowls_0", "Acai Bowl", "Smoothie Bowl", (400, 560, 720), 8.0),
        flat_item("powerEats_0", "Turkey Wrap", "Power Eats", calories=430, protein=28),
        flat_item("ingredients_0", "Whey Protein", "Ingredient", calories=110, protein=20),
        flat_item("ingredients_1", "Peanut Butter", "Ingredient", calories=190, protein=8, fat=16),
        flat_item("ingredients_2", "Banana", "Ingredient", calories=100, protein=1),
    ]


class FakeEmbedder:
    def __init__(self, vector: Optional[List[float]] = None) -> None:
        self.vector = [0.1, 0.2, 0.3] if vector is None else vector
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    def embed(self, text: str, dimensions: Optional[int] = None) -> List[float]:
        self.calls.append((text, dimensions))
        if self.error:
            raise self.error
        return list(self.vector)


class FakeStore:
    """Returns its rows in order, ignoring the pushed-down filter."""

    def __init__(self, rows: Optional[List[RetrievalMatch]] = None) -> None:
        self.rows = rows or []
        self.calls: List[dict] = []
        self.error: Optional[Exception] = None

    def query(self, index_name, vector, top_k, include_metadata=True, filter=None):
        self.calls.append(
            {"index_name": index_name, "vector": vector, "top_k": top_k, "filter": filter}
        )
        if self.error:
            raise self.error
        return list(self.rows[:top_k])

    def count(self, index_name):
        return len(self.rows)


class FakeReranker:
    def __init__(self) -> None:
        self.preferred: List[str] = []
        self.extra_hits: List[RerankHit] = []
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    def rerank(self, query: str, documents: Sequence[RerankDocument], top_k: int) -> List[RerankHit]:
        self.calls.append((query, list(documents), top_k))
        if self.error:
            raise self.error
        ordered = sorted(
            documents,
            key=lambda doc: self.preferred.index(doc.id) if doc.id in self.preferred else len(self.preferred),
        )
        hits = list(self.extra_hits) + [
            RerankHit(document_id=doc.id, score=round(0.99 - 0.05 * rank, 2)) for rank, doc in enumerate(ordered)
        ]
        return hits[:top_k]


class FakeChat:
    def __init__(self, reply: str = "Try the Strawberry Blast!") -> None:
        self.reply = reply
        self.calls: List[dict] = []

    def chat(self, messages, *, system_prompt=None, temperature=0.2, max_tokens=None, response_format=None):
        self.calls.append(
            {
                "messages": list(messages),
                "system_prompt": system_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": response_format,
            }
        )
        return self.reply


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def catalog() -> MenuCatalog:
    return MenuCatalog.from_items(sample_items())


@pytest.fixture
def rule_engine(catalog: MenuCatalog) -> CustomizationRuleEngine:
    return CustomizationRuleEngine(load_rules(), catalog.add_on)


@pytest.fixture
def menu_rows(catalog: MenuCatalog) -> List[RetrievalMatch]:
    menu = [item for item in catalog.items if item.category != "Ingredient"]
    return [
        RetrievalMatch(item_id=item.id, score=round(0.9 - 0.1 * rank, 2), metadata=item.flat_metadata())
        for rank, item in enumerate(menu)
    ]


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store(menu_rows: List[RetrievalMatch]) -> FakeStore:
    return FakeStore(menu_rows)


@pytest.fixture
def reranker() -> FakeReranker:
    return FakeReranker()


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def resolver(embedder, store, reranker, chat, rule_engine, catalog) -> QueryResolver:
    return QueryResolver(
        embedder=embedder,
        store=store,
        reranker=reranker,
        composer=ResponseComposer(chat),
        rule_engine=rule_engine,
        catalog=catalog,
        index_name="test-index",
    )
