"""Resolves a nutrition question into ranked, rule-adjusted menu results."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .catalog import MenuCatalog
from .composer import ResponseComposer
from .config import ServerConfig
from .errors import (
    EmbeddingUnavailable,
    InvalidRequest,
    ProductNotFound,
    RerankUnavailable,
    RetrievalUnavailable,
    UpstreamTimeout,
)
from .intent import QueryIntentParser
from .llm_client import OpenAIClient
from .models import (
    AdjustedNutrition,
    BasicSearchResponse,
    CategoryFilter,
    RankedResult,
    ResolvedAnswer,
)
from .rerank_client import RerankClient, RerankDocument
from .rules import STANDARD_RULES_LABEL, CustomizationRuleEngine, load_rules
from .vector_store import ChromaRecordStore, RetrievalMatch, build_category_filter

logger = logging.getLogger(__name__)

SHORTLIST_SIZE = 5
OVERFETCH_FACTOR = 3


def parse_category(value: Any) -> CategoryFilter:
    if isinstance(value, CategoryFilter):
        return value
    try:
        return CategoryFilter(str(value or "all").strip().lower())
    except ValueError as exc:
        choices = ", ".join(choice.value for choice in CategoryFilter)
        raise InvalidRequest(f"category must be one of: {choices}") from exc


class QueryResolver:
    """Embed → retrieve → rerank → apply rules → compose, strictly in that order.

    Any collaborator failure aborts the whole request; the only non-error
    short-circuit is an empty retrieval, which skips reranking and composition.
    """

    def __init__(
        self,
        embedder: Any,
        store: Any,
        reranker: Any,
        composer: ResponseComposer,
        rule_engine: CustomizationRuleEngine,
        catalog: Optional[MenuCatalog] = None,
        *,
        index_name: str = "nutrition-information",
        embedding_dimensions: int = 512,
        extract_query_intent: bool = True,
        intent_parser: Optional[QueryIntentParser] = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.reranker = reranker
        self.composer = composer
        self.rule_engine = rule_engine
        self.catalog = catalog if catalog is not None else MenuCatalog.from_items([])
        self.index_name = index_name
        self.embedding_dimensions = embedding_dimensions
        self.extract_query_intent = extract_query_intent
        self.intent_parser = intent_parser if intent_parser is not None else QueryIntentParser()

    # ------------------------------------------------------------------ #
    # Public APIs
    # ------------------------------------------------------------------ #

    def resolve(
        self,
        query: Optional[str],
        top_k: int = 10,
        category: Any = CategoryFilter.ALL,
        *,
        size: Optional[str] = None,
        add_ons: Optional[Sequence[str]] = None,
    ) -> ResolvedAnswer:
        text = self._validate(query, top_k)
        category_filter = parse_category(category)
        size, add_on_list = self._customization_request(text, size, add_ons)
        self.rule_engine.check_add_on_count(add_on_list)

        vector = self._embed(text)
        candidates = self._retrieve(vector, top_k * OVERFETCH_FACTOR, category_filter)
        if not candidates:
            logger.info("No candidates for %r (category=%s)", text, category_filter.value)
            return ResolvedAnswer(query=text, category=category_filter, total=0)

        documents = [RerankDocument(id=match.item_id, text=self._rerank_text(match.metadata)) for match in candidates]
        hits = self._rerank(text, documents, top_k)

        by_id = {match.item_id: match for match in candidates}
        ranked: List[RankedResult] = []
        for hit in hits:
            original = by_id.get(hit.document_id)
            if original is None:
                logger.warning("Reranker returned unknown id %s; dropping it", hit.document_id)
                continue
            ranked.append(self._to_result(original, hit.score))

        shortlist = ranked[:SHORTLIST_SIZE]
        self._apply_customizations(shortlist, size, add_on_list)

        ai_response = None
        if shortlist:
            ai_response = self.composer.compose(text, category_filter.display_name, shortlist)

        return ResolvedAnswer(
            query=text,
            category=category_filter,
            top_recommendation=shortlist[0] if shortlist else None,
            top_five=shortlist,
            all_results=ranked,
            total=len(ranked),
            ai_response=ai_response,
            reranked=True,
        )

    def index_size(self) -> int:
        return int(self.store.count(self.index_name))

    def search(self, query: Optional[str], top_k: int = 10) -> BasicSearchResponse:
        """Plain vector search: no category filter, reranking or rules."""
        text = self._validate(query, top_k)
        vector = self._embed(text)
        matches = self._retrieve(vector, top_k, CategoryFilter.ALL)
        documents = [self._to_result(match, None) for match in matches]
        return BasicSearchResponse(query=text, documents=documents, total=len(documents))

    # ------------------------------------------------------------------ #
    # Pipeline stages
    # ------------------------------------------------------------------ #

    @staticmethod
    def _validate(query: Optional[str], top_k: Any) -> str:
        text = query.strip() if isinstance(query, str) else ""
        if not text:
            raise InvalidRequest("Query is required")
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise InvalidRequest("topK must be a positive integer")
        return text

    def _embed(self, text: str) -> List[float]:
        try:
            vector = self.embedder.embed(text, self.embedding_dimensions)
        except UpstreamTimeout:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingUnavailable(f"Embedding provider failed: {exc}") from exc
        if not vector:
            raise EmbeddingUnavailable("Embedding provider returned no vector")
        return list(vector)

    def _retrieve(self, vector: Sequence[float], top_k: int, category: CategoryFilter) -> List[RetrievalMatch]:
        try:
            matches = self.store.query(
                self.index_name,
                vector,
                top_k,
                True,
                build_category_filter(category),
            )
        except (UpstreamTimeout, RetrievalUnavailable):
            raise
        except Exception as exc:  # noqa: BLE001
            raise RetrievalUnavailable(f"Record store query failed: {exc}") from exc

        kept = [match for match in matches if category.matches(match.metadata.get("category"))]
        if len(kept) != len(matches):
            logger.info("Dropped %s matches outside category %s", len(matches) - len(kept), category.value)
        return kept

    def _rerank(self, text: str, documents: Sequence[RerankDocument], top_k: int) -> List[Any]:
        try:
            return list(self.reranker.rerank(text, documents, top_k))
        except UpstreamTimeout:
            raise
        except Exception as exc:  # noqa: BLE001
            raise RerankUnavailable(f"Reranker failed: {exc}") from exc

    def _to_result(self, match: RetrievalMatch, rerank_score: Optional[float]) -> RankedResult:
        metadata: Dict[str, Any] = dict(match.metadata)
        record = self.catalog.get(match.item_id)
        if record is not None:
            for key, value in record.flat_metadata().items():
                metadata.setdefault(key, value)
        return RankedResult.from_metadata(match.item_id, match.score, metadata, rerank_score=rerank_score)

    def _customization_request(
        self,
        text: str,
        size: Optional[str],
        add_ons: Optional[Sequence[str]],
    ) -> Tuple[Optional[str], List[str]]:
        """Explicit size/add-ons win; the query text fills whatever is missing."""
        if self.extract_query_intent and (size is None or add_ons is None):
            intent = self.intent_parser.parse(text, self.catalog.add_on_names())
            size = size if size is not None else intent.size_hint
            add_ons = add_ons if add_ons is not None else intent.add_ons
        return size, list(add_ons or ())

    def _apply_customizations(
        self,
        shortlist: Sequence[RankedResult],
        size: Optional[str],
        add_ons: List[str],
    ) -> None:
        for result in shortlist:
            record = self.catalog.get(result.id) or self.catalog.find_by_name(result.name)
            try:
                result.customization = self.rule_engine.apply_rules(record, size, add_ons)
            except ProductNotFound:
                logger.debug("No catalog record for %s; using retrieval metadata", result.id)
                result.customization = self._standard_from_metadata(result, add_ons)

    @staticmethod
    def _standard_from_metadata(result: RankedResult, add_ons: Sequence[str]) -> AdjustedNutrition:
        nutrition = result.flattened_nutrition()
        return AdjustedNutrition(
            name=result.name or result.id,
            size=result.nutrition_size,
            add_ons=list(add_ons),
            base_nutrition=dict(nutrition),
            nutrition=dict(nutrition),
            applied_rules_label=STANDARD_RULES_LABEL,
        )

    @staticmethod
    def _rerank_text(metadata: Mapping[str, Any]) -> str:
        parts: List[str] = [str(metadata.get("name") or ""), f"Category: {metadata.get('category')}"]
        if metadata.get("servingSize"):
            parts.append(f"Serving: {metadata['servingSize']}")
        sizes = metadata.get("availableSizes") or []
        if sizes:
            parts.append(f"Sizes: {', '.join(sizes)}")
        if metadata.get("nutritionSize"):
            parts.append(f"Nutrition based on: {metadata['nutritionSize']}")
        for label, key, unit in (
            ("Calories", "nutrition_calories", ""),
            ("Protein", "nutrition_protein", "g"),
            ("Carbs", "nutrition_carbs", "g"),
            ("Fat", "nutrition_fat", "g"),
            ("Sugar", "nutrition_sugar", "g"),
            ("Fiber", "nutrition_fiber", "g"),
        ):
            value = metadata.get(key)
            if value is not None:
                parts.append(f"{label}: {_format_number(value)}{unit}")
        ingredients = metadata.get("ingredients") or []
        if ingredients:
            parts.append(f"Ingredients: {', '.join(ingredients)}")
        allergens = metadata.get("allergens") or []
        if allergens:
            parts.append(f"Allergens: {', '.join(allergens)}")
        return " | ".join(part for part in parts if part)


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_resolver(config: ServerConfig) -> QueryResolver:
    rules = load_rules(config.customization_rules_json)
    catalog = MenuCatalog(config.catalog_dir, rule_families=rules).load()
    engine = CustomizationRuleEngine(rules, catalog.add_on, add_on_policy=config.add_on_policy)
    llm = OpenAIClient(
        config.openai_api_key,
        base_url=config.openai_base_url,
        embedding_model=config.embedding_model,
        chat_model=config.chat_model,
        timeout=config.upstream_timeout_seconds,
    )
    reranker = RerankClient(
        config.rerank_api_key,
        base_url=config.rerank_base_url,
        model=config.rerank_model,
        timeout=config.upstream_timeout_seconds,
    )
    store = ChromaRecordStore(config.chroma_path, host=config.chroma_host, port=config.chroma_port)
    return QueryResolver(
        embedder=llm,
        store=store,
        reranker=reranker,
        composer=ResponseComposer(llm),
        rule_engine=engine,
        catalog=catalog,
        index_name=config.index_name,
        embedding_dimensions=config.embedding_dimensions,
        extract_query_intent=config.extract_query_intent,
        intent_parser=QueryIntentParser(llm if config.llm_query_intent else None),
    )
