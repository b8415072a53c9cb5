"""Size, add-on and nutrient hints from a free-text query.

``QueryIntentParser`` asks the chat model for a JSON breakdown of the query
and falls back to the keyword rules in ``extract_intent`` when the model is
unavailable or answers with something that is not a JSON object.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, List, Mapping, Optional

from .errors import UpstreamError
from .models import QueryIntent

logger = logging.getLogger(__name__)

SIZE_KEYWORDS = {
    "small": "small",
    "20 oz": "small",
    "20oz": "small",
    "medium": "medium",
    "32 oz": "medium",
    "32oz": "medium",
    "large": "large",
    "44 oz": "large",
    "44oz": "large",
}
INFO_KEYWORDS = {
    "calorie": "calories",
    "kcal": "calories",
    "protein": "protein",
    "carb": "carbs",
    "fat": "fat",
    "sugar": "sugar",
    "fiber": "fiber",
    "fibre": "fiber",
    "sodium": "sodium",
    "salt": "sodium",
    "caffeine": "caffeine",
    "allergen": "allergens",
}
ADD_ON_TRIGGER_RE = re.compile(r"\b(?:with added|add|adding|plus|extra)\s+(.+?)(?=$|[.,;!?]|\bin\b|\bfor\b)", re.IGNORECASE)
ADD_ON_SPLIT_RE = re.compile(r"\s*(?:,|\band\b|&|\+)\s*", re.IGNORECASE)
WHITESPACE_RE = re.compile(r"\s+")

INTENT_SYSTEM_PROMPT = (
    "Extract the following from the nutrition query: 1) Product name (e.g., 'gladiator vanilla'), "
    "2) Size requested, 3) Add-on ingredients, 4) Information requested (calories, protein, etc). "
    'Return JSON only, shaped as {"productName": string, "size": string or null, '
    '"addOns": [string], "infoRequested": [string]}.'
)
INTENT_TEMPERATURE = 0.2
JSON_OBJECT_FORMAT = {"type": "json_object"}


def mentions(text: str, phrase: str) -> bool:
    """True when ``phrase`` appears in ``text`` as whole words, ignoring case."""
    phrase = WHITESPACE_RE.sub(" ", phrase or "").strip()
    if not phrase:
        return False
    return re.search(rf"\b{re.escape(phrase)}\b", text or "", re.IGNORECASE) is not None


def extract_intent(query: str, add_on_names: Iterable[str] = ()) -> QueryIntent:
    """Pull structured hints out of ``query`` with keyword rules.

    Add-ons are only recognised after an explicit trigger ("add", "plus",
    "extra", "with added") and only when they name a known ingredient, so a
    flavour request such as "smoothie with strawberries" is not treated as a
    customization.
    """
    normalized = WHITESPACE_RE.sub(" ", query or "").strip()
    lowered = normalized.lower()

    size_hint = _extract_size(lowered)
    info = _info_labels(lowered)

    known = _known_names(add_on_names)
    add_ons: List[str] = []
    product_hint = normalized
    for match in ADD_ON_TRIGGER_RE.finditer(normalized):
        matched_any = False
        for fragment in ADD_ON_SPLIT_RE.split(match.group(1)):
            name = _match_known(fragment, known)
            if name and name not in add_ons:
                add_ons.append(name)
                matched_any = True
        if matched_any:
            product_hint = product_hint.replace(match.group(0), " ")

    for keyword in SIZE_KEYWORDS:
        product_hint = re.sub(rf"\b{re.escape(keyword)}\b", " ", product_hint, flags=re.IGNORECASE)

    return QueryIntent(
        product_name_hint=WHITESPACE_RE.sub(" ", product_hint).strip(),
        size_hint=size_hint,
        add_ons=add_ons,
        info_requested=info,
    )


class QueryIntentParser:
    """LLM-backed query breakdown with the keyword rules as a fallback."""

    def __init__(self, client: Any = None) -> None:
        self.client = client

    def parse(self, query: str, add_on_names: Iterable[str] = ()) -> QueryIntent:
        names = list(add_on_names)
        fallback = extract_intent(query, names)
        if self.client is None:
            return fallback
        try:
            raw = self.client.chat(
                [{"role": "user", "content": query}],
                system_prompt=INTENT_SYSTEM_PROMPT,
                temperature=INTENT_TEMPERATURE,
                response_format=JSON_OBJECT_FORMAT,
            )
        except UpstreamError as exc:
            logger.warning("Intent extraction failed; using keyword rules: %s", exc)
            return fallback
        try:
            payload = json.loads(raw or "")
        except json.JSONDecodeError:
            logger.warning("Intent response was not valid JSON: %s", (raw or "")[:200])
            return fallback
        if not isinstance(payload, dict):
            logger.warning("Intent response was not an object: %s", payload)
            return fallback
        return self._from_payload(payload, names, fallback)

    @staticmethod
    def _from_payload(payload: Mapping[str, Any], add_on_names: List[str], fallback: QueryIntent) -> QueryIntent:
        """Keys the model left out keep the keyword result."""
        intent = fallback.model_copy(deep=True)

        product = payload.get("productName")
        if isinstance(product, str) and product.strip():
            intent.product_name_hint = product.strip()

        if "size" in payload:
            size = payload.get("size")
            intent.size_hint = _extract_size(str(size).lower()) if size else None

        raw_add_ons = payload.get("addOns")
        if isinstance(raw_add_ons, list):
            known = _known_names(add_on_names)
            add_ons: List[str] = []
            for entry in raw_add_ons:
                name = _match_known(str(entry), known)
                if name is None:
                    logger.info("Ignoring add-on '%s' that is not in the ingredient catalog", entry)
                elif name not in add_ons:
                    add_ons.append(name)
            intent.add_ons = add_ons

        info = payload.get("infoRequested")
        if isinstance(info, list):
            intent.info_requested = _info_labels(" ".join(str(entry).lower() for entry in info))
        return intent


def _extract_size(lowered: str) -> Optional[str]:
    for keyword, size in SIZE_KEYWORDS.items():
        if re.search(rf"\b{re.escape(keyword)}\b", lowered):
            return size
    return None


def _info_labels(lowered: str) -> set:
    return {label for keyword, label in INFO_KEYWORDS.items() if keyword in lowered}


def _known_names(add_on_names: Iterable[str]) -> List[str]:
    return sorted({name for name in add_on_names if name}, key=len, reverse=True)


def _match_known(fragment: str, known: List[str]) -> Optional[str]:
    text = WHITESPACE_RE.sub(" ", fragment).strip()
    if not text:
        return None
    for name in known:
        if mentions(text, name) or mentions(name, text):
            return name
    return None
