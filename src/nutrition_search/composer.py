from __future__ import annotations

import json
from typing import Any, Sequence

from .errors import ComposerEmpty
from .models import RankedResult

COMPOSER_SYSTEM_PROMPT = (
    "You are a helpful nutrition assistant at a smoothie shop. Provide friendly, concise "
    "recommendations based on the options found. Focus on how well they match the "
    "customer's request."
)
COMPOSER_TEMPERATURE = 0.7
COMPOSER_MAX_TOKENS = 250


class ResponseComposer:
    """Asks a chat model to explain the shortlist; the prose is not parsed."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def compose(self, query: str, category_label: str, shortlist: Sequence[RankedResult]) -> str:
        count = len(shortlist)
        listing = json.dumps(
            [item.model_dump(by_alias=True, exclude_none=True) for item in shortlist],
            indent=2,
        )
        prompt = (
            f'Customer asked: "{query}"\n\n'
            f"Top {count} {category_label}:\n{listing}\n\n"
            f"Provide a brief, friendly response explaining why these top {count} {category_label} "
            "are a great match for their request. Mention key nutrition facts and any important "
            "allergen information."
        )
        text = self.client.chat(
            [{"role": "user", "content": prompt}],
            system_prompt=COMPOSER_SYSTEM_PROMPT,
            temperature=COMPOSER_TEMPERATURE,
            max_tokens=COMPOSER_MAX_TOKENS,
        )
        if not text or not text.strip():
            raise ComposerEmpty("Text-generation provider returned an empty explanation")
        return text.strip()
