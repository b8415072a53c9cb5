from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

import requests

from .errors import UpstreamError, UpstreamTimeout

DEFAULT_RERANK_URL = "https://api.pinecone.io"
DEFAULT_RERANK_MODEL = "bge-reranker-v2-m3"
RERANK_API_VERSION = "2025-01"


class RerankError(UpstreamError):
    """Raised when the rerank API returns an error payload."""


@dataclass(frozen=True)
class RerankDocument:
    id: str
    text: str


@dataclass(frozen=True)
class RerankHit:
    document_id: str
    score: float


class RerankClient:
    """
    Client for a Pinecone-style hosted reranker (``POST /rerank``).

    Configuration falls back to ``RERANK_API_KEY`` / ``PINECONE_API_KEY``,
    ``RERANK_BASE_URL`` and ``RERANK_MODEL``.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        token = api_key or os.environ.get("RERANK_API_KEY") or os.environ.get("PINECONE_API_KEY")
        if not token:
            raise ValueError("Rerank API key missing. Set RERANK_API_KEY (or PINECONE_API_KEY).")
        self.api_key = token
        self.base_url = (base_url or os.environ.get("RERANK_BASE_URL") or DEFAULT_RERANK_URL).rstrip("/")
        self.model = model or os.environ.get("RERANK_MODEL", DEFAULT_RERANK_MODEL)
        self.timeout = timeout
        self.session = session or requests.Session()

    def rerank(self, query: str, documents: Sequence[RerankDocument], top_k: int) -> List[RerankHit]:
        """Return up to ``top_k`` hits ordered by relevance, best first."""
        if not documents:
            return []
        payload = {
            "model": self.model,
            "query": query,
            "documents": [{"id": doc.id, "text": doc.text} for doc in documents],
            "top_n": top_k,
            "rank_fields": ["text"],
            "return_documents": True,
        }
        headers = {
            "Api-Key": self.api_key,
            "Content-Type": "application/json",
            "X-Pinecone-API-Version": RERANK_API_VERSION,
        }
        try:
            response = self.session.post(
                f"{self.base_url}/rerank", headers=headers, json=payload, timeout=self.timeout
            )
        except requests.Timeout as exc:
            raise UpstreamTimeout(f"rerank timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise RerankError(f"rerank request failed: {exc}") from exc
        if response.status_code >= 400:
            raise RerankError(f"Rerank API error {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise RerankError(f"Invalid JSON from rerank API: {response.text[:200]}") from exc
        return self._parse_hits(body, documents)

    @staticmethod
    def _parse_hits(body: Mapping[str, Any], documents: Sequence[RerankDocument]) -> List[RerankHit]:
        rows = body.get("data")
        if not isinstance(rows, list):
            raise RerankError(f"Rerank response missing data: {str(body)[:200]}")
        hits: List[RerankHit] = []
        for row in rows:
            document = row.get("document") or {}
            document_id = document.get("id")
            if document_id is None:
                index = row.get("index")
                if isinstance(index, int) and 0 <= index < len(documents):
                    document_id = documents[index].id
            if document_id is None:
                continue
            hits.append(RerankHit(document_id=str(document_id), score=float(row.get("score") or 0.0)))
        return hits
