"""ChromaDB-backed record store for menu-item retrieval."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import chromadb

from .errors import RetrievalUnavailable
from .models import CategoryFilter

# Literal labels the catalog uses; the store filter cannot match case-insensitively.
BOWL_LABELS = ["Smoothie Bowl", "smoothie bowl"]
POWER_EATS_LABELS = ["Power Eats", "power eats"]
LIST_FIELDS = ("allergens", "ingredients", "availableSizes")


@dataclass
class RetrievalMatch:
    """Result row from the record store query."""

    item_id: str
    score: float
    metadata: Dict[str, Any]


def build_category_filter(category: CategoryFilter) -> Optional[Dict[str, Any]]:
    """Translate a category choice into a metadata ``where`` clause."""
    if category is CategoryFilter.BOWLS:
        return {"category": {"$in": list(BOWL_LABELS)}}
    if category is CategoryFilter.POWER_EATS:
        return {"category": {"$in": list(POWER_EATS_LABELS)}}
    if category is CategoryFilter.SMOOTHIES:
        return {
            "$and": [
                {"category": {"$nin": list(BOWL_LABELS)}},
                {"category": {"$nin": list(POWER_EATS_LABELS)}},
            ]
        }
    return None


class ChromaRecordStore:
    """Read-only wrapper around Chroma collections holding pre-computed embeddings.

    Vectors are written by the indexing job; this class only queries them.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        *,
        host: Optional[str] = None,
        port: int = 8000,
        client: Any = None,
    ) -> None:
        try:
            if client is not None:
                self._client = client
            elif host:
                self._client = chromadb.HttpClient(host=host, port=port)
            else:
                self._client = chromadb.PersistentClient(path=path or ".chroma")
        except Exception as exc:  # noqa: BLE001
            raise RetrievalUnavailable(f"Could not open Chroma client: {exc}") from exc
        self._collections: Dict[str, Any] = {}

    def query(
        self,
        index_name: str,
        vector: Sequence[float],
        top_k: int,
        include_metadata: bool = True,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[RetrievalMatch]:
        """Return the ``top_k`` nearest records to ``vector``, best first."""
        include = ["distances", "metadatas"] if include_metadata else ["distances"]
        try:
            collection = self._collection(index_name)
            result = collection.query(
                query_embeddings=[list(vector)],
                n_results=top_k,
                where=filter or None,
                include=include,
            )
        except Exception as exc:  # noqa: BLE001
            raise RetrievalUnavailable(f"Query against '{index_name}' failed: {exc}") from exc

        ids = (result.get("ids") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0] if include_metadata else []
        if not ids:
            return []

        rows: List[RetrievalMatch] = []
        for idx, item_id in enumerate(ids):
            distance = float(distances[idx]) if idx < len(distances) else 1.0
            metadata = metadatas[idx] if idx < len(metadatas) and metadatas[idx] else {}
            rows.append(
                RetrievalMatch(
                    item_id=str(item_id),
                    score=self._distance_to_similarity(distance),
                    metadata=self._decode_metadata(metadata),
                )
            )
        return rows

    def count(self, index_name: str) -> int:
        try:
            return int(self._collection(index_name).count())
        except Exception:  # noqa: BLE001
            return 0

    def _collection(self, index_name: str) -> Any:
        if index_name not in self._collections:
            self._collections[index_name] = self._client.get_collection(name=index_name)
        return self._collections[index_name]

    @staticmethod
    def _distance_to_similarity(distance: float) -> float:
        similarity = 1.0 - float(distance)
        if similarity < 0:
            return 0.0
        if similarity > 1.0:
            return 1.0
        return similarity

    @staticmethod
    def _decode_metadata(raw: Dict[str, Any]) -> Dict[str, Any]:
        """Older Chroma versions only store scalars, so list fields may arrive JSON-encoded."""
        metadata = dict(raw)
        for key in LIST_FIELDS:
            value = metadata.get(key)
            if isinstance(value, str):
                try:
                    decoded = json.loads(value)
                except json.JSONDecodeError:
                    decoded = [part.strip() for part in value.split(",") if part.strip()]
                metadata[key] = decoded if isinstance(decoded, list) else [decoded]
        return metadata
