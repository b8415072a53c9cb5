from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

DEFAULT_INDEX_NAME = "nutrition-information"


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_path(key: str, default: Optional[str] = None) -> Optional[Path]:
    value = os.getenv(key, default)
    return Path(value) if value else None


@dataclass
class ServerConfig:
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    openai_base_url: Optional[str] = os.getenv("OPENAI_BASE_URL")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_dimensions: int = int(os.getenv("EMBEDDING_DIMENSIONS", "512"))
    chat_model: str = os.getenv("CHAT_MODEL", "gpt-3.5-turbo")
    rerank_api_key: Optional[str] = os.getenv("RERANK_API_KEY") or os.getenv("PINECONE_API_KEY")
    rerank_base_url: Optional[str] = os.getenv("RERANK_BASE_URL")
    rerank_model: str = os.getenv("RERANK_MODEL", "bge-reranker-v2-m3")
    chroma_path: str = os.getenv("CHROMA_PATH", ".chroma")
    chroma_host: Optional[str] = os.getenv("CHROMA_HOST")
    chroma_port: int = int(os.getenv("CHROMA_PORT", "8000"))
    index_name: str = os.getenv("INDEX_NAME", DEFAULT_INDEX_NAME)
    catalog_dir: Optional[Path] = _env_path("CATALOG_DIR", "data/scrapedData")
    customization_rules_json: Optional[Path] = _env_path("CUSTOMIZATION_RULES_JSON")
    add_on_policy: str = os.getenv("ADD_ON_POLICY", "truncate")
    extract_query_intent: bool = _env_bool("EXTRACT_QUERY_INTENT", True)
    llm_query_intent: bool = _env_bool("LLM_QUERY_INTENT", True)
    rate_limit: int = int(os.getenv("RATE_LIMIT", "10"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(60 * 60)))
    rate_limit_sweep_threshold: int = int(os.getenv("RATE_LIMIT_SWEEP_THRESHOLD", "1000"))
    upstream_timeout_seconds: float = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "30"))
    frontend_origins: Sequence[str] = tuple(
        origin.strip()
        for origin in os.getenv("FRONTEND_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
