from __future__ import annotations

import json
import os
from typing import Any, Iterable, List, Mapping, MutableMapping, Optional

import requests

from .errors import UpstreamError, UpstreamTimeout

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_CHAT_MODEL = "gpt-3.5-turbo"


class LLMError(UpstreamError):
    """Raised when the OpenAI-compatible API returns an error payload."""


class OpenAIClient:
    """
    Minimal client for an OpenAI-compatible REST API covering embeddings and chat.

    Configuration is pulled from environment variables unless provided directly:

    - ``OPENAI_API_KEY`` – bearer token
    - ``OPENAI_BASE_URL`` – defaults to ``https://api.openai.com/v1``
    - ``EMBEDDING_MODEL`` – defaults to ``text-embedding-3-small``
    - ``CHAT_MODEL`` – defaults to ``gpt-3.5-turbo``
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        embedding_model: str | None = None,
        chat_model: str | None = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        token = api_key or os.environ.get("OPENAI_API_KEY")
        if not token:
            raise ValueError("OpenAI API key missing. Set OPENAI_API_KEY or pass api_key.")
        self.api_key = token
        self.base_url = (base_url or os.environ.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.embedding_model = embedding_model or os.environ.get("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        self.chat_model = chat_model or os.environ.get("CHAT_MODEL", DEFAULT_CHAT_MODEL)
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, text: str, dimensions: int | None = None) -> List[float]:
        """Return the embedding vector for a single piece of text."""
        payload: dict[str, object] = {"model": self.embedding_model, "input": text}
        if dimensions:
            payload["dimensions"] = dimensions
        body = self._post("/embeddings", payload)

        data: List[Mapping[str, Any]] = body.get("data") or []
        if not data:
            raise LLMError(f"Embedding response missing data: {str(body)[:200]}")
        vector = data[0].get("embedding")
        if not isinstance(vector, list) or not vector:
            raise LLMError("Embedding response contained no vector")
        return [float(value) for value in vector]

    def chat(
        self,
        messages: Iterable[Mapping[str, str]],
        *,
        system_prompt: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        response_format: Optional[MutableMapping[str, str]] = None,
    ) -> str:
        """
        Call the chat completions endpoint and return the assistant text response.

        ``system_prompt`` is prepended automatically if provided.
        """

        payload: dict[str, object] = {
            "model": self.chat_model,
            "messages": list(messages),
            "temperature": temperature,
        }
        if system_prompt:
            payload["messages"] = [{"role": "system", "content": system_prompt}, *payload["messages"]]
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if response_format:
            payload["response_format"] = response_format
        body = self._post("/chat/completions", payload)

        choices: List[Mapping[str, object]] = body.get("choices", [])
        if not choices:
            raise LLMError(f"Chat response missing choices: {str(body)[:200]}")
        message = choices[0].get("message", {})
        content = message.get("content") if isinstance(message, Mapping) else None
        if content is not None and not isinstance(content, str):
            raise LLMError(f"Chat response missing assistant text: {message}")
        return content or ""

    def _post(self, path: str, payload: Mapping[str, object]) -> Mapping[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.post(
                f"{self.base_url}{path}", headers=headers, json=payload, timeout=self.timeout
            )
        except requests.Timeout as exc:
            raise UpstreamTimeout(f"{path} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise LLMError(f"{path} request failed: {exc}") from exc
        if response.status_code >= 400:
            raise LLMError(f"OpenAI API error {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise LLMError(f"Invalid JSON from {path}: {response.text[:200]}") from exc
