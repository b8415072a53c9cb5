from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import ServerConfig
from .errors import AddOnLimitExceeded, InvalidRequest, NutritionSearchError, RateLimited
from .models import BasicSearchResponse, ResolvedAnswer
from .rate_limiter import Admission, RateLimiter
from .resolver import QueryResolver, build_resolver

logger = logging.getLogger("nutrition_search.server")

INTERNAL_ERROR = "Internal server error"
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = Field(None, max_length=2000)
    top_k: int = Field(10, alias="topK")
    category: str = "all"
    size: Optional[str] = Field(None, description="Preferred cup size, e.g. 'large'.")
    add_ons: Optional[List[str]] = Field(None, alias="addOns", description="Add-on ingredient names.")


class BasicSearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = Field(None, max_length=2000)
    top_k: int = Field(10, alias="topK")


class SearchService:
    """Holds the per-process collaborators shared by every request."""

    def __init__(
        self,
        config: ServerConfig,
        resolver: Optional[QueryResolver] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self._resolver_lock = threading.Lock()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(
            limit=config.rate_limit,
            window_seconds=config.rate_limit_window_seconds,
            sweep_threshold=config.rate_limit_sweep_threshold,
        )

    def ensure_resolver(self) -> QueryResolver:
        with self._resolver_lock:
            if self.resolver is None:
                self.resolver = build_resolver(self.config)
            return self.resolver


def client_key(request: Request) -> str:
    """Identify the caller by the first ``X-Forwarded-For`` hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _rate_limit_headers(admission: Admission) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(admission.limit),
        "X-RateLimit-Remaining": str(admission.remaining),
    }


def create_app(config: Optional[ServerConfig] = None, service: Optional[SearchService] = None) -> FastAPI:
    config = config or (service.config if service else ServerConfig())
    service = service or SearchService(config)

    app = FastAPI(title="Nutrition Search API")
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.frontend_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.on_event("startup")
    async def _startup() -> None:
        try:
            await asyncio.to_thread(service.ensure_resolver)
        except Exception:  # pragma: no cover - logged, retried lazily on first request
            logger.exception("Failed to initialise the query resolver")

    def admit(request: Request) -> Admission:
        admission = service.rate_limiter.admit(client_key(request))
        if not admission.allowed:
            raise RateLimited(admission.limit, admission.retry_after)
        return admission

    @app.exception_handler(RateLimited)
    async def _rate_limited(_request: Request, exc: RateLimited) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"error": RATE_LIMIT_MESSAGE, "retryAfter": exc.retry_after},
            headers={
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "Retry-After": str(exc.retry_after),
            },
        )

    @app.exception_handler(InvalidRequest)
    @app.exception_handler(AddOnLimitExceeded)
    async def _invalid(_request: Request, exc: NutritionSearchError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _validation(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": detail})

    @app.exception_handler(NutritionSearchError)
    async def _upstream(request: Request, exc: NutritionSearchError) -> JSONResponse:
        logger.error("Search failed for %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - last resort
        logger.error("Unhandled error for %s", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})

    @app.get("/health", tags=["meta"])
    def health() -> Dict[str, Any]:
        """Simple health check."""
        resolver = service.resolver
        return {
            "status": "ok" if resolver is not None else "starting",
            "index": config.index_name,
            "catalog_items": len(resolver.catalog) if resolver else 0,
            "indexed_records": resolver.index_size() if resolver else 0,
            "rule_families": resolver.rule_engine.families if resolver else [],
            "tracked_clients": len(service.rate_limiter),
        }

    @app.post(
        "/search",
        response_model=ResolvedAnswer,
        response_model_exclude_none=True,
        tags=["search"],
    )
    async def search(
        payload: SearchRequest,
        response: Response,
        admission: Admission = Depends(admit),
    ) -> ResolvedAnswer:
        """Rerank-backed search with customization rules and an AI summary."""
        resolver = await asyncio.to_thread(service.ensure_resolver)
        answer = await asyncio.to_thread(
            resolver.resolve,
            payload.query,
            payload.top_k,
            payload.category,
            size=payload.size,
            add_ons=payload.add_ons,
        )
        response.headers.update(_rate_limit_headers(admission))
        return answer

    @app.post(
        "/search/basic",
        response_model=BasicSearchResponse,
        response_model_exclude_none=True,
        tags=["search"],
    )
    async def basic_search(payload: BasicSearchRequest) -> BasicSearchResponse:
        """Vector similarity only, in store order."""
        resolver = await asyncio.to_thread(service.ensure_resolver)
        return await asyncio.to_thread(resolver.search, payload.query, payload.top_k)

    return app


config = ServerConfig()
logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))
app = create_app(config)
