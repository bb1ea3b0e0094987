"""Entry point for the FastAPI-powered metadata aggregation service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import settings
from .database import Database
from .models import MediaRecord, MediaType
from .services.aggregator import DataAggregator, PriorityConfig
from .services.jikan import JikanClient
from .services.kitsu import KitsuClient
from .services.matcher import CrossProviderMatcher
from .services.metadata_service import MetadataService, UnknownProviderError
from .services.provider_cache import (
    CacheError,
    CacheStore,
    DatabaseCacheStore,
    MappingCache,
    MemoryCacheStore,
)
from .services.registry import ProviderRegistry
from .services.retry import RateLimiter, RetryConfig, RetryHandler
from .services.tmdb import TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class MatchRequest(BaseModel):
    """Body accepted by the match endpoints."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    title: str = Field(min_length=1)
    type: MediaType
    primary_source_id: str = Field(min_length=1)
    english_title: str | None = None
    romaji_title: str | None = None
    year: int | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    registry = ProviderRegistry()

    jikan_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.jikan_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    registry.register(JikanClient(jikan_http_client))

    kitsu_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.kitsu_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    registry.register(KitsuClient(kitsu_http_client))

    if settings.tmdb_api_key:
        tmdb_http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.tmdb_api_url),
                timeout=httpx.Timeout(20.0, connect=10.0),
            )
        )
        registry.register(TMDBClient(settings, tmdb_http_client))
    else:
        logger.info("TMDB_API_KEY not set; TMDB provider disabled")

    database = Database(settings.database_url)
    await database.create_all()

    store: CacheStore
    if settings.cache_backend == "memory":
        store = MemoryCacheStore()
    else:
        store = DatabaseCacheStore(database.session_factory)
    cache: MappingCache | None = MappingCache(
        store,
        ttl_days=settings.cache_ttl_days,
        max_bytes=settings.cache_max_bytes,
    )
    try:
        await cache.init()
    except CacheError as exc:
        logger.error("Mapping cache disabled: %s", exc)
        cache = None

    retry_handler = RetryHandler(
        RetryConfig.from_preset(settings.retry_preset), RateLimiter()
    )
    priority_config = PriorityConfig.from_settings(settings)
    matcher = CrossProviderMatcher(
        retry_handler,
        providers=registry.available,
        min_confidence_threshold=priority_config.min_confidence_threshold,
        search_timeout=settings.search_timeout_seconds,
    )
    aggregator = DataAggregator(
        retry_handler,
        priority_config,
        episode_timeout=settings.episode_fetch_timeout_seconds,
        chapter_timeout=settings.chapter_fetch_timeout_seconds,
        details_timeout=settings.details_fetch_timeout_seconds,
    )
    metadata_service = MetadataService(registry, matcher, aggregator, cache)

    app.state.metadata_service = metadata_service
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await metadata_service.close()
        retry_handler.rate_limiter.clear_all()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cross-provider metadata matching and aggregation",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @fastapi_app.exception_handler(RequestValidationError)
    async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    register_routes(fastapi_app)
    return fastapi_app


def get_metadata_service(app: FastAPI) -> MetadataService:
    service = getattr(app.state, "metadata_service", None)
    if not isinstance(service, MetadataService):
        raise RuntimeError("Metadata service not initialised")
    return service


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/matches")
    async def find_matches_endpoint(body: MatchRequest) -> dict[str, Any]:
        service = get_metadata_service(fastapi_app)
        matches = await service.find_matches(
            body.title,
            body.type,
            body.primary_source_id,
            english_title=body.english_title,
            romaji_title=body.romaji_title,
            year=body.year,
        )
        return {
            "matches": {
                provider_id: match.to_payload() for provider_id, match in matches.items()
            }
        }

    @fastapi_app.delete("/api/matches")
    async def invalidate_matches_endpoint(body: MatchRequest) -> dict[str, str]:
        service = get_metadata_service(fastapi_app)
        invalidated = await service.invalidate_matches(
            body.title,
            body.type,
            body.primary_source_id,
            english_title=body.english_title,
            romaji_title=body.romaji_title,
            year=body.year,
        )
        return {"status": "invalidated" if invalidated else "cache disabled"}

    @fastapi_app.post("/api/episodes")
    async def episodes_endpoint(primary: MediaRecord) -> dict[str, Any]:
        service = get_metadata_service(fastapi_app)
        try:
            episodes = await service.aggregate_episodes(primary)
        except UnknownProviderError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {
            "episodes": [
                episode.model_dump(mode="json", by_alias=True) for episode in episodes
            ]
        }

    @fastapi_app.post("/api/chapters")
    async def chapters_endpoint(primary: MediaRecord) -> dict[str, Any]:
        service = get_metadata_service(fastapi_app)
        try:
            chapters = await service.aggregate_chapters(primary)
        except UnknownProviderError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {
            "chapters": [
                chapter.model_dump(mode="json", by_alias=True) for chapter in chapters
            ]
        }

    @fastapi_app.post("/api/details")
    async def details_endpoint(primary: MediaRecord) -> dict[str, Any]:
        service = get_metadata_service(fastapi_app)
        try:
            details = await service.aggregate_details(primary)
        except UnknownProviderError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                raise HTTPException(status_code=404, detail="Primary title not found") from exc
            raise HTTPException(status_code=502, detail="Primary provider request failed") from exc
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=502, detail="Primary provider unreachable") from exc
        return details.model_dump(mode="json", by_alias=True)

    @fastapi_app.get("/api/cache")
    async def cache_stats_endpoint() -> dict[str, Any]:
        service = get_metadata_service(fastapi_app)
        stats = await service.cache_stats()
        payload: dict[str, Any] = stats.to_payload()
        payload["enabled"] = service.cache_enabled
        return payload

    @fastapi_app.post("/api/cache/clear-expired")
    async def clear_expired_endpoint() -> dict[str, int]:
        service = get_metadata_service(fastapi_app)
        try:
            removed = await service.clear_expired()
        except CacheError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"removed": removed}

    @fastapi_app.delete("/api/cache")
    async def clear_cache_endpoint() -> dict[str, str]:
        service = get_metadata_service(fastapi_app)
        try:
            await service.clear_cache()
        except CacheError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": "cleared"}


app = create_app()
