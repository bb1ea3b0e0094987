"""End-to-end flow: resolve a title across providers, then merge their data."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import (
    AggregatedDetails,
    ChapterRecord,
    EpisodeRecord,
    MediaRecord,
    MediaType,
    ProviderMatch,
)
from .aggregator import DataAggregator
from .matcher import CrossProviderMatcher
from .provider_cache import MappingCache
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


class UnknownProviderError(LookupError):
    """Raised when a request names a primary provider with no adapter."""


@dataclass(slots=True)
class CacheStats:
    entries: int
    size_bytes: int

    def to_payload(self) -> dict[str, int]:
        return {"entries": self.entries, "sizeBytes": self.size_bytes}


class MetadataService:
    """Coordinate provider lookups, cross-provider matching and aggregation."""

    def __init__(
        self,
        registry: ProviderRegistry,
        matcher: CrossProviderMatcher,
        aggregator: DataAggregator,
        cache: MappingCache | None = None,
    ) -> None:
        self._registry = registry
        self._matcher = matcher
        self._aggregator = aggregator
        self._cache = cache

    @property
    def cache_enabled(self) -> bool:
        return self._cache is not None and self._cache.is_initialised

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    async def find_matches(
        self,
        title: str,
        media_type: MediaType,
        primary_source_id: str,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        year: int | None = None,
    ) -> dict[str, ProviderMatch]:
        return await self._matcher.find_matches(
            title,
            media_type,
            primary_source_id,
            self._registry.search,
            english_title=english_title,
            romaji_title=romaji_title,
            year=year,
            cache=self._cache if self.cache_enabled else None,
        )

    async def invalidate_matches(
        self,
        title: str,
        media_type: MediaType,
        primary_source_id: str,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        year: int | None = None,
    ) -> bool:
        """Drop the cached mapping for a title; ``False`` when caching is off."""

        if not self.cache_enabled:
            return False
        await self._matcher.invalidate_cached_matches(
            title,
            media_type,
            primary_source_id,
            self._cache,
            english_title=english_title,
            romaji_title=romaji_title,
            year=year,
        )
        return True

    async def aggregate_episodes(self, primary: MediaRecord) -> list[EpisodeRecord]:
        self._require_provider(primary.source_id)
        matches = await self._matches_for(primary)
        lookup = self._registry.season_metadata_lookup(
            self._aggregator.priority_config.season_authority_provider
        )
        return await self._aggregator.aggregate_episodes(
            primary,
            matches,
            self._registry.fetch_episodes,
            season_metadata_lookup=lookup,
        )

    async def aggregate_chapters(self, primary: MediaRecord) -> list[ChapterRecord]:
        self._require_provider(primary.source_id)
        matches = await self._matches_for(primary)
        return await self._aggregator.aggregate_chapters(
            primary, matches, self._registry.fetch_chapters
        )

    async def aggregate_details(self, primary: MediaRecord) -> AggregatedDetails:
        """Fetch the primary's full details and merge every matched provider in."""

        self._require_provider(primary.source_id)
        primary_details = await self._registry.fetch_details(primary.id, primary.source_id)
        matches = await self._matches_for(primary)
        return await self._aggregator.aggregate_media_details(
            primary_details, matches, self._registry.fetch_details
        )

    async def cache_stats(self) -> CacheStats:
        if not self.cache_enabled:
            return CacheStats(entries=0, size_bytes=0)
        return CacheStats(
            entries=await self._cache.get_entry_count(),
            size_bytes=await self._cache.get_cache_size(),
        )

    async def clear_expired(self) -> int:
        if not self.cache_enabled:
            return 0
        return await self._cache.clear_expired()

    async def clear_cache(self) -> None:
        if self.cache_enabled:
            await self._cache.clear_all()

    async def close(self) -> None:
        if self._cache is not None:
            await self._cache.close()

    def _require_provider(self, provider_id: str) -> None:
        if self._registry.get(provider_id) is None:
            raise UnknownProviderError(f"Unknown primary provider: {provider_id}")

    async def _matches_for(self, primary: MediaRecord) -> dict[str, ProviderMatch]:
        return await self.find_matches(
            primary.title,
            primary.type,
            primary.source_id,
            english_title=primary.english_title,
            romaji_title=primary.romaji_title,
            year=primary.release_year,
        )
