"""Fuzzy identity resolution of one title across catalog providers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Sequence

from ..models import MediaRecord, MediaType, ProviderId, ProviderMatch
from ..utils import normalize_title, title_similarity
from .provider_cache import CacheError, MappingCache
from .retry import RetryHandler, run_with_timeout

logger = logging.getLogger(__name__)

SearchFunction = Callable[[str, str, MediaType], Awaitable[list[MediaRecord]]]

DEFAULT_MIN_CONFIDENCE = 0.8
DEFAULT_SEARCH_TIMEOUT_SECONDS = 10.0

TITLE_WEIGHT = 0.8
EXACT_YEAR_BONUS = 0.1
ADJACENT_YEAR_BONUS = 0.05
TYPE_BONUS = 0.1


class CrossProviderMatcher:
    """Find the record for the same title in every non-primary provider."""

    def __init__(
        self,
        retry_handler: RetryHandler,
        *,
        providers: Iterable[str] | None = None,
        min_confidence_threshold: float = DEFAULT_MIN_CONFIDENCE,
        search_timeout: float = DEFAULT_SEARCH_TIMEOUT_SECONDS,
    ) -> None:
        if not 0.0 <= min_confidence_threshold <= 1.0:
            raise ValueError("min_confidence_threshold must be between 0 and 1")
        self._retry_handler = retry_handler
        self._providers: tuple[str, ...] = tuple(
            providers if providers is not None else (p.value for p in ProviderId)
        )
        self.min_confidence_threshold = min_confidence_threshold
        self._search_timeout = search_timeout

    @staticmethod
    def normalize_title(title: str) -> str:
        return normalize_title(title)

    @staticmethod
    def build_cache_key(
        title: str,
        media_type: MediaType,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        year: int | None = None,
    ) -> str:
        """Composite ``title|english|romaji|year|type`` key for the cache."""

        parts = [
            normalize_title(title),
            normalize_title(english_title or ""),
            normalize_title(romaji_title or ""),
            str(year) if year is not None else "unknown",
            MediaType(media_type).value,
        ]
        return "|".join(parts)

    def calculate_match_confidence(
        self,
        source_title: str,
        target_title: str,
        *,
        source_english_title: str | None = None,
        target_english_title: str | None = None,
        source_romaji_title: str | None = None,
        target_romaji_title: str | None = None,
        source_year: int | None = None,
        target_year: int | None = None,
        source_type: MediaType | None = None,
        target_type: MediaType | None = None,
    ) -> float:
        """Score how likely two records describe the same title, in ``[0, 1]``.

        The best of the primary, English and Romaji title similarities is
        weighted at 0.8; an equal year adds 0.1 (0.05 when one year apart) and
        an equal media type adds 0.1.
        """

        similarity = title_similarity(
            normalize_title(source_title), normalize_title(target_title)
        )
        for source, target in (
            (source_english_title, target_english_title),
            (source_romaji_title, target_romaji_title),
        ):
            if source is not None and target is not None:
                similarity = max(
                    similarity,
                    title_similarity(normalize_title(source), normalize_title(target)),
                )

        year_bonus = 0.0
        if source_year is not None and target_year is not None:
            if source_year == target_year:
                year_bonus = EXACT_YEAR_BONUS
            elif abs(source_year - target_year) <= 1:
                year_bonus = ADJACENT_YEAR_BONUS

        type_bonus = 0.0
        if source_type is not None and target_type is not None and source_type == target_type:
            type_bonus = TYPE_BONUS

        confidence = similarity * TITLE_WEIGHT + year_bonus + type_bonus
        return min(max(confidence, 0.0), 1.0)

    def is_high_confidence_match(self, confidence: float) -> bool:
        return confidence >= self.min_confidence_threshold

    def find_best_match(self, matches: Sequence[ProviderMatch]) -> ProviderMatch | None:
        """Highest confidence match (first seen on ties) if it clears the threshold."""

        best: ProviderMatch | None = None
        for match in matches:
            if best is None or match.confidence > best.confidence:
                best = match
        if best is None or not self.is_high_confidence_match(best.confidence):
            return None
        return best

    async def find_matches(
        self,
        title: str,
        media_type: MediaType,
        primary_source_id: str,
        search_fn: SearchFunction,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        year: int | None = None,
        cache: MappingCache | None = None,
    ) -> dict[str, ProviderMatch]:
        """Resolve ``title`` in every provider other than ``primary_source_id``.

        Cached mappings are returned as-is with confidence 1.0. Otherwise each
        remaining provider is searched concurrently; a failing or slow
        provider only loses its own entry. Fresh matches are written back to
        the cache when any were found.
        """

        started = time.perf_counter()
        cache_key = self.build_cache_key(
            title,
            media_type,
            english_title=english_title,
            romaji_title=romaji_title,
            year=year,
        )

        if cache is not None:
            cached = await self._lookup_cache(cache, primary_source_id, cache_key)
            if cached:
                logger.info("Cache hit for %r (%d providers)", title, len(cached))
                return {
                    provider_id: ProviderMatch(
                        provider_id=provider_id,
                        provider_media_id=media_id,
                        confidence=1.0,
                        matched_title=title,
                    )
                    for provider_id, media_id in cached.items()
                }
            logger.info("Cache miss for %r", title)

        primary = primary_source_id.strip().lower()
        candidates = [p for p in self._providers if p.lower() != primary]
        logger.info("Searching %d providers for %r: %s", len(candidates), title, candidates)

        results = await asyncio.gather(
            *(
                self._search_provider(
                    provider_id,
                    title,
                    media_type,
                    search_fn,
                    english_title=english_title,
                    romaji_title=romaji_title,
                    year=year,
                )
                for provider_id in candidates
            )
        )
        matches = {match.provider_id: match for match in results if match is not None}

        logger.info(
            "Matched %r in %d providers in %.0fms",
            title,
            len(matches),
            (time.perf_counter() - started) * 1000,
        )

        if cache is not None and matches:
            try:
                await cache.store_mapping(
                    primary_source_id,
                    cache_key,
                    {pid: match.provider_media_id for pid, match in matches.items()},
                )
            except CacheError as exc:
                logger.error("Failed to cache matches for %r: %s", title, exc)

        return matches

    async def invalidate_cached_matches(
        self,
        title: str,
        media_type: MediaType,
        primary_source_id: str,
        cache: MappingCache,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        year: int | None = None,
    ) -> None:
        cache_key = self.build_cache_key(
            title,
            media_type,
            english_title=english_title,
            romaji_title=romaji_title,
            year=year,
        )
        try:
            await cache.remove_mapping(primary_source_id, cache_key)
        except CacheError as exc:
            logger.error("Failed to invalidate cached matches for %r: %s", title, exc)
            return
        logger.info("Invalidated cached matches for %r (%s)", title, cache_key)

    async def _lookup_cache(
        self, cache: MappingCache, primary_source_id: str, cache_key: str
    ) -> dict[str, str] | None:
        try:
            return await cache.get_mappings(primary_source_id, cache_key)
        except CacheError as exc:
            logger.warning("Mapping cache unavailable: %s", exc)
            return None

    async def _search_provider(
        self,
        provider_id: str,
        title: str,
        media_type: MediaType,
        search_fn: SearchFunction,
        *,
        english_title: str | None,
        romaji_title: str | None,
        year: int | None,
    ) -> ProviderMatch | None:
        label = f"Search {provider_id} for {title!r}"

        async def _search() -> list[MediaRecord]:
            return await run_with_timeout(
                lambda: search_fn(title, provider_id, media_type),
                self._search_timeout,
                [],
                label=label,
            )

        try:
            results = await self._retry_handler.execute(
                _search, provider_id=provider_id, operation_name=label
            )
        except Exception as exc:
            logger.error("Search failed for %s after retries: %s", provider_id, exc)
            return None

        if not results:
            logger.info("No results from %s for %r", provider_id, title)
            return None

        candidates = [
            ProviderMatch(
                provider_id=provider_id,
                provider_media_id=record.id,
                confidence=self.calculate_match_confidence(
                    title,
                    record.title,
                    source_english_title=english_title,
                    target_english_title=record.english_title,
                    source_romaji_title=romaji_title,
                    target_romaji_title=record.romaji_title,
                    source_year=year,
                    target_year=record.release_year,
                    source_type=media_type,
                    target_type=record.type,
                ),
                matched_title=record.title,
                source_record=record,
            )
            for record in results
        ]
        best = self.find_best_match(candidates)
        if best is None:
            logger.info(
                "No confident match in %s for %r (best %.2f)",
                provider_id,
                title,
                max(candidate.confidence for candidate in candidates),
            )
            return None

        logger.info(
            "Matched %r in %s as %r (confidence %.2f)",
            title,
            provider_id,
            best.matched_title,
            best.confidence,
        )
        return best
