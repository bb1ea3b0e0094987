"""Tests for cross-provider title matching."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from metaweave.models import MediaRecord, MediaType, ProviderMatch
from metaweave.services.matcher import CrossProviderMatcher
from metaweave.services.provider_cache import MappingCache, MemoryCacheStore
from metaweave.services.retry import RateLimiter, RetryConfig, RetryHandler


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


async def _no_sleep(_: float) -> None:
    return None


def build_matcher(**kwargs) -> CrossProviderMatcher:
    handler = RetryHandler(
        RetryConfig(max_attempts=2, use_jitter=False),
        RateLimiter(sleep=_no_sleep),
        sleep=_no_sleep,
    )
    kwargs.setdefault("providers", ("anilist", "jikan", "kitsu"))
    return CrossProviderMatcher(handler, **kwargs)


def record(provider: str, media_id: str, title: str, **kwargs) -> MediaRecord:
    kwargs.setdefault("type", MediaType.ANIME)
    return MediaRecord(id=media_id, title=title, source_id=provider, **kwargs)


def test_identical_titles_with_same_year_and_type_score_one() -> None:
    matcher = build_matcher()

    confidence = matcher.calculate_match_confidence(
        "Naruto",
        "Naruto",
        source_year=2002,
        target_year=2002,
        source_type=MediaType.ANIME,
        target_type=MediaType.ANIME,
    )

    assert confidence == pytest.approx(1.0)


def test_confidence_weights_years_and_types() -> None:
    matcher = build_matcher()

    assert matcher.calculate_match_confidence("Naruto", "Naruto") == pytest.approx(0.8)
    assert matcher.calculate_match_confidence(
        "Naruto", "Naruto", source_year=2002, target_year=2003
    ) == pytest.approx(0.85)
    assert matcher.calculate_match_confidence(
        "Naruto", "Naruto", source_year=2002, target_year=2010
    ) == pytest.approx(0.8)
    assert matcher.calculate_match_confidence(
        "Naruto",
        "Naruto",
        source_type=MediaType.ANIME,
        target_type=MediaType.MANGA,
    ) == pytest.approx(0.8)


def test_confidence_uses_best_alternate_title() -> None:
    matcher = build_matcher()

    confidence = matcher.calculate_match_confidence(
        "Shingeki no Kyojin",
        "Attack on Titan",
        source_english_title="Attack on Titan",
        target_english_title="Attack on Titan",
    )

    assert confidence == pytest.approx(0.8)


def test_confidence_ignores_season_and_year_markers() -> None:
    matcher = build_matcher()

    assert matcher.calculate_match_confidence(
        "Attack on Titan Season 2", "Attack on Titan (2017)"
    ) == pytest.approx(0.8)


def test_threshold_must_be_a_probability() -> None:
    with pytest.raises(ValueError):
        build_matcher(min_confidence_threshold=1.5)


def test_find_best_match_prefers_first_on_ties_and_respects_threshold() -> None:
    matcher = build_matcher()
    first = ProviderMatch("jikan", "1", 0.9, "Naruto")
    second = ProviderMatch("kitsu", "2", 0.9, "Naruto")
    weak = ProviderMatch("anilist", "3", 0.5, "Boruto")

    assert matcher.find_best_match([first, second]) is first
    assert matcher.find_best_match([weak]) is None
    assert matcher.find_best_match([]) is None


def test_cache_key_is_composite() -> None:
    key = CrossProviderMatcher.build_cache_key(
        "Naruto (2002)", MediaType.ANIME, english_title="Naruto", year=2002
    )

    assert key == "naruto|naruto||2002|anime"
    assert (
        CrossProviderMatcher.build_cache_key("Naruto", MediaType.ANIME)
        == "naruto|||unknown|anime"
    )


@pytest.mark.anyio("asyncio")
async def test_find_matches_excludes_primary_and_keeps_confident_results() -> None:
    matcher = build_matcher()
    searched: list[str] = []

    async def search(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        searched.append(provider)
        if provider == "jikan":
            return [
                record("jikan", "99", "Boruto", year=2017),
                record("jikan", "20", "Naruto", year=2002),
            ]
        if provider == "kitsu":
            return [record("kitsu", "11", "Bleach", year=2004)]
        return []

    matches = await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", search, year=2002)

    assert sorted(searched) == ["jikan", "kitsu"]
    assert set(matches) == {"jikan"}
    assert matches["jikan"].provider_media_id == "20"
    assert matches["jikan"].confidence == pytest.approx(1.0)
    assert matches["jikan"].source_record is not None


@pytest.mark.anyio("asyncio")
async def test_failing_provider_does_not_affect_others() -> None:
    matcher = build_matcher()

    async def search(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        if provider == "kitsu":
            raise httpx.ConnectError("down")
        if provider == "anilist":
            raise RuntimeError("unexpected payload")
        return [record(provider, "20", "Naruto")]

    matches = await matcher.find_matches("Naruto", MediaType.ANIME, "tmdb", search)

    assert set(matches) == {"jikan"}


@pytest.mark.anyio("asyncio")
async def test_slow_provider_is_treated_as_empty() -> None:
    matcher = build_matcher(search_timeout=0.01)

    async def search(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        if provider == "anilist":
            await asyncio.sleep(1)
        return [record(provider, "20", "Naruto")]

    matches = await matcher.find_matches("Naruto", MediaType.ANIME, "tmdb", search)

    assert set(matches) == {"jikan", "kitsu"}


@pytest.mark.anyio("asyncio")
async def test_cached_matches_skip_searching() -> None:
    matcher = build_matcher()
    cache = MappingCache(MemoryCacheStore())
    await cache.init()
    calls = 0

    async def search(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        nonlocal calls
        calls += 1
        return [record(provider, "20", "Naruto")]

    first = await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", search, cache=cache)
    assert calls == 2
    assert {pid: m.confidence for pid, m in first.items()} == {
        "jikan": pytest.approx(0.9),
        "kitsu": pytest.approx(0.9),
    }

    second = await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", search, cache=cache)
    assert calls == 2
    assert {pid: m.provider_media_id for pid, m in second.items()} == {
        "jikan": "20",
        "kitsu": "20",
    }
    assert all(match.confidence == 1.0 for match in second.values())
    assert all(match.matched_title == "Naruto" for match in second.values())


@pytest.mark.anyio("asyncio")
async def test_empty_results_are_not_cached_and_invalidation_forces_search() -> None:
    matcher = build_matcher(providers=("anilist", "jikan"))
    cache = MappingCache(MemoryCacheStore())
    await cache.init()
    calls = 0

    async def nothing(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        nonlocal calls
        calls += 1
        return []

    assert await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", nothing, cache=cache) == {}
    assert await cache.get_entry_count() == 0

    async def found(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        nonlocal calls
        calls += 1
        return [record(provider, "20", "Naruto")]

    await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", found, cache=cache)
    await matcher.invalidate_cached_matches("Naruto", MediaType.ANIME, "anilist", cache)
    await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", found, cache=cache)

    assert calls == 3


@pytest.mark.anyio("asyncio")
async def test_provider_search_keeps_first_of_equally_confident_records() -> None:
    matcher = build_matcher(providers=("anilist", "jikan"))

    async def search(query: str, provider: str, media_type: MediaType) -> list[MediaRecord]:
        return [
            record("jikan", "20", "Naruto", year=2002),
            record("jikan", "21", "Naruto", year=2002),
            record("jikan", "22", "Boruto", year=2002),
        ]

    matches = await matcher.find_matches("Naruto", MediaType.ANIME, "anilist", search, year=2002)

    assert matches["jikan"].provider_media_id == "20"
