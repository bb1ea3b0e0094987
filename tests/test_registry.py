"""Tests for the provider registry."""

from __future__ import annotations

import asyncio

import pytest

from metaweave.models import MediaDetails, MediaRecord, MediaType, SeasonInfo
from metaweave.services.registry import ProviderAdapter, ProviderRegistry, split_media_id


class StubAdapter:
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id

    async def search(self, query: str, media_type: MediaType) -> list[MediaRecord]:
        return [MediaRecord(id="1", title=query, type=media_type, source_id=self.provider_id)]

    async def fetch_episodes(self, media_id: str) -> list:
        return []

    async def fetch_chapters(self, media_id: str) -> list:
        return []

    async def fetch_details(self, media_id: str) -> MediaDetails:
        return MediaDetails(id=media_id, title="Stub", type=MediaType.ANIME, source_id=self.provider_id)


class SeasonAdapter(StubAdapter):
    async def get_season_metadata(self, tv_id: str) -> dict[int, SeasonInfo]:
        return {1: SeasonInfo(episode_count=10)}


def test_split_media_id() -> None:
    assert split_media_id("movie:603", "tv") == ("movie", "603")
    assert split_media_id("1399", "tv") == ("tv", "1399")


def test_registry_routes_calls_to_adapters() -> None:
    registry = ProviderRegistry([StubAdapter("Jikan")])

    assert isinstance(StubAdapter("x"), ProviderAdapter)
    assert registry.available == ("jikan",)
    assert registry.get("JIKAN") is not None

    results = asyncio.run(registry.search("Naruto", "jikan", MediaType.ANIME))
    assert [record.title for record in results] == ["Naruto"]
    assert asyncio.run(registry.search("Naruto", "kitsu", MediaType.ANIME)) == []
    assert asyncio.run(registry.fetch_episodes("1", "kitsu")) == []
    assert asyncio.run(registry.fetch_details("5", "jikan")).id == "5"

    with pytest.raises(KeyError):
        asyncio.run(registry.fetch_details("5", "kitsu"))


def test_season_metadata_lookup_only_for_capable_adapters() -> None:
    registry = ProviderRegistry([StubAdapter("jikan"), SeasonAdapter("tmdb")])

    assert registry.season_metadata_lookup("jikan") is None
    assert registry.season_metadata_lookup("anilist") is None
    lookup = registry.season_metadata_lookup("tmdb")
    assert lookup is not None
    assert asyncio.run(lookup("1399")) == {1: SeasonInfo(episode_count=10)}
