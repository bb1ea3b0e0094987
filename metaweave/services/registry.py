"""Lookup table from provider ids to the clients that talk to them."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol, runtime_checkable

from ..models import ChapterRecord, EpisodeRecord, MediaDetails, MediaRecord, MediaType, SeasonInfo
from .aggregator import SeasonMetadataLookup

logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capabilities every catalog provider client offers."""

    provider_id: str

    async def search(self, query: str, media_type: MediaType) -> list[MediaRecord]: ...

    async def fetch_episodes(self, media_id: str) -> list[EpisodeRecord]: ...

    async def fetch_chapters(self, media_id: str) -> list[ChapterRecord]: ...

    async def fetch_details(self, media_id: str) -> MediaDetails: ...


@runtime_checkable
class SeasonMetadataProvider(Protocol):
    async def get_season_metadata(self, tv_id: str) -> dict[int, SeasonInfo]: ...


def split_media_id(media_id: str, default_kind: str) -> tuple[str, str]:
    """Split ``"kind:id"`` identifiers, falling back to ``default_kind``."""

    kind, separator, raw_id = media_id.partition(":")
    if not separator:
        return default_kind, media_id
    return kind, raw_id


class ProviderRegistry:
    """Route collaborator calls to the adapter registered for a provider."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        provider_id = adapter.provider_id.lower()
        if provider_id in self._adapters:
            logger.info("Replacing adapter registered for %s", provider_id)
        self._adapters[provider_id] = adapter

    def get(self, provider_id: str) -> ProviderAdapter | None:
        return self._adapters.get(provider_id.lower())

    @property
    def available(self) -> tuple[str, ...]:
        return tuple(self._adapters)

    async def search(
        self, query: str, provider_id: str, media_type: MediaType
    ) -> list[MediaRecord]:
        adapter = self.get(provider_id)
        if adapter is None:
            return []
        return await adapter.search(query, media_type)

    async def fetch_episodes(self, media_id: str, provider_id: str) -> list[EpisodeRecord]:
        adapter = self.get(provider_id)
        if adapter is None:
            return []
        return await adapter.fetch_episodes(media_id)

    async def fetch_chapters(self, media_id: str, provider_id: str) -> list[ChapterRecord]:
        adapter = self.get(provider_id)
        if adapter is None:
            return []
        return await adapter.fetch_chapters(media_id)

    async def fetch_details(self, media_id: str, provider_id: str) -> MediaDetails:
        adapter = self.get(provider_id)
        if adapter is None:
            raise KeyError(f"No adapter registered for provider {provider_id!r}")
        return await adapter.fetch_details(media_id)

    def season_metadata_lookup(self, provider_id: str) -> SeasonMetadataLookup | None:
        """Return the provider's season metadata call, if it has one."""

        adapter = self.get(provider_id)
        if isinstance(adapter, SeasonMetadataProvider):
            return adapter.get_season_metadata
        return None
