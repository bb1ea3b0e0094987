"""Persistent cache of resolved cross-provider identities."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CacheEntry
from ..models import CachedMapping

logger = logging.getLogger(__name__)

METADATA_KEY = "cache_metadata"
DEFAULT_TTL_DAYS = 7
DEFAULT_MAX_CACHE_BYTES = 10 * 1024 * 1024


class CacheError(RuntimeError):
    """Raised when the mapping cache cannot be used."""


class CacheStore(Protocol):
    """Minimal key to string store the mapping cache is built on."""

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...

    async def clear(self) -> None: ...


class MemoryCacheStore:
    """In-process store, used for tests and the ``memory`` cache backend."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)

    async def clear(self) -> None:
        self._data.clear()


class DatabaseCacheStore:
    """Store entries in the ``cache_entries`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        async with self._session_factory() as session:
            entry = await session.get(CacheEntry, key)
            return entry.value if entry is not None else None

    async def put(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            await session.merge(
                CacheEntry(key=key, value=value, updated_at=datetime.utcnow())
            )
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await session.commit()

    async def keys(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(CacheEntry.key))
            return list(result.scalars().all())

    async def clear(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(CacheEntry))
            await session.commit()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MappingCache:
    """TTL and size bounded cache of ``CachedMapping`` records.

    Entries are stored as JSON under ``"{primary}_{media}"`` keys. Access times
    used for LRU eviction live in the same store under ``cache_metadata`` and
    are not counted towards the size budget or entry count. Unreadable
    entries are reported as missing instead of raising.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        ttl_days: int = DEFAULT_TTL_DAYS,
        max_bytes: int = DEFAULT_MAX_CACHE_BYTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ttl = timedelta(days=ttl_days)
        self._max_bytes = max_bytes
        self._clock = clock
        self._access_times: dict[str, datetime] = {}
        self._initialised = False
        self._lock = asyncio.Lock()

    @property
    def is_initialised(self) -> bool:
        return self._initialised

    async def init(self) -> None:
        """Open the cache and load persisted access times."""

        try:
            metadata = await self._store.get(METADATA_KEY)
        except Exception as exc:
            logger.error("Failed to initialise mapping cache: %s", exc)
            raise CacheError(f"Failed to initialise cache: {exc}") from exc
        self._access_times = self._parse_access_times(metadata)
        self._initialised = True

    async def close(self) -> None:
        self._initialised = False
        self._access_times.clear()

    def is_expired(self, cached_at: datetime) -> bool:
        return self._clock() - _as_aware(cached_at) > self._ttl

    async def store_mapping(
        self,
        primary_provider_id: str,
        primary_media_id: str,
        provider_mappings: dict[str, str],
    ) -> None:
        """Write a mapping, evicting least recently used entries to make room."""

        self._ensure_initialised()
        mapping = CachedMapping(
            primary_provider_id=primary_provider_id,
            primary_media_id=primary_media_id,
            provider_mappings=dict(provider_mappings),
            cached_at=self._clock(),
        )
        key = mapping.cache_key
        payload = mapping.to_json()
        entry_size = len(payload.encode("utf-8"))

        async with self._lock:
            try:
                sizes = await self._entry_sizes()
                sizes.pop(key, None)
                if sum(sizes.values()) + entry_size > self._max_bytes:
                    await self._evict_lru(sizes, entry_size)
                await self._store.put(key, payload)
            except Exception as exc:
                logger.error("Failed to store cache mapping for %s: %s", key, exc)
                raise CacheError(f"Failed to store mapping: {exc}") from exc
            self._access_times[key] = self._clock()
            await self._save_access_times()

        logger.info(
            "Cached mapping for %s (%d providers, %d bytes)",
            key,
            len(provider_mappings),
            entry_size,
        )

    async def get_mappings(
        self, primary_provider_id: str, primary_media_id: str
    ) -> dict[str, str] | None:
        """Return the cached mapping, or ``None`` when absent, stale or unreadable."""

        self._ensure_initialised()
        key = CachedMapping.build_key(primary_provider_id, primary_media_id)
        try:
            payload = await self._store.get(key)
            if payload is None:
                return None
            mapping = CachedMapping.from_json(payload)
        except (ValidationError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)
            return None
        except Exception as exc:
            logger.error("Failed to read cache entry %s: %s", key, exc)
            return None

        if self.is_expired(mapping.cached_at):
            logger.info("Cache entry %s expired", key)
            try:
                await self._store.delete(key)
            except Exception as exc:
                logger.error("Failed to delete expired entry %s: %s", key, exc)
            self._access_times.pop(key, None)
            await self._save_access_times()
            return None

        self._access_times[key] = self._clock()
        await self._save_access_times()
        logger.info(
            "Cache hit for %s (%d providers)", key, len(mapping.provider_mappings)
        )
        return dict(mapping.provider_mappings)

    async def remove_mapping(self, primary_provider_id: str, primary_media_id: str) -> None:
        self._ensure_initialised()
        key = CachedMapping.build_key(primary_provider_id, primary_media_id)
        try:
            await self._store.delete(key)
        except Exception as exc:
            raise CacheError(f"Failed to remove mapping: {exc}") from exc
        self._access_times.pop(key, None)
        await self._save_access_times()

    async def clear_expired(self) -> int:
        """Delete expired and corrupt entries, returning how many were removed."""

        self._ensure_initialised()
        async with self._lock:
            try:
                stale: list[str] = []
                for key in await self._store.keys():
                    if key == METADATA_KEY:
                        continue
                    payload = await self._store.get(key)
                    if payload is None:
                        continue
                    try:
                        mapping = CachedMapping.from_json(payload)
                    except (ValidationError, ValueError):
                        stale.append(key)
                        continue
                    if self.is_expired(mapping.cached_at):
                        stale.append(key)

                for key in stale:
                    await self._store.delete(key)
                    self._access_times.pop(key, None)
            except Exception as exc:
                logger.error("Failed to clear expired cache entries: %s", exc)
                raise CacheError(f"Failed to clear expired entries: {exc}") from exc
            await self._save_access_times()

        logger.info("Cleared %d expired cache entries", len(stale))
        return len(stale)

    async def clear_all(self) -> None:
        self._ensure_initialised()
        async with self._lock:
            try:
                await self._store.clear()
            except Exception as exc:
                raise CacheError(f"Failed to clear cache: {exc}") from exc
            self._access_times.clear()
        logger.info("Cleared mapping cache")

    async def get_cache_size(self) -> int:
        """Total UTF-8 size in bytes of every stored mapping."""

        self._ensure_initialised()
        try:
            return sum((await self._entry_sizes()).values())
        except Exception as exc:
            logger.error("Failed to calculate cache size: %s", exc)
            return 0

    async def get_entry_count(self) -> int:
        self._ensure_initialised()
        try:
            return sum(1 for key in await self._store.keys() if key != METADATA_KEY)
        except Exception as exc:
            logger.error("Failed to count cache entries: %s", exc)
            return 0

    def _ensure_initialised(self) -> None:
        if not self._initialised:
            raise CacheError("Cache not initialised; call init() first")

    async def _entry_sizes(self) -> dict[str, int]:
        sizes: dict[str, int] = {}
        for key in await self._store.keys():
            if key == METADATA_KEY:
                continue
            payload = await self._store.get(key)
            if payload is not None:
                sizes[key] = len(payload.encode("utf-8"))
        return sizes

    async def _evict_lru(self, sizes: dict[str, int], required: int) -> None:
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        candidates = sorted(
            sizes, key=lambda key: self._access_times.get(key, oldest)
        )
        current = sum(sizes.values())
        evicted = 0
        for key in candidates:
            if current + required <= self._max_bytes:
                break
            await self._store.delete(key)
            self._access_times.pop(key, None)
            current -= sizes[key]
            evicted += 1
        logger.info(
            "Evicted %d cache entries (size now %d bytes)", evicted, current
        )

    def _parse_access_times(self, payload: str | None) -> dict[str, datetime]:
        if not payload:
            return {}
        try:
            raw = json.loads(payload)["accessTimes"]
            return {
                key: _as_aware(datetime.fromisoformat(value))
                for key, value in raw.items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable cache access times: %s", exc)
            return {}

    async def _save_access_times(self) -> None:
        payload = json.dumps(
            {
                "accessTimes": {
                    key: value.isoformat() for key, value in self._access_times.items()
                }
            }
        )
        try:
            await self._store.put(METADATA_KEY, payload)
        except Exception as exc:
            logger.error("Failed to save cache access times: %s", exc)
