"""Provider adapter for the Jikan (MyAnimeList) REST API."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from ..models import (
    CharacterRecord,
    ChapterRecord,
    EpisodeRecord,
    MediaDetails,
    MediaRecord,
    MediaStatus,
    MediaType,
    ProviderId,
    RecommendationRecord,
    RelationRecord,
    StaffRecord,
    StudioRecord,
    TrailerRecord,
)
from ..utils import parse_date, parse_year
from .registry import split_media_id

logger = logging.getLogger(__name__)

MAX_EPISODE_PAGES = 20
HOURS_RE = re.compile(r"(\d+)\s*hr")
MINUTES_RE = re.compile(r"(\d+)\s*min")

_READING_TYPES = {
    "manga": MediaType.MANGA,
    "manhwa": MediaType.MANGA,
    "manhua": MediaType.MANGA,
    "one-shot": MediaType.MANGA,
    "doujinshi": MediaType.MANGA,
    "novel": MediaType.NOVEL,
    "light novel": MediaType.NOVEL,
}


def parse_duration(value: Any) -> int | None:
    """Convert Jikan durations such as ``"1 hr 30 min"`` to minutes."""

    if not isinstance(value, str):
        return None
    hours = HOURS_RE.search(value)
    minutes = MINUTES_RE.search(value)
    if not hours and not minutes:
        return None
    total = (int(hours.group(1)) * 60 if hours else 0) + (int(minutes.group(1)) if minutes else 0)
    return total or None


class JikanClient:
    """Read-only access to MyAnimeList data through Jikan.

    Manga identifiers are prefixed (``manga:2``); bare identifiers are anime.
    """

    provider_id = ProviderId.JIKAN.value

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def search(self, query: str, media_type: MediaType) -> list[MediaRecord]:
        kind = "manga" if MediaType(media_type).is_reading_type else "anime"
        payload = await self._get(f"/{kind}", q=query, limit=10)
        records: list[MediaRecord] = []
        for entry in payload.get("data") or []:
            if entry.get("mal_id") is None:
                continue
            dates = entry.get("aired") or entry.get("published") or {}
            start_date = parse_date(dates.get("from"))
            records.append(
                MediaRecord(
                    id=self._media_id(kind, entry["mal_id"]),
                    title=entry.get("title") or "",
                    english_title=entry.get("title_english"),
                    romaji_title=entry.get("title"),
                    cover_image=self._image(entry, "large_image_url"),
                    description=entry.get("synopsis"),
                    type=self._map_type(kind, entry.get("type")),
                    rating=entry.get("score"),
                    genres=self._names(entry.get("genres")),
                    status=self._map_status(entry.get("status")),
                    total_episodes=entry.get("episodes"),
                    total_chapters=entry.get("chapters"),
                    start_date=start_date,
                    year=entry.get("year") or parse_year(dates.get("from")),
                    source_id=self.provider_id,
                    source_name="MyAnimeList",
                )
            )
        return records

    async def fetch_episodes(self, media_id: str) -> list[EpisodeRecord]:
        kind, raw_id = split_media_id(media_id, "anime")
        if kind != "anime":
            return []

        episodes: list[EpisodeRecord] = []
        for page in range(1, MAX_EPISODE_PAGES + 1):
            payload = await self._get(f"/anime/{raw_id}/episodes", page=page)
            for entry in payload.get("data") or []:
                number = entry.get("mal_id")
                if number is None:
                    continue
                episodes.append(
                    EpisodeRecord(
                        id=f"{raw_id}-{number}",
                        media_id=media_id,
                        title=entry.get("title") or f"Episode {number}",
                        number=int(number),
                        release_date=parse_date(entry.get("aired")),
                        source_provider=self.provider_id,
                    )
                )
            if not (payload.get("pagination") or {}).get("has_next_page"):
                break
        return episodes

    async def fetch_chapters(self, media_id: str) -> list[ChapterRecord]:
        return []

    async def fetch_details(self, media_id: str) -> MediaDetails:
        kind, raw_id = split_media_id(media_id, "anime")
        payload = await self._get(f"/{kind}/{raw_id}/full")
        data = payload.get("data") or {}
        dates = data.get("aired") or data.get("published") or {}

        characters = await self._optional_list(f"/{kind}/{raw_id}/characters")
        recommendations = await self._optional_list(f"/{kind}/{raw_id}/recommendations")
        staff = await self._optional_list(f"/anime/{raw_id}/staff") if kind == "anime" else []

        studios = [
            StudioRecord(id=str(s["mal_id"]), name=s["name"], is_main=True, is_animation_studio=True)
            for s in data.get("studios") or []
            if s.get("name")
        ]
        studios.extend(
            StudioRecord(id=str(p["mal_id"]), name=p["name"])
            for p in data.get("producers") or []
            if p.get("name")
        )

        trailer_id = (data.get("trailer") or {}).get("youtube_id")
        return MediaDetails(
            id=media_id,
            title=data.get("title") or "",
            english_title=data.get("title_english"),
            romaji_title=data.get("title"),
            native_title=data.get("title_japanese"),
            cover_image=self._image(data, "large_image_url") or "",
            description=data.get("synopsis"),
            type=self._map_type(kind, data.get("type")),
            status=self._map_status(data.get("status")),
            rating=data.get("score"),
            popularity=data.get("members"),
            favorites=data.get("favorites"),
            genres=self._names(data.get("genres")),
            tags=self._names(data.get("themes")) + self._names(data.get("demographics")),
            start_date=parse_date(dates.get("from")),
            end_date=parse_date(dates.get("to")),
            episodes=data.get("episodes"),
            chapters=data.get("chapters"),
            volumes=data.get("volumes"),
            duration=parse_duration(data.get("duration")),
            season=data.get("season"),
            season_year=data.get("year"),
            is_adult=data.get("rating") == "Rx - Hentai",
            site_url=data.get("url"),
            source_id=self.provider_id,
            source_name="MyAnimeList",
            characters=[
                CharacterRecord(
                    id=str(item["character"]["mal_id"]),
                    name=item["character"].get("name") or "",
                    image=self._image(item["character"], "image_url"),
                    role=item.get("role") or "",
                )
                for item in characters
                if (item.get("character") or {}).get("mal_id") is not None
            ],
            staff=[
                StaffRecord(
                    id=str(item["person"]["mal_id"]),
                    name=item["person"].get("name") or "",
                    image=self._image(item["person"], "image_url"),
                    role=", ".join(item.get("positions") or []),
                )
                for item in staff
                if (item.get("person") or {}).get("mal_id") is not None
            ],
            recommendations=[
                RecommendationRecord(
                    id=self._media_id(kind, item["entry"]["mal_id"]),
                    title=item["entry"].get("title") or "",
                    cover_image=self._image(item["entry"], "large_image_url") or "",
                    rating=int(item.get("votes") or 0),
                )
                for item in recommendations
                if (item.get("entry") or {}).get("mal_id") is not None
            ],
            relations=[
                RelationRecord(
                    relation_type=relation.get("relation") or "",
                    id=self._media_id(entry.get("type") or kind, entry["mal_id"]),
                    title=entry.get("name") or "",
                    type=MediaType.MANGA if entry.get("type") == "manga" else MediaType.ANIME,
                )
                for relation in data.get("relations") or []
                for entry in relation.get("entry") or []
                if entry.get("mal_id") is not None
            ],
            studios=studios,
            trailer=TrailerRecord(id=trailer_id, site="youtube") if trailer_id else None,
        )

    async def _get(self, path: str, **params: Any) -> dict[str, Any]:
        response = await self._client.get(path, params=params or None)
        response.raise_for_status()
        return response.json()

    async def _optional_list(self, path: str) -> list[dict[str, Any]]:
        try:
            payload = await self._get(path)
        except httpx.HTTPError as exc:
            logger.warning("Jikan request %s failed: %s", path, exc)
            return []
        return payload.get("data") or []

    @staticmethod
    def _media_id(kind: str, raw_id: Any) -> str:
        return f"manga:{raw_id}" if kind == "manga" else str(raw_id)

    @staticmethod
    def _image(entry: dict[str, Any], key: str) -> str | None:
        jpg = (entry.get("images") or {}).get("jpg") or {}
        return jpg.get(key) or jpg.get("image_url")

    @staticmethod
    def _names(items: Any) -> list[str]:
        return [item["name"] for item in items or [] if item.get("name")]

    @staticmethod
    def _map_type(kind: str, value: Any) -> MediaType:
        label = str(value or "").lower()
        if kind == "manga":
            return _READING_TYPES.get(label, MediaType.MANGA)
        if label == "movie":
            return MediaType.MOVIE
        return MediaType.ANIME

    @staticmethod
    def _map_status(value: Any) -> MediaStatus:
        status = str(value or "").lower()
        if status in {"finished", "finished airing", "completed"}:
            return MediaStatus.COMPLETED
        if status in {"not yet aired", "not yet published"}:
            return MediaStatus.UPCOMING
        return MediaStatus.ONGOING
