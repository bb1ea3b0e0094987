"""Provider adapter for the Kitsu JSON:API."""

from __future__ import annotations

import logging
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
    StaffRecord,
    StudioRecord,
    TrailerRecord,
)
from ..utils import parse_date, parse_year
from .registry import split_media_id

logger = logging.getLogger(__name__)

JSON_API_HEADERS = {
    "Accept": "application/vnd.api+json",
    "Content-Type": "application/vnd.api+json",
}
PAGE_LIMIT = 20
MAX_EPISODE_PAGES = 50
MAX_CHAPTERS = 400
MAX_INCLUDED_PEOPLE = 10
CHAPTER_FILTER_KEYS = ("filter[mangaId]", "filter[manga_id]")


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class KitsuClient:
    """Search Kitsu and fetch episodes, chapters and details.

    Manga identifiers are prefixed (``manga:2``); bare identifiers are anime.
    Kitsu only catalogs anime and manga, so other media types search empty.
    Ratings arrive on a 0-100 scale and are reported out of 10.
    """

    provider_id = ProviderId.KITSU.value

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def search(self, query: str, media_type: MediaType) -> list[MediaRecord]:
        media_type = MediaType(media_type)
        if media_type.is_reading_type:
            kind = "manga"
        elif media_type == MediaType.ANIME:
            kind = "anime"
        else:
            return []

        payload = await self._get(
            f"/{kind}",
            **{"filter[text]": query, "page[limit]": PAGE_LIMIT, "page[offset]": 0},
        )
        records: list[MediaRecord] = []
        for item in payload.get("data") or []:
            if item.get("id") is None:
                continue
            attrs = item.get("attributes") or {}
            titles = attrs.get("titles") or {}
            start_date = parse_date(attrs.get("startDate"))
            records.append(
                MediaRecord(
                    id=self._media_id(kind, item["id"]),
                    title=self._title(attrs),
                    english_title=titles.get("en"),
                    romaji_title=titles.get("en_jp"),
                    cover_image=self._image(attrs.get("posterImage"), "medium", "small"),
                    banner_image=self._image(attrs.get("coverImage"), "original", "large"),
                    description=attrs.get("synopsis") or attrs.get("description"),
                    type=self._map_type(kind, attrs.get("subtype")),
                    rating=self._rating(attrs.get("averageRating")),
                    status=self._map_status(attrs.get("status")),
                    total_episodes=_to_int(attrs.get("episodeCount")),
                    total_chapters=_to_int(attrs.get("chapterCount")),
                    start_date=start_date,
                    year=start_date.year if start_date else parse_year(attrs.get("startDate")),
                    source_id=self.provider_id,
                    source_name="Kitsu",
                )
            )
        return records

    async def fetch_episodes(self, media_id: str) -> list[EpisodeRecord]:
        kind, raw_id = split_media_id(media_id, "anime")
        if kind != "anime":
            return []

        episodes: list[EpisodeRecord] = []
        next_url: str | None = f"/anime/{raw_id}/episodes"
        params: dict[str, Any] | None = {
            "page[limit]": PAGE_LIMIT,
            "page[offset]": 0,
            "sort": "number",
        }
        for _ in range(MAX_EPISODE_PAGES):
            if next_url is None:
                break
            payload = await self._get_url(next_url, params)
            data = payload.get("data") or []
            for item in data:
                attrs = item.get("attributes") or {}
                number = _to_int(attrs.get("number"))
                if number is None:
                    continue
                episodes.append(
                    EpisodeRecord(
                        id=str(item.get("id") or f"{raw_id}-{number}"),
                        media_id=media_id,
                        title=self._title(attrs) or f"Episode {number}",
                        number=number,
                        thumbnail=self._image(attrs.get("thumbnail"), "original", "large", "small"),
                        duration=_to_int(attrs.get("length")) or None,
                        release_date=parse_date(attrs.get("airdate")),
                        source_provider=self.provider_id,
                    )
                )
            next_url = self._next_link(payload) if data else None
            params = None
        return episodes

    async def fetch_chapters(self, media_id: str) -> list[ChapterRecord]:
        """Page through a manga's chapters.

        When the relationship endpoint fails, the flat ``/chapters`` endpoint
        is tried with a manga filter. Titles Kitsu has no chapter rows for get
        numbered placeholders from the manga's ``chapterCount``.
        """

        kind, raw_id = split_media_id(media_id, "anime")
        if kind != "manga":
            return []

        chapters = await self._fetch_chapter_pages(media_id, raw_id)
        if chapters:
            logger.info("Kitsu returned %d chapters for manga %s", len(chapters), raw_id)
            return chapters

        total = await self._chapter_count(raw_id)
        if not total:
            logger.info("Kitsu has no chapters for manga %s", raw_id)
            return []
        logger.info("Generating %d placeholder chapters for Kitsu manga %s", total, raw_id)
        return [
            ChapterRecord(
                id=f"kitsu_chapter_{raw_id}_{number}",
                media_id=media_id,
                title=f"Chapter {number}",
                number=float(number),
                source_provider=self.provider_id,
            )
            for number in range(1, total + 1)
        ]

    async def fetch_details(self, media_id: str) -> MediaDetails:
        kind, raw_id = split_media_id(media_id, "anime")
        includes = ["categories", f"{kind}Characters.character"]
        if kind == "anime":
            includes.extend(["animeStaff.person", "animeProductions.producer"])
        payload = await self._get(f"/{kind}/{raw_id}", include=",".join(includes))

        attrs = (payload.get("data") or {}).get("attributes") or {}
        titles = attrs.get("titles") or {}
        included = payload.get("included") or []
        start_date = parse_date(attrs.get("startDate"))
        average = _to_float(attrs.get("averageRating"))

        return MediaDetails(
            id=media_id,
            title=self._title(attrs),
            english_title=titles.get("en"),
            romaji_title=titles.get("en_jp"),
            native_title=titles.get("ja_jp"),
            cover_image=self._image(attrs.get("posterImage"), "large", "medium") or "",
            banner_image=self._image(attrs.get("coverImage"), "original", "large"),
            description=attrs.get("synopsis") or attrs.get("description"),
            type=self._map_type(kind, attrs.get("subtype")),
            status=self._map_status(attrs.get("status")),
            rating=average / 10 if average is not None else None,
            average_score=int(average) if average is not None else None,
            popularity=_to_int(attrs.get("userCount")),
            favorites=_to_int(attrs.get("favoritesCount")),
            genres=[
                item["attributes"]["title"]
                for item in self._included(included, "categories")
                if (item.get("attributes") or {}).get("title")
            ],
            start_date=start_date,
            end_date=parse_date(attrs.get("endDate")),
            episodes=_to_int(attrs.get("episodeCount")) if kind == "anime" else None,
            chapters=_to_int(attrs.get("chapterCount")) if kind == "manga" else None,
            volumes=_to_int(attrs.get("volumeCount")) if kind == "manga" else None,
            duration=_to_int(attrs.get("episodeLength")) if kind == "anime" else None,
            season_year=start_date.year if start_date else None,
            is_adult=attrs.get("nsfw") is True,
            site_url=f"https://kitsu.io/{kind}/{raw_id}",
            source_id=self.provider_id,
            source_name="Kitsu",
            characters=[
                CharacterRecord(
                    id=str(item["id"]),
                    name=self._person_name(item),
                    native_name=((item.get("attributes") or {}).get("names") or {}).get("ja_jp"),
                    image=self._image((item.get("attributes") or {}).get("image"), "original", "large"),
                )
                for item in self._included(included, "characters")[:MAX_INCLUDED_PEOPLE]
            ],
            staff=[
                StaffRecord(
                    id=str(item["id"]),
                    name=self._person_name(item),
                    native_name=((item.get("attributes") or {}).get("names") or {}).get("ja_jp"),
                    image=self._image((item.get("attributes") or {}).get("image"), "original", "large"),
                    role="Staff",
                )
                for item in self._included(included, "people")[:MAX_INCLUDED_PEOPLE]
            ],
            studios=[
                StudioRecord(
                    id=str(item["id"]),
                    name=item["attributes"]["name"],
                    is_main=True,
                    is_animation_studio=True,
                )
                for item in self._included(included, "producers")
                if (item.get("attributes") or {}).get("name")
            ],
            trailer=(
                TrailerRecord(id=attrs["youtubeVideoId"], site="youtube")
                if attrs.get("youtubeVideoId")
                else None
            ),
        )

    async def _fetch_chapter_pages(self, media_id: str, raw_id: str) -> list[ChapterRecord]:
        chapters: list[ChapterRecord] = []
        next_url: str | None = f"/manga/{raw_id}/chapters"
        params: dict[str, Any] | None = {
            "page[limit]": PAGE_LIMIT,
            "page[offset]": 0,
            "sort": "number",
        }
        while next_url is not None and len(chapters) < MAX_CHAPTERS:
            try:
                payload = await self._get_url(next_url, params)
            except httpx.HTTPStatusError as exc:
                logger.warning("Kitsu chapters request failed for manga %s: %s", raw_id, exc)
                payload = await self._filtered_chapter_page(raw_id, params or {})
                if payload is None:
                    return []
            data = payload.get("data") or []
            if not data:
                break
            chapters.extend(self._map_chapter(item, media_id) for item in data)
            next_url = self._next_link(payload)
            params = None
        return chapters[:MAX_CHAPTERS]

    async def _filtered_chapter_page(
        self, raw_id: str, params: dict[str, Any]
    ) -> dict[str, Any] | None:
        for filter_key in CHAPTER_FILTER_KEYS:
            try:
                return await self._get("/chapters", **params, **{filter_key: raw_id})
            except httpx.HTTPStatusError as exc:
                logger.debug("Kitsu chapters fallback %s failed for %s: %s", filter_key, raw_id, exc)
        return None

    async def _chapter_count(self, raw_id: str) -> int | None:
        try:
            payload = await self._get(f"/manga/{raw_id}")
        except httpx.HTTPError as exc:
            logger.warning("Kitsu chapter count lookup failed for manga %s: %s", raw_id, exc)
            return None
        attrs = (payload.get("data") or {}).get("attributes") or {}
        return _to_int(attrs.get("chapterCount"))

    def _map_chapter(self, item: dict[str, Any], media_id: str) -> ChapterRecord:
        attrs = item.get("attributes") or {}
        number = _to_float(attrs.get("number")) or 0.0
        return ChapterRecord(
            id=str(item.get("id") or ""),
            media_id=media_id,
            title=self._title(attrs) or f"Chapter {attrs.get('number') or 0}",
            number=number,
            release_date=parse_date(attrs.get("published")),
            source_provider=self.provider_id,
        )

    async def _get(self, path: str, **params: Any) -> dict[str, Any]:
        return await self._get_url(path, params or None)

    async def _get_url(self, url: str, params: dict[str, Any] | None) -> dict[str, Any]:
        response = await self._client.get(url, params=params, headers=JSON_API_HEADERS)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _next_link(payload: dict[str, Any]) -> str | None:
        return (payload.get("links") or {}).get("next") or None

    @staticmethod
    def _included(included: list[dict[str, Any]], resource_type: str) -> list[dict[str, Any]]:
        return [
            item
            for item in included
            if item.get("type") == resource_type and item.get("id") is not None
        ]

    @staticmethod
    def _media_id(kind: str, raw_id: Any) -> str:
        return f"manga:{raw_id}" if kind == "manga" else str(raw_id)

    @staticmethod
    def _title(attrs: dict[str, Any]) -> str:
        titles = attrs.get("titles") or {}
        return attrs.get("canonicalTitle") or titles.get("en_jp") or titles.get("en") or ""

    @staticmethod
    def _person_name(item: dict[str, Any]) -> str:
        attrs = item.get("attributes") or {}
        return attrs.get("canonicalName") or attrs.get("name") or ""

    @staticmethod
    def _image(images: Any, *sizes: str) -> str | None:
        if isinstance(images, str):
            return images or None
        if not isinstance(images, dict):
            return None
        for size in sizes:
            if images.get(size):
                return images[size]
        return None

    @staticmethod
    def _rating(value: Any) -> float | None:
        average = _to_float(value)
        return average / 10 if average is not None else None

    @staticmethod
    def _map_type(kind: str, subtype: Any) -> MediaType:
        label = str(subtype or "").lower()
        if kind == "manga":
            return MediaType.NOVEL if label == "novel" else MediaType.MANGA
        if label == "movie":
            return MediaType.MOVIE
        return MediaType.ANIME

    @staticmethod
    def _map_status(value: Any) -> MediaStatus:
        status = str(value or "").lower()
        if status == "finished":
            return MediaStatus.COMPLETED
        if status in {"upcoming", "unreleased", "tba"}:
            return MediaStatus.UPCOMING
        return MediaStatus.ONGOING
