"""Provider adapter for The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..config import Settings
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
    SeasonInfo,
    StaffRecord,
    StudioRecord,
    TrailerRecord,
)
from ..utils import parse_date
from .registry import split_media_id

logger = logging.getLogger(__name__)

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"
BACKDROP_BASE_URL = "https://image.tmdb.org/t/p/w780"
STILL_BASE_URL = "https://image.tmdb.org/t/p/w300"
PROFILE_BASE_URL = "https://image.tmdb.org/t/p/w185"

_COMPLETED_STATUSES = {"ended", "released", "canceled"}
_ONGOING_STATUSES = {"returning series", "in production"}


class TMDBClient:
    """Search TMDB and fetch episodes, seasons and details for a title.

    Movie identifiers are prefixed (``movie:603``); bare identifiers are TV
    shows. HTTP failures are raised so the retry layer can classify them.
    """

    provider_id = ProviderId.TMDB.value

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def search(self, query: str, media_type: MediaType) -> list[MediaRecord]:
        media_type = MediaType(media_type)
        # TMDB only catalogs screen media.
        if media_type.is_reading_type:
            return []
        kind = "movie" if media_type == MediaType.MOVIE else "tv"
        payload = await self._get(
            f"/search/{kind}",
            query=query,
            include_adult="false",
            language="en-US",
            page=1,
        )
        records: list[MediaRecord] = []
        for result in payload.get("results") or []:
            title = result.get("title") or result.get("name")
            if not title or result.get("id") is None:
                continue
            start_date = parse_date(result.get("release_date") or result.get("first_air_date"))
            records.append(
                MediaRecord(
                    id=self._media_id(kind, result["id"]),
                    title=title,
                    english_title=title,
                    cover_image=self._build_image_url(result.get("poster_path"), POSTER_BASE_URL),
                    banner_image=self._build_image_url(
                        result.get("backdrop_path"), BACKDROP_BASE_URL
                    ),
                    description=result.get("overview") or None,
                    type=media_type,
                    rating=result.get("vote_average"),
                    start_date=start_date,
                    year=start_date.year if start_date else None,
                    source_id=self.provider_id,
                    source_name="TMDB",
                )
            )
        return records

    async def get_season_metadata(self, tv_id: str) -> dict[int, SeasonInfo]:
        """Return episode counts per season for a TV show."""

        kind, raw_id = split_media_id(tv_id, "tv")
        if kind != "tv":
            return {}
        payload = await self._get(f"/tv/{raw_id}")
        seasons: dict[int, SeasonInfo] = {}
        for season in payload.get("seasons") or []:
            number = season.get("season_number")
            if number is None:
                continue
            seasons[int(number)] = SeasonInfo(
                episode_count=int(season.get("episode_count") or 0),
                name=season.get("name"),
            )
        return seasons

    async def fetch_episodes(self, media_id: str) -> list[EpisodeRecord]:
        kind, raw_id = split_media_id(media_id, "tv")
        if kind != "tv":
            return []
        seasons = await self.get_season_metadata(media_id)
        numbers = sorted(number for number, info in seasons.items() if number > 0 and info.episode_count)
        payloads = await asyncio.gather(
            *(self._get(f"/tv/{raw_id}/season/{number}") for number in numbers)
        )

        episodes: list[EpisodeRecord] = []
        for payload in payloads:
            for episode in payload.get("episodes") or []:
                number = episode.get("episode_number")
                if number is None:
                    continue
                episodes.append(
                    EpisodeRecord(
                        id=str(episode.get("id") or f"{raw_id}-{episode.get('season_number')}-{number}"),
                        media_id=media_id,
                        title=episode.get("name") or "",
                        number=int(number),
                        season_number=episode.get("season_number"),
                        thumbnail=self._build_image_url(episode.get("still_path"), STILL_BASE_URL),
                        duration=episode.get("runtime"),
                        release_date=parse_date(episode.get("air_date")),
                        source_provider=self.provider_id,
                    )
                )
        return episodes

    async def fetch_chapters(self, media_id: str) -> list[ChapterRecord]:
        return []

    async def fetch_details(self, media_id: str) -> MediaDetails:
        kind, raw_id = split_media_id(media_id, "tv")
        payload = await self._get(
            f"/{kind}/{raw_id}",
            append_to_response="credits,videos,recommendations",
        )
        is_movie = kind == "movie"
        title = payload.get("title") or payload.get("name") or ""
        start_date = parse_date(payload.get("release_date") or payload.get("first_air_date"))
        runtimes = payload.get("episode_run_time") or []
        duration = payload.get("runtime") or (runtimes[0] if runtimes else None)
        credits = payload.get("credits") or {}

        return MediaDetails(
            id=media_id,
            title=title,
            english_title=title or None,
            native_title=payload.get("original_title") or payload.get("original_name"),
            cover_image=self._build_image_url(payload.get("poster_path"), POSTER_BASE_URL) or "",
            banner_image=self._build_image_url(payload.get("backdrop_path"), BACKDROP_BASE_URL),
            description=payload.get("overview") or None,
            type=MediaType.MOVIE if is_movie else MediaType.TV_SHOW,
            status=self._map_status(payload.get("status")),
            rating=payload.get("vote_average"),
            popularity=int(payload["popularity"]) if payload.get("popularity") else None,
            genres=[genre["name"] for genre in payload.get("genres") or [] if genre.get("name")],
            start_date=start_date,
            end_date=parse_date(payload.get("last_air_date")),
            episodes=payload.get("number_of_episodes"),
            duration=duration,
            season_year=start_date.year if start_date else None,
            is_adult=bool(payload.get("adult")),
            site_url=f"https://www.themoviedb.org/{kind}/{raw_id}",
            source_id=self.provider_id,
            source_name="TMDB",
            characters=[
                CharacterRecord(
                    id=str(member.get("credit_id") or member.get("id")),
                    name=member["character"],
                    role="Main" if member.get("order", 99) < 5 else "Supporting",
                )
                for member in credits.get("cast") or []
                if member.get("character")
            ],
            staff=[
                StaffRecord(
                    id=str(member.get("credit_id") or member.get("id")),
                    name=member["name"],
                    image=self._build_image_url(member.get("profile_path"), PROFILE_BASE_URL),
                    role=member.get("job") or "",
                )
                for member in credits.get("crew") or []
                if member.get("name")
            ],
            recommendations=[
                RecommendationRecord(
                    id=self._media_id(kind, item["id"]),
                    title=item.get("title") or item.get("name") or "",
                    cover_image=self._build_image_url(item.get("poster_path"), POSTER_BASE_URL) or "",
                    rating=int(round((item.get("vote_average") or 0) * 10)),
                )
                for item in (payload.get("recommendations") or {}).get("results") or []
                if item.get("id") is not None
            ],
            studios=[
                StudioRecord(id=str(company["id"]), name=company["name"], is_main=index == 0)
                for index, company in enumerate(payload.get("production_companies") or [])
                if company.get("name")
            ],
            trailer=self._pick_trailer((payload.get("videos") or {}).get("results") or []),
        )

    async def _get(self, path: str, **params: Any) -> dict[str, Any]:
        params["api_key"] = self._settings.tmdb_api_key
        response = await self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _media_id(kind: str, raw_id: Any) -> str:
        return f"movie:{raw_id}" if kind == "movie" else str(raw_id)

    @staticmethod
    def _map_status(value: Any) -> MediaStatus:
        status = str(value or "").lower()
        if status in _COMPLETED_STATUSES:
            return MediaStatus.COMPLETED
        if status in _ONGOING_STATUSES:
            return MediaStatus.ONGOING
        return MediaStatus.UPCOMING

    @staticmethod
    def _pick_trailer(videos: list[dict[str, Any]]) -> TrailerRecord | None:
        trailers = [video for video in videos if video.get("key") and video.get("site")]
        for video in trailers:
            if video.get("type") == "Trailer":
                return TrailerRecord(id=video["key"], site=video["site"])
        if trailers:
            return TrailerRecord(id=trailers[0]["key"], site=trailers[0]["site"])
        return None

    @staticmethod
    def _build_image_url(path: str | None, base_url: str) -> str | None:
        if not path:
            return None
        if path.startswith("http"):
            return path
        return f"{base_url}{path}"
