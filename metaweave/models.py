"""Pydantic models describing provider records and aggregated payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MediaType(str, Enum):
    """Content categories a title can belong to."""

    ANIME = "anime"
    MANGA = "manga"
    NOVEL = "novel"
    MOVIE = "movie"
    TV_SHOW = "tvShow"
    CARTOON = "cartoon"
    DOCUMENTARY = "documentary"
    LIVESTREAM = "livestream"
    NSFW = "nsfw"

    @property
    def is_reading_type(self) -> bool:
        return self in {MediaType.MANGA, MediaType.NOVEL}


class MediaStatus(str, Enum):
    ONGOING = "ongoing"
    COMPLETED = "completed"
    UPCOMING = "upcoming"


class ProviderId(str, Enum):
    """Closed set of external catalog providers the matcher knows about."""

    TMDB = "tmdb"
    ANILIST = "anilist"
    JIKAN = "jikan"
    KITSU = "kitsu"
    SIMKL = "simkl"

    @classmethod
    def parse(cls, value: str) -> "ProviderId | None":
        """Return the provider for ``value`` ignoring case, or ``None``."""

        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class RecordModel(BaseModel):
    """Immutable base for provider records, serialised with camelCase keys."""

    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
        frozen=True,
    )


class MediaRecord(RecordModel):
    """A search/listing result as returned by one provider."""

    id: str
    title: str
    english_title: str | None = None
    romaji_title: str | None = None
    cover_image: str | None = None
    banner_image: str | None = None
    description: str | None = None
    type: MediaType
    rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    status: MediaStatus = MediaStatus.ONGOING
    total_episodes: int | None = None
    total_chapters: int | None = None
    start_date: date | None = None
    year: int | None = None
    source_id: str
    source_name: str | None = None

    @property
    def release_year(self) -> int | None:
        """Return the explicit year, falling back to the start date."""

        if self.year is not None:
            return self.year
        if self.start_date is not None:
            return self.start_date.year
        return None


class EpisodeData(RecordModel):
    """What a single provider offered for one episode."""

    title: str | None = None
    thumbnail: str | None = None
    description: str | None = None
    air_date: date | None = None


class EpisodeRecord(RecordModel):
    id: str
    media_id: str
    title: str = ""
    number: int
    season_number: int | None = None
    thumbnail: str | None = None
    duration: int | None = None
    release_date: date | None = None
    source_provider: str | None = None
    alternative_data: dict[str, EpisodeData] = Field(default_factory=dict)

    @property
    def has_thumbnail(self) -> bool:
        return bool(self.thumbnail)


class ChapterRecord(RecordModel):
    id: str
    media_id: str
    title: str = ""
    number: float
    release_date: date | None = None
    page_count: int | None = None
    source_provider: str | None = None


class CharacterRecord(RecordModel):
    id: str
    name: str
    native_name: str | None = None
    image: str | None = None
    role: str = ""


class StaffRecord(RecordModel):
    id: str
    name: str
    native_name: str | None = None
    image: str | None = None
    role: str = ""


class RecommendationRecord(RecordModel):
    id: str
    title: str
    english_title: str | None = None
    romaji_title: str | None = None
    cover_image: str = ""
    rating: int = 0


class StudioRecord(RecordModel):
    id: str
    name: str
    is_main: bool = False
    is_animation_studio: bool = False


class RelationRecord(RecordModel):
    relation_type: str
    id: str
    title: str
    english_title: str | None = None
    romaji_title: str | None = None
    type: MediaType


class TrailerRecord(RecordModel):
    id: str
    site: str


class MediaDetails(RecordModel):
    """Full detail record for a title as returned by one provider."""

    id: str
    title: str
    english_title: str | None = None
    romaji_title: str | None = None
    native_title: str | None = None
    cover_image: str = ""
    banner_image: str | None = None
    description: str | None = None
    type: MediaType
    status: MediaStatus = MediaStatus.UPCOMING
    rating: float | None = None
    average_score: int | None = None
    mean_score: int | None = None
    popularity: int | None = None
    favorites: int | None = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    episodes: int | None = None
    chapters: int | None = None
    volumes: int | None = None
    duration: int | None = None
    season: str | None = None
    season_year: int | None = None
    is_adult: bool = False
    site_url: str | None = None
    source_id: str
    source_name: str | None = None
    characters: list[CharacterRecord] = Field(default_factory=list)
    staff: list[StaffRecord] = Field(default_factory=list)
    recommendations: list[RecommendationRecord] = Field(default_factory=list)
    relations: list[RelationRecord] = Field(default_factory=list)
    studios: list[StudioRecord] = Field(default_factory=list)
    trailer: TrailerRecord | None = None

    @classmethod
    def placeholder(
        cls, *, media_id: str, title: str, media_type: MediaType, provider_id: str
    ) -> "MediaDetails":
        """Return a minimal record standing in for a provider that failed."""

        return cls(
            id=media_id,
            title=title,
            type=media_type,
            source_id=provider_id,
            source_name=provider_id,
        )


class AggregatedDetails(MediaDetails):
    """Merged detail record carrying per-field source attribution."""

    data_source_attribution: dict[str, str] = Field(default_factory=dict)
    contributing_providers: list[str] = Field(default_factory=list)
    match_confidences: dict[str, float] = Field(default_factory=dict)


class ImageUrls(RecordModel):
    """Cover/banner pair with the provider each image was taken from."""

    cover_image: str | None = None
    banner_image: str | None = None
    source_provider: str
    cover_source: str | None = None
    banner_source: str | None = None

    @property
    def has_cover_image(self) -> bool:
        return bool(self.cover_image)

    @property
    def has_banner_image(self) -> bool:
        return bool(self.banner_image)

    @property
    def has_any_image(self) -> bool:
        return self.has_cover_image or self.has_banner_image


class CachedMapping(RecordModel):
    """Durable record of a resolved cross-provider identity."""

    primary_provider_id: str
    primary_media_id: str
    provider_mappings: dict[str, str]
    cached_at: datetime

    @staticmethod
    def build_key(primary_provider_id: str, primary_media_id: str) -> str:
        return f"{primary_provider_id}_{primary_media_id}"

    @property
    def cache_key(self) -> str:
        return self.build_key(self.primary_provider_id, self.primary_media_id)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload: str) -> "CachedMapping":
        return cls.model_validate_json(payload)


@dataclass(frozen=True, slots=True)
class SeasonInfo:
    """Episode count and name for one season, as reported by a provider."""

    episode_count: int
    name: str | None = None


@dataclass(frozen=True, slots=True)
class ProviderMatch:
    """Result of matching one external record to the primary title."""

    provider_id: str
    provider_media_id: str
    confidence: float
    matched_title: str
    source_record: MediaRecord | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "providerId": self.provider_id,
            "providerMediaId": self.provider_media_id,
            "confidence": self.confidence,
            "matchedTitle": self.matched_title,
        }
        if self.source_record is not None:
            payload["sourceRecord"] = self.source_record.model_dump(
                mode="json", by_alias=True
            )
        return payload
