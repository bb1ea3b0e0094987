"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .models import ProviderId

KNOWN_PROVIDERS: tuple[str, ...] = tuple(provider.value for provider in ProviderId)

DEFAULT_THUMBNAIL_PRIORITY: tuple[str, ...] = ("tmdb", "jikan", "anilist", "kitsu", "simkl")
DEFAULT_IMAGE_PRIORITY: tuple[str, ...] = ("tmdb", "jikan", "anilist", "kitsu", "simkl")
DEFAULT_METADATA_PRIORITY: tuple[str, ...] = ("jikan", "anilist", "kitsu", "simkl", "tmdb")
DEFAULT_CHAPTER_PRIORITY: tuple[str, ...] = ("kitsu", "anilist")


def _parse_provider_list(value: object, default: tuple[str, ...]) -> tuple[str, ...]:
    """Normalise provider priority selections from environment values."""

    if value is None:
        return default
    if isinstance(value, str):
        raw_values = [part.strip() for part in value.split(",")]
    elif isinstance(value, Iterable):
        raw_values = [str(part).strip() for part in value]
    else:
        raise TypeError("Provider priorities must be a string or iterable of strings")

    cleaned: list[str] = []
    for entry in raw_values:
        slug = entry.lower()
        if not slug:
            continue
        if slug not in KNOWN_PROVIDERS:
            raise ValueError(f"Unknown provider configured: {entry}")
        if slug not in cleaned:
            cleaned.append(slug)
    if not cleaned:
        return default
    return tuple(cleaned)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Metaweave", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./metaweave.db", alias="DATABASE_URL"
    )
    cache_backend: Literal["database", "memory"] = Field(
        default="database", alias="CACHE_BACKEND"
    )
    cache_ttl_days: int = Field(default=7, alias="CACHE_TTL_DAYS", ge=1, le=365)
    cache_max_bytes: int = Field(
        default=10 * 1024 * 1024, alias="CACHE_MAX_BYTES", ge=1_024
    )

    retry_preset: Literal["default", "aggressive", "conservative"] = Field(
        default="default", alias="RETRY_PRESET"
    )
    match_confidence_threshold: float = Field(
        default=0.8, alias="MATCH_CONFIDENCE_THRESHOLD", ge=0.0, le=1.0
    )

    search_timeout_seconds: float = Field(
        default=10.0, alias="SEARCH_TIMEOUT", gt=0, le=300
    )
    episode_fetch_timeout_seconds: float = Field(
        default=60.0, alias="EPISODE_FETCH_TIMEOUT", gt=0, le=600
    )
    chapter_fetch_timeout_seconds: float = Field(
        default=10.0, alias="CHAPTER_FETCH_TIMEOUT", gt=0, le=300
    )
    details_fetch_timeout_seconds: float = Field(
        default=10.0, alias="DETAILS_FETCH_TIMEOUT", gt=0, le=300
    )

    episode_thumbnail_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_THUMBNAIL_PRIORITY, alias="EPISODE_THUMBNAIL_PRIORITY"
    )
    image_quality_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_IMAGE_PRIORITY, alias="IMAGE_QUALITY_PRIORITY"
    )
    metadata_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_METADATA_PRIORITY, alias="METADATA_PRIORITY"
    )
    chapter_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_CHAPTER_PRIORITY, alias="CHAPTER_PRIORITY"
    )
    season_authority_provider: str = Field(
        default="tmdb", alias="SEASON_AUTHORITY_PROVIDER"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    jikan_api_url: HttpUrl = Field(
        default="https://api.jikan.moe/v4", alias="JIKAN_API_URL"
    )
    kitsu_api_url: HttpUrl = Field(
        default="https://kitsu.io/api/edge", alias="KITSU_API_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("episode_thumbnail_priority", mode="before")
    @classmethod
    def _parse_thumbnail_priority(cls, value: object) -> tuple[str, ...]:
        return _parse_provider_list(value, DEFAULT_THUMBNAIL_PRIORITY)

    @field_validator("image_quality_priority", mode="before")
    @classmethod
    def _parse_image_priority(cls, value: object) -> tuple[str, ...]:
        return _parse_provider_list(value, DEFAULT_IMAGE_PRIORITY)

    @field_validator("metadata_priority", mode="before")
    @classmethod
    def _parse_metadata_priority(cls, value: object) -> tuple[str, ...]:
        return _parse_provider_list(value, DEFAULT_METADATA_PRIORITY)

    @field_validator("chapter_priority", mode="before")
    @classmethod
    def _parse_chapter_priority(cls, value: object) -> tuple[str, ...]:
        return _parse_provider_list(value, DEFAULT_CHAPTER_PRIORITY)

    @field_validator("season_authority_provider", mode="before")
    @classmethod
    def _parse_season_authority(cls, value: object) -> str:
        """Ensure the season authority names a known provider."""

        slug = str(value or "tmdb").strip().lower()
        if slug not in KNOWN_PROVIDERS:
            raise ValueError(f"Unknown provider configured: {value}")
        return slug

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
