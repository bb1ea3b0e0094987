"""Merge episodes, chapters, images and details from matched providers."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Sequence

from ..models import (
    AggregatedDetails,
    ChapterRecord,
    CharacterRecord,
    EpisodeData,
    EpisodeRecord,
    ImageUrls,
    MediaDetails,
    MediaRecord,
    ProviderMatch,
    RecommendationRecord,
    RelationRecord,
    SeasonInfo,
    StaffRecord,
    StudioRecord,
    TrailerRecord,
)
from ..utils import image_base_path, normalize_image_url, normalize_name
from .retry import RetryHandler, run_with_timeout

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

EpisodeFetcher = Callable[[str, str], Awaitable[list[EpisodeRecord]]]
ChapterFetcher = Callable[[str, str], Awaitable[list[ChapterRecord]]]
DetailsFetcher = Callable[[str, str], Awaitable[MediaDetails]]
SeasonMetadataLookup = Callable[[str], Awaitable[dict[int, SeasonInfo]]]

DEFAULT_EPISODE_TIMEOUT_SECONDS = 60.0
DEFAULT_CHAPTER_TIMEOUT_SECONDS = 10.0
DEFAULT_DETAILS_TIMEOUT_SECONDS = 10.0

CLOSEST_EPISODE_TOLERANCE = 2
PRIORITY_SCORE_RATIO = 0.8
COVER_KEYWORDS = ("cover", "poster")

NUMERIC_DETAIL_FIELDS = (
    "rating",
    "average_score",
    "mean_score",
    "popularity",
    "favorites",
    "episodes",
    "chapters",
    "volumes",
    "duration",
)
TEXT_DETAIL_FIELDS = ("english_title", "romaji_title", "native_title", "season", "site_url")


@dataclass(frozen=True, slots=True)
class PriorityConfig:
    """Ordered provider preferences for each kind of merged data."""

    episode_thumbnail_priority: tuple[str, ...] = ("tmdb", "jikan", "anilist", "kitsu", "simkl")
    image_quality_priority: tuple[str, ...] = ("tmdb", "jikan", "anilist", "kitsu", "simkl")
    metadata_priority: tuple[str, ...] = ("jikan", "anilist", "kitsu", "simkl", "tmdb")
    chapter_priority: tuple[str, ...] = ("kitsu", "anilist")
    season_authority_provider: str = "tmdb"
    min_confidence_threshold: float = 0.8

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_confidence_threshold <= 1.0:
            raise ValueError(
                "min_confidence_threshold must be between 0.0 and 1.0, "
                f"got {self.min_confidence_threshold}"
            )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PriorityConfig":
        return cls(
            episode_thumbnail_priority=tuple(settings.episode_thumbnail_priority),
            image_quality_priority=tuple(settings.image_quality_priority),
            metadata_priority=tuple(settings.metadata_priority),
            chapter_priority=tuple(settings.chapter_priority),
            season_authority_provider=settings.season_authority_provider,
            min_confidence_threshold=settings.match_confidence_threshold,
        )

    def priority_for(self, data_type: str) -> tuple[str, ...]:
        key = data_type.strip().lower()
        if key in {"episode_thumbnail", "episode"}:
            return self.episode_thumbnail_priority
        if key in {"image", "cover", "banner"}:
            return self.image_quality_priority
        if key in {"manga_chapter", "chapter"}:
            return self.chapter_priority
        return self.metadata_priority

    def sort_providers(self, providers: Iterable[str], data_type: str) -> list[str]:
        """Return ``providers`` in priority order, unknown ones last in given order."""

        available = list(dict.fromkeys(providers))
        ordered = [p for p in self.priority_for(data_type) if p in available]
        ordered.extend(p for p in available if p not in ordered)
        return ordered


def is_fallback_cover_image(thumbnail: str | None, cover_images: Iterable[str | None]) -> bool:
    """Guess whether ``thumbnail`` is the series cover reused as an episode still.

    A thumbnail counts as a cover when it is the same image as a known cover
    once size suffixes, extensions and query strings are stripped, or when
    its URL mentions cover/poster art and shares the cover's directory or
    file name. This is a heuristic and can misjudge unusual URL layouts.
    """

    if not thumbnail:
        return False
    normalized = normalize_image_url(thumbnail)
    has_keyword = any(keyword in normalized for keyword in COVER_KEYWORDS)
    for cover in cover_images:
        if not cover:
            continue
        normalized_cover = normalize_image_url(cover)
        if normalized == normalized_cover:
            return True
        if has_keyword and (
            image_base_path(thumbnail) == image_base_path(cover)
            or normalized.rsplit("/", 1)[-1] == normalized_cover.rsplit("/", 1)[-1]
        ):
            return True
    return False


def _season_stats(episodes: Sequence[EpisodeRecord]) -> dict[int, tuple[int, int]]:
    stats: dict[int, tuple[int, int]] = {}
    for episode in episodes:
        season = episode.season_number
        if season is None:
            continue
        low, high = stats.get(season, (episode.number, episode.number))
        stats[season] = (min(low, episode.number), max(high, episode.number))
    return stats


def _completeness(record: CharacterRecord | StaffRecord) -> int:
    return sum(1 for value in (record.image, record.native_name, record.role) if value)


class DataAggregator:
    """Fetch per-provider data concurrently and merge it into one record."""

    def __init__(
        self,
        retry_handler: RetryHandler,
        priority_config: PriorityConfig | None = None,
        *,
        episode_timeout: float = DEFAULT_EPISODE_TIMEOUT_SECONDS,
        chapter_timeout: float = DEFAULT_CHAPTER_TIMEOUT_SECONDS,
        details_timeout: float = DEFAULT_DETAILS_TIMEOUT_SECONDS,
        season_metadata_lookup: SeasonMetadataLookup | None = None,
    ) -> None:
        self._retry_handler = retry_handler
        self.priority_config = priority_config or PriorityConfig()
        self._episode_timeout = episode_timeout
        self._chapter_timeout = chapter_timeout
        self._details_timeout = details_timeout
        self._season_metadata_lookup = season_metadata_lookup

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------
    async def aggregate_episodes(
        self,
        primary: MediaRecord,
        matches: Mapping[str, ProviderMatch],
        episode_fetcher: EpisodeFetcher,
        *,
        season_metadata_lookup: SeasonMetadataLookup | None = None,
    ) -> list[EpisodeRecord]:
        """Merge episode lists from the primary and every matched provider.

        The richest list (``count + 2 * thumbnails``) becomes the base. Season
        numbers are inferred from the season authority when the base has
        none, each episode takes the best genuine thumbnail by priority, and
        missing release dates and durations are backfilled.
        """

        started = time.perf_counter()
        episodes_by_provider = await self._fetch_lists(
            primary,
            matches,
            episode_fetcher,
            timeout=self._episode_timeout,
            kind="episodes",
        )
        logger.info(
            "Fetched episodes for %r: %s",
            primary.title,
            {pid: len(items) for pid, items in episodes_by_provider.items()},
        )

        populated = {pid: items for pid, items in episodes_by_provider.items() if items}
        if not populated:
            logger.warning("No episodes found for %r from any provider", primary.title)
            return []

        base_provider = max(
            populated,
            key=lambda pid: len(populated[pid])
            + 2 * sum(1 for episode in populated[pid] if episode.has_thumbnail),
        )
        base_episodes = await self._infer_seasons(
            base_provider,
            populated[base_provider],
            episodes_by_provider,
            primary,
            matches,
            season_metadata_lookup or self._season_metadata_lookup,
        )

        season_matching = any(ep.season_number is not None for ep in base_episodes)
        season_stats = _season_stats(base_episodes)
        cover_images = [primary.cover_image] + [
            match.source_record.cover_image
            for match in matches.values()
            if match.source_record is not None
        ]
        thumbnail_order = self.priority_config.sort_providers(
            episodes_by_provider, "episode_thumbnail"
        )

        merged: list[EpisodeRecord] = []
        for base_episode in base_episodes:
            counterparts: dict[str, EpisodeRecord] = {base_provider: base_episode}
            for provider_id, episodes in episodes_by_provider.items():
                if provider_id == base_provider or not episodes:
                    continue
                match = self.find_matching_episode(
                    base_episode,
                    episodes,
                    season_matching=season_matching,
                    season_stats=season_stats,
                )
                if match is not None:
                    counterparts[provider_id] = match
            merged.append(
                self._merge_episode(
                    base_episode,
                    base_provider,
                    counterparts,
                    thumbnail_order,
                    cover_images,
                )
            )

        logger.info(
            "Merged %d episodes for %r from base %s in %.0fms",
            len(merged),
            primary.title,
            base_provider,
            (time.perf_counter() - started) * 1000,
        )
        return merged

    def _merge_episode(
        self,
        base_episode: EpisodeRecord,
        base_provider: str,
        counterparts: Mapping[str, EpisodeRecord],
        thumbnail_order: Sequence[str],
        cover_images: Sequence[str | None],
    ) -> EpisodeRecord:
        thumbnail: str | None = None
        for provider_id in thumbnail_order:
            candidate = counterparts.get(provider_id)
            if candidate is None or not candidate.thumbnail:
                continue
            if is_fallback_cover_image(candidate.thumbnail, cover_images):
                continue
            thumbnail = candidate.thumbnail
            break

        others = [
            (provider_id, episode)
            for provider_id, episode in counterparts.items()
            if provider_id != base_provider
        ]
        release_date = base_episode.release_date
        if release_date is None:
            release_date = next(
                (ep.release_date for _, ep in others if ep.release_date is not None), None
            )
        duration = base_episode.duration
        if duration is None:
            duration = next((ep.duration for _, ep in others if ep.duration), None)
        title = base_episode.title or next((ep.title for _, ep in others if ep.title), "")

        alternative_data = dict(base_episode.alternative_data)
        for provider_id, episode in counterparts.items():
            alternative_data[provider_id] = EpisodeData(
                title=episode.title or None,
                thumbnail=episode.thumbnail,
                air_date=episode.release_date,
            )

        return base_episode.model_copy(
            update={
                "title": title,
                "thumbnail": thumbnail,
                "release_date": release_date,
                "duration": duration,
                "source_provider": base_provider,
                "alternative_data": alternative_data,
            }
        )

    async def _infer_seasons(
        self,
        base_provider: str,
        base_episodes: list[EpisodeRecord],
        episodes_by_provider: Mapping[str, list[EpisodeRecord]],
        primary: MediaRecord,
        matches: Mapping[str, ProviderMatch],
        lookup: SeasonMetadataLookup | None,
    ) -> list[EpisodeRecord]:
        authority = self.priority_config.season_authority_provider
        if authority == base_provider:
            return base_episodes
        if any(episode.season_number is not None for episode in base_episodes):
            return base_episodes

        season_counts: dict[int, int] = {}
        authority_media_id: str | None = None
        if authority == primary.source_id:
            authority_media_id = primary.id
        elif authority in matches:
            authority_media_id = matches[authority].provider_media_id

        if lookup is not None and authority_media_id is not None:
            try:
                metadata = await run_with_timeout(
                    lambda: lookup(authority_media_id),
                    self._details_timeout,
                    {},
                    label=f"Season metadata from {authority}",
                )
            except Exception as exc:
                logger.warning("Season metadata lookup failed for %s: %s", authority, exc)
                metadata = {}
            season_counts = {
                season: info.episode_count
                for season, info in sorted(metadata.items())
                if season > 0 and info.episode_count > 0
            }

        if not season_counts:
            for episode in episodes_by_provider.get(authority, []):
                season = episode.season_number
                if season is not None and season > 0:
                    season_counts[season] = season_counts.get(season, 0) + 1
            season_counts = dict(sorted(season_counts.items()))

        if not season_counts:
            return base_episodes

        ranges: list[tuple[int, int, int]] = []
        start = 1
        for season, count in season_counts.items():
            ranges.append((season, start, start + count - 1))
            start += count

        inferred: list[EpisodeRecord] = []
        for episode in base_episodes:
            season = next(
                (s for s, low, high in ranges if low <= episode.number <= high), None
            )
            if season is None:
                inferred.append(episode)
            else:
                inferred.append(episode.model_copy(update={"season_number": season}))
        logger.info(
            "Inferred seasons for %s episodes from %s: %s",
            base_provider,
            authority,
            season_counts,
        )
        return inferred

    @staticmethod
    def find_matching_episode(
        target: EpisodeRecord,
        candidates: Sequence[EpisodeRecord],
        *,
        season_matching: bool = False,
        season_stats: Mapping[int, tuple[int, int]] | None = None,
    ) -> EpisodeRecord | None:
        """Locate ``target`` in another provider's episode list.

        Tries, in order: the same season and number (also with the base
        season's numbering offset removed), the flat number obtained by
        adding every earlier season's episode count, the same number, and
        finally the closest number at most two episodes away.
        """

        if not candidates:
            return None
        stats = season_stats or {}
        season = target.season_number

        if season_matching and season is not None:
            for candidate in candidates:
                if candidate.season_number == season and candidate.number == target.number:
                    return candidate
            low = stats.get(season, (1, 1))[0]
            if low > 1:
                relative = target.number - (low - 1)
                for candidate in candidates:
                    if candidate.season_number == season and candidate.number == relative:
                        return candidate

            if stats.get(season, (1, 1))[0] == 1 and season > 1:
                flat = target.number + sum(
                    high for other, (_, high) in stats.items() if 0 < other < season
                )
                for candidate in candidates:
                    if candidate.season_number is None and candidate.number == flat:
                        return candidate

        for candidate in candidates:
            if candidate.number == target.number:
                return candidate

        closest: EpisodeRecord | None = None
        closest_distance = CLOSEST_EPISODE_TOLERANCE + 1
        for candidate in candidates:
            distance = abs(candidate.number - target.number)
            if distance <= CLOSEST_EPISODE_TOLERANCE and distance < closest_distance:
                closest = candidate
                closest_distance = distance
        return closest

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------
    async def aggregate_chapters(
        self,
        primary: MediaRecord,
        matches: Mapping[str, ProviderMatch],
        chapter_fetcher: ChapterFetcher,
    ) -> list[ChapterRecord]:
        """Merge chapter lists, keeping the primary's numbering when it has one."""

        chapters_by_provider = await self._fetch_lists(
            primary,
            matches,
            chapter_fetcher,
            timeout=self._chapter_timeout,
            kind="chapters",
        )
        if not any(chapters_by_provider.values()):
            logger.warning("No chapters found for %r from any provider", primary.title)
            return []

        primary_chapters = chapters_by_provider.get(primary.source_id) or []
        if primary_chapters:
            return self._enhance_chapters(
                primary_chapters, primary.source_id, chapters_by_provider
            )

        selected = self._select_best_chapters(chapters_by_provider)
        if selected is None:
            return []
        provider_id, chapters = selected
        logger.info(
            "Using %d chapters from %s for %r", len(chapters), provider_id, primary.title
        )
        return [
            chapter
            if chapter.source_provider
            else chapter.model_copy(update={"source_provider": provider_id})
            for chapter in chapters
        ]

    def _enhance_chapters(
        self,
        base_chapters: Sequence[ChapterRecord],
        base_provider: str,
        chapters_by_provider: Mapping[str, list[ChapterRecord]],
    ) -> list[ChapterRecord]:
        others = [
            {chapter.number: chapter for chapter in reversed(chapters)}
            for provider_id, chapters in chapters_by_provider.items()
            if provider_id != base_provider and chapters
        ]
        merged: list[ChapterRecord] = []
        for chapter in base_chapters:
            counterparts = [
                index[chapter.number] for index in others if chapter.number in index
            ]
            update: dict[str, Any] = {}
            if chapter.release_date is None:
                release_date = next(
                    (c.release_date for c in counterparts if c.release_date is not None),
                    None,
                )
                if release_date is not None:
                    update["release_date"] = release_date
            if chapter.page_count is None:
                page_count = next(
                    (c.page_count for c in counterparts if c.page_count is not None),
                    None,
                )
                if page_count is not None:
                    update["page_count"] = page_count
            if not chapter.source_provider:
                update["source_provider"] = base_provider
            merged.append(chapter.model_copy(update=update) if update else chapter)
        return merged

    def _select_best_chapters(
        self, chapters_by_provider: Mapping[str, list[ChapterRecord]]
    ) -> tuple[str, list[ChapterRecord]] | None:
        scores: dict[str, float] = {}
        for provider_id, chapters in chapters_by_provider.items():
            if not chapters:
                continue
            dated = sum(1 for c in chapters if c.release_date is not None)
            paged = sum(1 for c in chapters if c.page_count is not None)
            scores[provider_id] = len(chapters) + 0.5 * dated + 0.3 * paged
        if not scores:
            return None

        best_provider = max(scores, key=scores.__getitem__)
        best_score = scores[best_provider]
        for provider_id in self.priority_config.chapter_priority:
            score = scores.get(provider_id, 0.0)
            if score > 0 and score >= best_score * PRIORITY_SCORE_RATIO:
                best_provider = provider_id
                break
        return best_provider, chapters_by_provider[best_provider]

    # ------------------------------------------------------------------
    # Images and people
    # ------------------------------------------------------------------
    def merge_images(
        self, primary: ImageUrls, alternatives: Mapping[str, ImageUrls]
    ) -> ImageUrls:
        """Choose cover and banner independently, primary first then by priority."""

        cover, cover_source = primary.cover_image, primary.source_provider
        if not primary.has_cover_image:
            cover, cover_source = self._pick_image(alternatives, "cover_image")
        banner, banner_source = primary.banner_image, primary.source_provider
        if not primary.has_banner_image:
            banner, banner_source = self._pick_image(alternatives, "banner_image")

        source = cover_source if cover_source == banner_source else primary.source_provider
        return ImageUrls(
            cover_image=cover or None,
            banner_image=banner or None,
            source_provider=source or primary.source_provider,
            cover_source=cover_source if cover else None,
            banner_source=banner_source if banner else None,
        )

    def _pick_image(
        self, alternatives: Mapping[str, ImageUrls], field: str
    ) -> tuple[str | None, str | None]:
        for provider_id in self.priority_config.sort_providers(alternatives, "image"):
            value = getattr(alternatives[provider_id], field)
            if value:
                return value, provider_id
        return None, None

    def merge_characters(
        self, character_lists: Iterable[Iterable[CharacterRecord]]
    ) -> list[CharacterRecord]:
        return self._merge_people(character_lists)

    def merge_staff(self, staff_lists: Iterable[Iterable[StaffRecord]]) -> list[StaffRecord]:
        return self._merge_people(staff_lists)

    @staticmethod
    def _merge_people(lists: Iterable[Iterable[Any]]) -> list[Any]:
        seen: dict[str, Any] = {}
        for people in lists:
            for person in people:
                key = normalize_name(person.name)
                existing = seen.get(key)
                if existing is None or _completeness(person) > _completeness(existing):
                    seen[key] = person
        return list(seen.values())

    @staticmethod
    def merge_recommendations(
        recommendation_lists: Iterable[Iterable[RecommendationRecord]],
    ) -> list[RecommendationRecord]:
        seen: dict[str, RecommendationRecord] = {}
        for recommendations in recommendation_lists:
            for recommendation in recommendations:
                key = normalize_name(recommendation.title)
                existing = seen.get(key)
                if existing is None or recommendation.rating > existing.rating:
                    seen[key] = recommendation
        return list(seen.values())

    # ------------------------------------------------------------------
    # Details
    # ------------------------------------------------------------------
    async def aggregate_media_details(
        self,
        primary_details: MediaDetails,
        matches: Mapping[str, ProviderMatch],
        details_fetcher: DetailsFetcher,
    ) -> AggregatedDetails:
        """Merge full detail records with per-field source attribution."""

        primary_id = primary_details.source_id
        relevant = {pid: match for pid, match in matches.items() if pid != primary_id}
        fetched = await asyncio.gather(
            *(
                self._fetch_details(provider_id, match, primary_details, details_fetcher)
                for provider_id, match in relevant.items()
            )
        )
        alternatives: dict[str, MediaDetails] = dict(zip(relevant, fetched))
        sources: list[tuple[str, MediaDetails]] = [(primary_id, primary_details)]
        sources.extend(alternatives.items())

        attribution: dict[str, str] = {}
        update: dict[str, Any] = {}

        for field in NUMERIC_DETAIL_FIELDS:
            value, source = self._pick_extreme(sources, field, prefer_larger=True)
            update[field] = value
            if value is not None and source != primary_id:
                attribution[field] = source

        start_date, source = self._pick_extreme(sources, "start_date", prefer_larger=False)
        update["start_date"] = start_date
        if start_date is not None and source != primary_id:
            attribution["start_date"] = source
        end_date, source = self._pick_extreme(sources, "end_date", prefer_larger=True)
        update["end_date"] = end_date
        if end_date is not None and source != primary_id:
            attribution["end_date"] = source

        update["genres"] = self._union(details.genres for _, details in sources)
        update["tags"] = self._union(details.tags for _, details in sources)

        for field, data_type in (
            ("cover_image", "image"),
            ("banner_image", "banner"),
            ("description", "metadata"),
        ):
            value, source = self._pick_preferred(primary_details, alternatives, field, data_type)
            update[field] = value if value else getattr(primary_details, field)
            if value and source != primary_id:
                attribution[field] = source
        for field in TEXT_DETAIL_FIELDS:
            value, source = self._pick_preferred(primary_details, alternatives, field, "metadata")
            if value and source != primary_id:
                update[field] = value
                attribution[field] = source

        update["characters"] = self.merge_characters(d.characters for _, d in sources)
        update["staff"] = self.merge_staff(d.staff for _, d in sources)
        update["recommendations"] = self.merge_recommendations(
            d.recommendations for _, d in sources
        )
        update["studios"] = self._merge_studios(d.studios for _, d in sources)
        update["relations"] = self._merge_relations(d.relations for _, d in sources)

        trailer, source = self._pick_trailer(sources)
        update["trailer"] = trailer
        if trailer is not None and source != primary_id:
            attribution["trailer"] = source

        update["data_source_attribution"] = attribution
        update["contributing_providers"] = [primary_id, *alternatives]
        update["match_confidences"] = {
            provider_id: match.confidence for provider_id, match in relevant.items()
        }

        logger.info(
            "Aggregated details for %r from %d providers (%d attributed fields)",
            primary_details.title,
            len(sources),
            len(attribution),
        )
        payload = primary_details.model_dump()
        payload.update(update)
        return AggregatedDetails.model_validate(payload)

    async def _fetch_details(
        self,
        provider_id: str,
        match: ProviderMatch,
        primary_details: MediaDetails,
        details_fetcher: DetailsFetcher,
    ) -> MediaDetails:
        placeholder = MediaDetails.placeholder(
            media_id=match.provider_media_id,
            title=match.matched_title,
            media_type=primary_details.type,
            provider_id=provider_id,
        )
        label = f"Fetch details from {provider_id}"
        try:
            return await self._retry_handler.execute(
                lambda: run_with_timeout(
                    lambda: details_fetcher(match.provider_media_id, provider_id),
                    self._details_timeout,
                    placeholder,
                    label=label,
                ),
                provider_id=provider_id,
                operation_name=label,
            )
        except Exception as exc:
            logger.error("Details fetch failed for %s after retries: %s", provider_id, exc)
            return placeholder

    @staticmethod
    def _pick_extreme(
        sources: Sequence[tuple[str, MediaDetails]], field: str, *, prefer_larger: bool
    ) -> tuple[Any, str | None]:
        best: Any = None
        best_source: str | None = None
        for provider_id, details in sources:
            value = getattr(details, field)
            if value is None:
                continue
            if best is None or (value > best if prefer_larger else value < best):
                best, best_source = value, provider_id
        return best, best_source

    def _pick_preferred(
        self,
        primary: MediaDetails,
        alternatives: Mapping[str, MediaDetails],
        field: str,
        data_type: str,
    ) -> tuple[Any, str | None]:
        value = getattr(primary, field)
        if value:
            return value, primary.source_id
        for provider_id in self.priority_config.sort_providers(alternatives, data_type):
            value = getattr(alternatives[provider_id], field)
            if value:
                return value, provider_id
        return None, None

    @staticmethod
    def _union(groups: Iterable[Iterable[str]]) -> list[str]:
        seen: dict[str, str] = {}
        for group in groups:
            for item in group:
                key = normalize_name(item)
                if key and key not in seen:
                    seen[key] = item
        return list(seen.values())

    @staticmethod
    def _merge_studios(groups: Iterable[Iterable[StudioRecord]]) -> list[StudioRecord]:
        seen: dict[str, StudioRecord] = {}
        for studios in groups:
            for studio in studios:
                key = normalize_name(studio.name)
                existing = seen.get(key)
                if existing is None or (studio.is_main and not existing.is_main):
                    seen[key] = studio
        return list(seen.values())

    @staticmethod
    def _merge_relations(groups: Iterable[Iterable[RelationRecord]]) -> list[RelationRecord]:
        seen: dict[str, RelationRecord] = {}
        for relations in groups:
            for relation in relations:
                seen.setdefault(relation.id, relation)
        return list(seen.values())

    @staticmethod
    def _pick_trailer(
        sources: Sequence[tuple[str, MediaDetails]],
    ) -> tuple[TrailerRecord | None, str | None]:
        for provider_id, details in sources:
            trailer = details.trailer
            if trailer is not None and trailer.site.lower() == "youtube":
                return trailer, provider_id
        for provider_id, details in sources:
            if details.trailer is not None:
                return details.trailer, provider_id
        return None, None

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    async def _fetch_lists(
        self,
        primary: MediaRecord,
        matches: Mapping[str, ProviderMatch],
        fetcher: Callable[[str, str], Awaitable[list[Any]]],
        *,
        timeout: float,
        kind: str,
    ) -> dict[str, list[Any]]:
        async def fetch_primary() -> tuple[str, list[Any]]:
            try:
                items = await fetcher(primary.id, primary.source_id)
            except Exception as exc:
                logger.warning(
                    "Fetching %s from primary %s failed: %s", kind, primary.source_id, exc
                )
                items = []
            return primary.source_id, list(items)

        async def fetch_match(provider_id: str, match: ProviderMatch) -> tuple[str, list[Any]]:
            label = f"Fetch {kind} from {provider_id}"
            try:
                items = await self._retry_handler.execute(
                    lambda: run_with_timeout(
                        lambda: fetcher(match.provider_media_id, provider_id),
                        timeout,
                        [],
                        label=label,
                    ),
                    provider_id=provider_id,
                    operation_name=label,
                )
            except Exception as exc:
                logger.error("%s failed after retries: %s", label, exc)
                items = []
            return provider_id, list(items)

        results = await asyncio.gather(
            fetch_primary(),
            *(
                fetch_match(provider_id, match)
                for provider_id, match in matches.items()
                if provider_id != primary.source_id
            ),
        )
        return dict(results)
