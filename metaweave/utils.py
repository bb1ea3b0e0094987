"""Utility helpers for title and URL normalisation."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from rapidfuzz.distance import Levenshtein


YEAR_MARKER_RE = re.compile(r"[\(\[\-]\s*\d{4}\s*[\)\]]?")
TRAILING_YEAR_RE = re.compile(r"\s+\d{4}\s*$")
SEASON_WORD_RE = re.compile(r"\s+season\s+\d+")
SEASON_SHORT_RE = re.compile(r"\s+s\d+\b")
SEASON_ORDINAL_RE = re.compile(r"\s+\d+(?:st|nd|rd|th)\s+season")
NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
WHITESPACE_RE = re.compile(r"\s+")

IMAGE_SIZE_SUFFIX_RE = re.compile(
    r"[_-]?(?:small|medium|large|original|tiny|l|m|s|t)\.(?:jpg|jpeg|png|webp)$",
    re.IGNORECASE,
)
IMAGE_EXTENSION_RE = re.compile(r"\.(?:jpg|jpeg|png|webp)$", re.IGNORECASE)
YEAR_IN_TEXT_RE = re.compile(r"(19|20|21)\d{2}")


def _normalize_title_once(title: str) -> str:
    normalized = title.lower()
    normalized = YEAR_MARKER_RE.sub("", normalized)
    normalized = TRAILING_YEAR_RE.sub("", normalized)
    normalized = SEASON_WORD_RE.sub("", normalized)
    normalized = SEASON_SHORT_RE.sub("", normalized)
    normalized = SEASON_ORDINAL_RE.sub("", normalized)
    normalized = NON_ALNUM_RE.sub("", normalized)
    return WHITESPACE_RE.sub(" ", normalized).strip()


def normalize_title(title: str) -> str:
    """Return ``title`` reduced to a comparable form.

    Lowercases, strips year markers such as ``(2023)``, ``- 2023`` or a
    trailing `` 2023``, strips season markers (``Season 2``, ``S2``,
    ``2nd Season``), drops every character that is not alphanumeric or a
    space, and collapses whitespace. Stripping a marker can expose another
    one once punctuation is gone, so the rules are applied until the value
    stops changing.
    """

    current = title or ""
    while True:
        normalized = _normalize_title_once(current)
        if normalized == current:
            return normalized
        current = normalized


def levenshtein_distance(source: str, target: str) -> int:
    """Return the minimum number of single character edits between strings."""

    return Levenshtein.distance(source, target)


def title_similarity(source: str, target: str) -> float:
    """Similarity of two already-normalised titles in ``[0, 1]``."""

    if source == target:
        return 1.0
    if not source or not target:
        return 0.0
    return Levenshtein.normalized_similarity(source, target)


def normalize_name(name: str) -> str:
    """Case and whitespace insensitive key for people and titles."""

    return WHITESPACE_RE.sub(" ", (name or "").lower().strip())


def normalize_image_url(url: str) -> str:
    """Strip query strings, size suffixes and extensions from an image URL.

    ``/images/anime/1079/138100l.jpg`` and ``/images/anime/1079/138100.jpg``
    both become ``/images/anime/1079/138100``; Kitsu style
    ``/poster_images/1376/large.jpg`` becomes ``/poster_images/1376``.
    """

    normalized = url.strip()
    for separator in ("?", "#"):
        index = normalized.find(separator)
        if index > 0:
            normalized = normalized[:index]
    normalized = IMAGE_SIZE_SUFFIX_RE.sub("", normalized)
    normalized = IMAGE_EXTENSION_RE.sub("", normalized)
    return normalized.rstrip("/").lower()


def image_base_path(url: str) -> str:
    """Return the directory portion of a normalised image URL."""

    normalized = normalize_image_url(url)
    head, _, _ = normalized.rpartition("/")
    return head or normalized


def parse_retry_after(value: str | None) -> float | None:
    """Interpret a ``Retry-After`` header as a number of seconds."""

    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def parse_year(value: Any) -> int | None:
    if isinstance(value, int):
        return value
    if not value:
        return None
    match = YEAR_IN_TEXT_RE.search(str(value))
    if not match:
        return None
    year = int(match.group(0))
    if 1900 <= year <= 2100:
        return year
    return None


def parse_date(value: Any) -> date | None:
    """Parse ISO dates or datetimes, returning ``None`` for junk values."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    text = value.strip()
    if text.startswith("0000"):
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None
