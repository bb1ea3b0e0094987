"""Tests for the Kitsu provider adapter."""

from __future__ import annotations

from datetime import date

import httpx
import pytest

from metaweave.models import MediaStatus, MediaType
from metaweave.services.kitsu import KitsuClient

BASE_URL = "https://api.example.com"


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def chapter(chapter_id: int, number: int, **attributes) -> dict:
    return {"id": str(chapter_id), "type": "chapters", "attributes": {"number": number, **attributes}}


@pytest.mark.anyio("asyncio")
async def test_search_maps_anime_results() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "id": "1",
                        "type": "anime",
                        "attributes": {
                            "canonicalTitle": "Cowboy Bebop",
                            "titles": {"en": "Cowboy Bebop", "en_jp": "Cowboy Bebop"},
                            "subtype": "TV",
                            "status": "finished",
                            "averageRating": "82.5",
                            "episodeCount": 26,
                            "startDate": "1998-04-03",
                            "posterImage": {"small": "https://media.kitsu.io/1/small.jpg", "medium": "https://media.kitsu.io/1/medium.jpg"},
                        },
                    },
                    {"id": None, "attributes": {}},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        results = await KitsuClient(http_client).search("Cowboy Bebop", MediaType.ANIME)

    assert requests[0].url.path == "/anime"
    assert requests[0].url.params["filter[text]"] == "Cowboy Bebop"
    assert requests[0].headers["accept"] == "application/vnd.api+json"
    assert len(results) == 1
    bebop = results[0]
    assert bebop.id == "1"
    assert bebop.type == MediaType.ANIME
    assert bebop.status == MediaStatus.COMPLETED
    assert bebop.rating == pytest.approx(8.25)
    assert bebop.cover_image == "https://media.kitsu.io/1/medium.jpg"
    assert bebop.release_year == 1998


@pytest.mark.anyio("asyncio")
async def test_manga_search_prefixes_identifiers_and_screen_types_are_skipped() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "2", "attributes": {"canonicalTitle": "Berserk", "subtype": "manga", "status": "current"}},
                    {"id": "3", "attributes": {"canonicalTitle": "Spice and Wolf", "subtype": "novel", "status": "tba"}},
                ]
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        client = KitsuClient(http_client)
        manga = await client.search("Berserk", MediaType.MANGA)
        movies = await client.search("Berserk", MediaType.MOVIE)

    assert [request.url.path for request in requests] == ["/manga"]
    assert movies == []
    assert [r.id for r in manga] == ["manga:2", "manga:3"]
    assert [r.type for r in manga] == [MediaType.MANGA, MediaType.NOVEL]
    assert [r.status for r in manga] == [MediaStatus.ONGOING, MediaStatus.UPCOMING]


@pytest.mark.anyio("asyncio")
async def test_fetch_episodes_follows_next_links() -> None:
    urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        if request.url.params.get("page[offset]") == "0":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "100",
                            "attributes": {
                                "number": 1,
                                "canonicalTitle": "Asteroid Blues",
                                "airdate": "1998-10-24",
                                "length": 24,
                                "thumbnail": {"original": "https://media.kitsu.io/episodes/100/original.jpg"},
                            },
                        },
                        {"id": "101", "attributes": {"number": 2, "length": 0}},
                    ],
                    "links": {"next": f"{BASE_URL}/anime/1/episodes?page%5Boffset%5D=2"},
                },
            )
        return httpx.Response(
            200,
            json={"data": [{"id": "102", "attributes": {"number": 3}}], "links": {}},
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        client = KitsuClient(http_client)
        episodes = await client.fetch_episodes("1")
        manga_episodes = await client.fetch_episodes("manga:2")

    assert len(urls) == 2
    assert [ep.number for ep in episodes] == [1, 2, 3]
    assert episodes[0].title == "Asteroid Blues"
    assert episodes[0].thumbnail == "https://media.kitsu.io/episodes/100/original.jpg"
    assert episodes[0].release_date == date(1998, 10, 24)
    assert episodes[0].duration == 24
    assert episodes[1].title == "Episode 2"
    assert episodes[1].duration is None
    assert episodes[1].thumbnail is None
    assert all(ep.source_provider == "kitsu" for ep in episodes)
    assert manga_episodes == []


@pytest.mark.anyio("asyncio")
async def test_fetch_chapters_pages_through_results() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/manga/2/chapters"
        if request.url.params.get("page[offset]") == "0":
            return httpx.Response(
                200,
                json={
                    "data": [
                        chapter(10, 1, canonicalTitle="The Black Swordsman", published="1989-08-25"),
                        chapter(11, 2),
                    ],
                    "links": {"next": f"{BASE_URL}/manga/2/chapters?page%5Boffset%5D=2"},
                },
            )
        return httpx.Response(200, json={"data": [chapter(12, 3)], "links": {}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        client = KitsuClient(http_client)
        chapters = await client.fetch_chapters("manga:2")
        anime_chapters = await client.fetch_chapters("1")

    assert [c.number for c in chapters] == [1.0, 2.0, 3.0]
    assert chapters[0].title == "The Black Swordsman"
    assert chapters[0].release_date == date(1989, 8, 25)
    assert chapters[1].title == "Chapter 2"
    assert all(c.media_id == "manga:2" and c.source_provider == "kitsu" for c in chapters)
    assert anime_chapters == []


@pytest.mark.anyio("asyncio")
async def test_fetch_chapters_falls_back_to_filtered_endpoint() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/manga/2/chapters":
            return httpx.Response(404)
        if request.url.params.get("filter[mangaId]") == "2":
            return httpx.Response(500)
        assert request.url.params["filter[manga_id]"] == "2"
        return httpx.Response(200, json={"data": [chapter(10, 1)]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        chapters = await KitsuClient(http_client).fetch_chapters("manga:2")

    assert paths == ["/manga/2/chapters", "/chapters", "/chapters"]
    assert [c.id for c in chapters] == ["10"]


@pytest.mark.anyio("asyncio")
async def test_fetch_chapters_generates_placeholders_from_chapter_count() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/manga/2/chapters":
            return httpx.Response(200, json={"data": []})
        assert request.url.path == "/manga/2"
        return httpx.Response(200, json={"data": {"id": "2", "attributes": {"chapterCount": 3}}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        chapters = await KitsuClient(http_client).fetch_chapters("manga:2")

    assert [(c.id, c.number, c.title) for c in chapters] == [
        ("kitsu_chapter_2_1", 1.0, "Chapter 1"),
        ("kitsu_chapter_2_2", 2.0, "Chapter 2"),
        ("kitsu_chapter_2_3", 3.0, "Chapter 3"),
    ]


@pytest.mark.anyio("asyncio")
async def test_fetch_details_reads_included_resources() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": {
                    "id": "1",
                    "type": "anime",
                    "attributes": {
                        "canonicalTitle": "Cowboy Bebop",
                        "titles": {"en": "Cowboy Bebop", "en_jp": "Cowboy Bebop", "ja_jp": "カウボーイビバップ"},
                        "subtype": "TV",
                        "status": "finished",
                        "averageRating": "82.5",
                        "userCount": 150_000,
                        "favoritesCount": 4_000,
                        "episodeCount": 26,
                        "episodeLength": 25,
                        "startDate": "1998-04-03",
                        "endDate": "1999-04-24",
                        "posterImage": {"large": "https://media.kitsu.io/1/large.jpg"},
                        "coverImage": {"original": "https://media.kitsu.io/1/cover.jpg"},
                        "youtubeVideoId": "qig4KOK2R2g",
                        "nsfw": False,
                    },
                },
                "included": [
                    {"id": "5", "type": "categories", "attributes": {"title": "Space"}},
                    {
                        "id": "7",
                        "type": "characters",
                        "attributes": {
                            "canonicalName": "Spike Spiegel",
                            "names": {"ja_jp": "スパイク・スピーゲル"},
                            "image": {"original": "https://media.kitsu.io/characters/7.jpg"},
                        },
                    },
                    {"id": "9", "type": "people", "attributes": {"name": "Shinichiro Watanabe"}},
                    {"id": "11", "type": "producers", "attributes": {"name": "Sunrise"}},
                    {"id": "12", "type": "animeCharacters", "attributes": {"role": "main"}},
                ],
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        details = await KitsuClient(http_client).fetch_details("1")

    assert requests[0].url.path == "/anime/1"
    assert "animeCharacters.character" in requests[0].url.params["include"]
    assert details.native_title == "カウボーイビバップ"
    assert details.rating == pytest.approx(8.25)
    assert details.average_score == 82
    assert details.popularity == 150_000
    assert details.episodes == 26
    assert details.chapters is None
    assert details.duration == 25
    assert details.season_year == 1998
    assert details.end_date == date(1999, 4, 24)
    assert details.banner_image == "https://media.kitsu.io/1/cover.jpg"
    assert details.genres == ["Space"]
    assert [(c.name, c.native_name) for c in details.characters] == [("Spike Spiegel", "スパイク・スピーゲル")]
    assert [(s.name, s.role) for s in details.staff] == [("Shinichiro Watanabe", "Staff")]
    assert [(s.name, s.is_main) for s in details.studios] == [("Sunrise", True)]
    assert details.trailer is not None and details.trailer.id == "qig4KOK2R2g"
    assert details.site_url == "https://kitsu.io/anime/1"
    assert details.source_id == "kitsu"


@pytest.mark.anyio("asyncio")
async def test_http_errors_are_raised_for_the_retry_layer() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as http_client:
        with pytest.raises(httpx.HTTPStatusError):
            await KitsuClient(http_client).search("Cowboy Bebop", MediaType.ANIME)
