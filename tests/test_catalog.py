import logging
from datetime import datetime, timezone

import httpx
import pytest

from gamerec import catalog
from gamerec.errors import CatalogUnavailable, DataInconsistency


WITCHER = {
    "id": 1942,
    "name": "The Witcher 3: Wild Hunt",
    "rating": 92.4,
    "rating_count": 3100,
    "summary": "Monster slaying for hire.",
    "cover": {"url": "//images.igdb.com/igdb/image/upload/t_thumb/co1wyy.jpg"},
    "genres": [{"id": 12, "name": "Role-playing (RPG)"}, {"id": 31, "name": "Adventure"}],
    "themes": [{"id": 1, "name": "Action"}, {"id": 17, "name": "Fantasy"}, {"id": 17, "name": "Fantasy"}],
    "first_release_date": 1431993600,
    "involved_companies": [
        {"developer": False, "publisher": True, "company": {"name": "Bandai Namco"}},
        {"developer": True, "publisher": True, "company": {"name": "CD Projekt RED"}},
    ],
    "similar_games": [
        {"id": 1020, "name": "Grand Theft Auto V", "rating_count": 2800},
        {"id": 77777, "name": "Obscure Clone", "rating_count": 3},
        {"id": 472, "name": "The Elder Scrolls V: Skyrim", "rating_count": 2500},
    ],
}


def _catalog(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return catalog.IGDBCatalog(
        base_url="https://igdb.test/v4/",
        client_id="cid",
        access_token="tok",
        client=client,
        **kwargs,
    )


def test_map_game_extracts_metadata():
    item = catalog.map_game(WITCHER)

    assert item.id == 1942
    assert item.name == "The Witcher 3: Wild Hunt"
    assert item.rating == 92.4
    assert item.rating_count == 3100
    assert item.genres == ["Role-playing (RPG)", "Adventure"]
    assert item.themes == ["Action", "Fantasy"]
    assert [s.id for s in item.similar_items] == [1020, 472]
    assert item.cover_url == "//images.igdb.com/igdb/image/upload/t_cover_big/co1wyy.jpg"
    assert item.release_date == datetime(2015, 5, 19, tzinfo=timezone.utc)
    assert item.developer == "CD Projekt RED"
    assert item.publisher == "Bandai Namco"


def test_map_game_tolerates_sparse_records():
    item = catalog.map_game({"id": 5, "name": "Stub"})

    assert item.rating == 0.0
    assert item.genres == []
    assert item.similar_items == []
    assert item.cover_url == ""
    assert item.release_date is None


def test_map_game_rejects_records_without_id():
    with pytest.raises(DataInconsistency):
        catalog.map_game({"name": "No id"})
    with pytest.raises(DataInconsistency):
        catalog.map_game({"id": "1942"})


def test_parse_games_skips_bad_records(caplog):
    with caplog.at_level(logging.WARNING):
        items = catalog.parse_games([{"id": 1, "name": "A"}, {"name": "broken"}, {"id": 2, "name": "B"}])

    assert [i.id for i in items] == [1, 2]
    assert "Skipping catalog record" in caplog.text


def test_build_game_query_and_page_bounds():
    body = catalog.build_game_query("id = 1", offset=20, limit=10, sort="rating desc")

    assert body.startswith(f"fields {catalog.GAME_FIELDS};\n")
    assert "where id = 1;\nsort rating desc;\noffset 20;\nlimit 10;\n" in body
    assert "offset" not in catalog.build_game_query(limit=5)

    assert catalog.page_bounds(1, 10) == (0, 10)
    assert catalog.page_bounds(3, 10) == (20, 10)
    assert catalog.page_bounds(0, 500) == (0, 50)
    assert catalog.page_bounds(2, 0) == (1, 1)


def test_escape_query_string():
    assert catalog.escape_query_string('Hack "n" Slash\\') == 'Hack \\"n\\" Slash\\\\'


@pytest.mark.asyncio
async def test_get_item_by_id_posts_query_with_credentials():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        seen["headers"] = request.headers
        return httpx.Response(200, json=[WITCHER])

    async with _catalog(handler) as igdb:
        item = await igdb.get_item_by_id(1942)

    assert item.name == "The Witcher 3: Wild Hunt"
    assert seen["url"] == "https://igdb.test/v4/games"
    assert "where id = 1942 & rating_count >= 20;" in seen["body"]
    assert "limit 1;" in seen["body"]
    assert seen["headers"]["Client-ID"] == "cid"
    assert seen["headers"]["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_get_item_by_id_returns_none_when_missing():
    async with _catalog(lambda request: httpx.Response(200, json=[])) as igdb:
        assert await igdb.get_item_by_id(404) is None


@pytest.mark.asyncio
async def test_get_items_by_genre_pages_and_escapes():
    bodies = []

    def handler(request):
        bodies.append(request.content.decode())
        return httpx.Response(200, json=[{"id": 7, "name": "Seven", "rating_count": 40}])

    async with _catalog(handler) as igdb:
        items = await igdb.get_items_by_genre('Hack "and" slash', page=2, page_size=3)

    assert [i.id for i in items] == [7]
    assert 'genres.name = "Hack \\"and\\" slash" & rating_count >= 20;' in bodies[0]
    assert "offset 3;" in bodies[0]
    assert "limit 3;" in bodies[0]


@pytest.mark.asyncio
async def test_get_popular_items_sorts_by_rating_and_caps_page_size():
    bodies = []

    def handler(request):
        bodies.append(request.content.decode())
        return httpx.Response(200, json=[{"id": 1, "name": "Top", "rating": 97.0}])

    async with _catalog(handler) as igdb:
        items = await igdb.get_popular_items(page=1, page_size=200)

    assert items[0].rating == 97.0
    assert "sort rating desc;" in bodies[0]
    assert "limit 50;" in bodies[0]
    assert "first_release_date <" in bodies[0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(401, text="unauthorized"),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"message": "not a list"}),
    ],
)
async def test_bad_responses_raise_catalog_unavailable(response):
    async with _catalog(lambda request: response) as igdb:
        with pytest.raises(CatalogUnavailable):
            await igdb.get_popular_items()


@pytest.mark.asyncio
async def test_transport_errors_raise_catalog_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _catalog(handler) as igdb:
        with pytest.raises(CatalogUnavailable):
            await igdb.get_item_by_id(1)


@pytest.mark.asyncio
async def test_timeouts_raise_catalog_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    async with _catalog(handler) as igdb:
        with pytest.raises(CatalogUnavailable):
            await igdb.get_items_by_genre("RPG")


@pytest.mark.asyncio
async def test_query_requires_context_manager():
    igdb = catalog.IGDBCatalog(base_url="https://igdb.test", client_id="c", access_token="t")

    with pytest.raises(RuntimeError):
        await igdb.get_item_by_id(1)


@pytest.mark.asyncio
async def test_injected_client_is_left_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[])))
    igdb = catalog.IGDBCatalog(base_url="https://igdb.test", client=client)

    async with igdb:
        await igdb.get_popular_items()

    assert not client.is_closed
    await client.aclose()


@pytest.mark.asyncio
async def test_search_items_adds_search_clause():
    bodies = []

    def handler(request):
        bodies.append(request.content.decode())
        return httpx.Response(200, json=[{"id": 1025, "name": "Zelda", "rating_count": 900}])

    async with _catalog(handler) as igdb:
        items = await igdb.search_items('zelda "links"', page=2, page_size=5)
        await igdb.search_items("   ")

    assert [i.id for i in items] == [1025]
    assert 'search "zelda \\"links\\"";\nwhere rating_count >= 20;' in bodies[0]
    assert "offset 5;" in bodies[0]
    assert "search" not in bodies[1]


@pytest.mark.asyncio
async def test_get_items_by_developer_resolves_company_first():
    requests = []

    def handler(request):
        requests.append((request.url.path, request.content.decode()))
        if request.url.path.endswith("/companies"):
            return httpx.Response(200, json=[{"id": 908}])
        return httpx.Response(200, json=[WITCHER])

    async with _catalog(handler) as igdb:
        items = await igdb.get_items_by_developer("CD Projekt RED", page_size=3)

    assert [i.id for i in items] == [1942]
    assert requests[0] == ("/v4/companies", 'fields id; where name = "CD Projekt RED"; limit 1;\n')
    assert requests[1][0] == "/v4/games"
    assert "involved_companies.company = 908 & involved_companies.developer = true" in requests[1][1]
    assert "limit 3;" in requests[1][1]


@pytest.mark.asyncio
async def test_get_items_by_unknown_developer_is_empty():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json=[])

    async with _catalog(handler) as igdb:
        assert await igdb.get_items_by_developer("Nobody Games") == []

    assert paths == ["/v4/companies"]


@pytest.mark.asyncio
async def test_get_genres_lists_names():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.content.decode()
        return httpx.Response(200, json=[{"id": 31, "name": "Adventure"}, {"id": 9, "name": "Puzzle"}])

    async with _catalog(handler) as igdb:
        genres = await igdb.get_genres()

    assert genres == ["Adventure", "Puzzle"]
    assert seen["path"] == "/v4/genres"
    assert "sort name asc; limit 30;" in seen["body"]


@pytest.mark.asyncio
async def test_request_failures_are_not_logged_as_errors(caplog):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with caplog.at_level(logging.DEBUG, logger="gamerec.catalog"):
        async with _catalog(handler) as igdb:
            with pytest.raises(CatalogUnavailable, match="ConnectError"):
                await igdb.get_item_by_id(1)

    assert "Request error" in caplog.text
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
