import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import httpx

from .config import (
    IGDB_BASE_URL,
    IGDB_CLIENT_ID,
    IGDB_ACCESS_TOKEN,
    HTTP_TIMEOUT,
    DEFAULT_MAX_CONCURRENT,
    MIN_RATING_COUNT,
    MAX_PAGE_SIZE,
)
from .errors import CatalogUnavailable, DataInconsistency

logger = logging.getLogger(__name__)

GAME_FIELDS = (
    "name,summary,rating,rating_count,cover.url,"
    "genres.name,themes.name,first_release_date,"
    "involved_companies.developer,involved_companies.publisher,involved_companies.company.name,"
    "similar_games.id,similar_games.name,similar_games.rating_count"
)


@dataclass
class SimilarItem:
    id: int
    name: str
    rating_count: int = 0


@dataclass
class CatalogItem:
    id: int
    name: str
    rating: float = 0.0
    rating_count: int = 0
    genres: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    similar_items: list[SimilarItem] = field(default_factory=list)
    summary: str = ""
    cover_url: str = ""
    release_date: datetime | None = None
    developer: str = ""
    publisher: str = ""


class CatalogService(Protocol):
    """Read-only lookups against the authoritative game catalog."""

    async def get_item_by_id(self, item_id: int) -> CatalogItem | None: ...

    async def get_items_by_genre(self, genre: str, page: int, page_size: int) -> list[CatalogItem]: ...

    async def get_popular_items(self, page: int, page_size: int) -> list[CatalogItem]: ...


def _unique_names(values) -> list[str]:
    """Extract `name` from a list of IGDB sub-objects, dropping blanks and duplicates."""
    names = []
    for value in values or []:
        if isinstance(value, dict) and value.get("name"):
            names.append(str(value["name"]))
    return list(dict.fromkeys(names))


def _upsize_cover(url: str | None) -> str:
    """Request the large cover variant instead of the thumbnail."""
    if not url:
        return ""
    return url.replace("t_thumb", "t_cover_big")


def _company_name(companies, role: str) -> str:
    for company in companies or []:
        if isinstance(company, dict) and company.get(role):
            name = (company.get("company") or {}).get("name")
            if name:
                return str(name)
    return ""


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def map_game(record: dict) -> CatalogItem:
    """
    Map one IGDB game record to a CatalogItem.

    Similar games below MIN_RATING_COUNT are dropped, cover URLs are
    upsized and `first_release_date` (unix seconds) becomes a UTC datetime.

    Raises:
        DataInconsistency: if the record has no integer id
    """
    if not isinstance(record, dict) or not _is_int(record.get("id")):
        raise DataInconsistency(f"Catalog record without a usable id: {str(record)[:80]}")

    similar_items = []
    for similar in record.get("similar_games") or []:
        if not isinstance(similar, dict) or not _is_int(similar.get("id")):
            continue
        rating_count = similar.get("rating_count") or 0
        if rating_count < MIN_RATING_COUNT:
            continue
        similar_items.append(SimilarItem(
            id=similar["id"],
            name=similar.get("name") or "",
            rating_count=rating_count,
        ))

    release_date = None
    timestamp = record.get("first_release_date")
    if _is_int(timestamp):
        release_date = datetime.fromtimestamp(timestamp, tz=timezone.utc)

    companies = record.get("involved_companies")
    return CatalogItem(
        id=record["id"],
        name=record.get("name") or "",
        rating=float(record.get("rating") or 0.0),
        rating_count=int(record.get("rating_count") or 0),
        genres=_unique_names(record.get("genres")),
        themes=_unique_names(record.get("themes")),
        similar_items=similar_items,
        summary=record.get("summary") or "",
        cover_url=_upsize_cover((record.get("cover") or {}).get("url")),
        release_date=release_date,
        developer=_company_name(companies, "developer"),
        publisher=_company_name(companies, "publisher"),
    )


def parse_games(payload: list) -> list[CatalogItem]:
    """Map a page of records, skipping the ones that cannot be mapped."""
    items = []
    for record in payload:
        try:
            items.append(map_game(record))
        except DataInconsistency as exc:
            logger.warning(f"Skipping catalog record: {exc}")
    return items


def build_game_query(
    where: str | None = None,
    offset: int = 0,
    limit: int | None = None,
    sort: str | None = None,
    search: str | None = None,
) -> str:
    """Build an Apicalypse query body for the /games endpoint."""
    lines = [f"fields {GAME_FIELDS};"]
    if search:
        lines.append(f'search "{escape_query_string(search)}";')
    if where:
        lines.append(f"where {where};")
    if sort:
        lines.append(f"sort {sort};")
    if offset > 0:
        lines.append(f"offset {offset};")
    if limit is not None:
        lines.append(f"limit {limit};")
    return "\n".join(lines) + "\n"


def escape_query_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def page_bounds(page: int, page_size: int) -> tuple[int, int]:
    """Return (offset, limit) for a 1-based page, clamping the page size to 1..MAX_PAGE_SIZE."""
    limit = max(1, min(MAX_PAGE_SIZE, page_size))
    page = max(1, page)
    return (page - 1) * limit, limit


class IGDBCatalog:
    """
    Async client for an IGDB-compatible catalog API.

    Use as an async context manager so one connection pool is shared by
    every lookup of a request:

        async with IGDBCatalog() as catalog:
            item = await catalog.get_item_by_id(1942)

    Calls are not retried. Any transport error, timeout, non-success
    status or malformed payload raises CatalogUnavailable.
    """

    def __init__(
        self,
        base_url: str = IGDB_BASE_URL,
        client_id: str = IGDB_CLIENT_ID,
        access_token: str = IGDB_ACCESS_TOKEN,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = HTTP_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.access_token = access_token
        self.timeout = timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self):
        """Async context manager entry."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": "gamerec/1.0"},
                timeout=self.timeout,
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._owns_client and self.client:
            await self.client.aclose()
            self.client = None
        return False

    def _headers(self) -> dict[str, str]:
        return {
            "Client-ID": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "text/plain",
        }

    async def _query(self, endpoint: str, body: str) -> list:
        """POST a query and return the decoded JSON array."""
        if not self.client:
            raise RuntimeError("IGDBCatalog must be used as an async context manager")

        url = f"{self.base_url}{endpoint}"
        async with self.semaphore:
            try:
                resp = await self.client.post(url, content=body, headers=self._headers())
                resp.raise_for_status()
                payload = resp.json()
            except httpx.TimeoutException as exc:
                logger.debug(f"Timeout on {url}")
                raise CatalogUnavailable(f"Timeout on {url}") from exc
            except httpx.HTTPStatusError as exc:
                logger.debug(f"IGDB error: {exc.response.status_code} - {exc.response.text[:200]}")
                raise CatalogUnavailable(f"IGDB returned {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                logger.debug(f"Request error on {url}: {type(exc).__name__}: {exc}")
                raise CatalogUnavailable(f"Request error on {url}: {type(exc).__name__}: {exc}") from exc
            except ValueError as exc:
                logger.debug(f"Malformed JSON from {url}: {exc}")
                raise CatalogUnavailable(f"Malformed response from {url}") from exc

        if not isinstance(payload, list):
            raise CatalogUnavailable(f"Expected a JSON array from {url}, got {type(payload).__name__}")
        return payload

    async def get_item_by_id(self, item_id: int) -> CatalogItem | None:
        where = f"id = {int(item_id)} & rating_count >= {MIN_RATING_COUNT}"
        logger.debug(f"Catalog lookup for game {item_id}")
        items = parse_games(await self._query("/games", build_game_query(where, limit=1)))
        return items[0] if items else None

    async def get_items_by_genre(self, genre: str, page: int = 1, page_size: int = 10) -> list[CatalogItem]:
        offset, limit = page_bounds(page, page_size)
        where = f'genres.name = "{escape_query_string(genre)}" & rating_count >= {MIN_RATING_COUNT}'
        payload = await self._query("/games", build_game_query(where, offset=offset, limit=limit))
        return parse_games(payload)

    async def get_popular_items(self, page: int = 1, page_size: int = 10) -> list[CatalogItem]:
        """Highest rated released games, best first."""
        offset, limit = page_bounds(page, page_size)
        now = int(time.time())
        where = (
            f"rating != null & first_release_date != null & rating_count >= {MIN_RATING_COUNT} "
            f"& first_release_date < {now}"
        )
        payload = await self._query(
            "/games", build_game_query(where, offset=offset, limit=limit, sort="rating desc")
        )
        return parse_games(payload)

    async def search_items(self, text: str, page: int = 1, page_size: int = 10) -> list[CatalogItem]:
        """Free-text game search in the catalog's relevance order. Blank text lists games unfiltered."""
        offset, limit = page_bounds(page, page_size)
        body = build_game_query(
            f"rating_count >= {MIN_RATING_COUNT}",
            offset=offset,
            limit=limit,
            search=text.strip() or None,
        )
        return parse_games(await self._query("/games", body))

    async def get_items_by_developer(self, developer: str, page: int = 1, page_size: int = 10) -> list[CatalogItem]:
        """Games developed by the company with this exact name; [] if the company is unknown."""
        companies = await self._query(
            "/companies", f'fields id; where name = "{escape_query_string(developer)}"; limit 1;\n'
        )
        company_ids = [c["id"] for c in companies if isinstance(c, dict) and _is_int(c.get("id"))]
        if not company_ids:
            logger.debug(f"No catalog company named '{developer}'")
            return []

        offset, limit = page_bounds(page, page_size)
        where = (
            f"involved_companies.company = {company_ids[0]} & involved_companies.developer = true "
            f"& rating_count >= {MIN_RATING_COUNT}"
        )
        payload = await self._query("/games", build_game_query(where, offset=offset, limit=limit))
        return parse_games(payload)

    async def get_genres(self, limit: int = 30) -> list[str]:
        """Genre names known to the catalog, alphabetically."""
        _, limit = page_bounds(1, limit)
        payload = await self._query("/genres", f"fields id,name; sort name asc; limit {limit};\n")
        return _unique_names(payload)
