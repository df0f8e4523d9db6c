import asyncio
import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from gamerec.errors import CatalogUnavailable  # noqa: E402


class FakeCatalog:
    """In-memory catalog recording every lookup it serves."""

    def __init__(
        self,
        items=(),
        by_genre=None,
        popular=(),
        failing_ids=(),
        fail_genres=False,
        fail_popular=False,
        delay: float = 0.0,
    ):
        self.items = {item.id: item for item in items}
        self.by_genre = by_genre or {}
        self.popular = list(popular)
        self.failing_ids = set(failing_ids)
        self.fail_genres = fail_genres
        self.fail_popular = fail_popular
        self.delay = delay
        self.calls = []

    async def get_item_by_id(self, item_id):
        self.calls.append(("id", item_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if item_id in self.failing_ids:
            raise CatalogUnavailable(f"network error fetching {item_id}")
        return self.items.get(item_id)

    async def get_items_by_genre(self, genre, page, page_size):
        self.calls.append(("genre", genre, page, page_size))
        if self.fail_genres:
            raise CatalogUnavailable(f"network error fetching genre {genre}")
        return list(self.by_genre.get(genre, []))[:page_size]

    async def get_popular_items(self, page, page_size):
        self.calls.append(("popular", page, page_size))
        if self.fail_popular:
            raise CatalogUnavailable("network error fetching popular games")
        return self.popular[:page_size]


class MemoryLibraryStore:
    def __init__(self, libraries=None, error: Exception | None = None):
        self.libraries = libraries or {}
        self.error = error

    def get_user_library(self, user_id):
        if self.error is not None:
            raise self.error
        return list(self.libraries.get(user_id, []))


@pytest.fixture
def make_catalog():
    return FakeCatalog


@pytest.fixture
def make_store():
    return MemoryLibraryStore


@pytest.fixture
def fresh_config(monkeypatch):
    """
    Reload config so environment overrides apply; restore defaults afterwards.
    """
    import gamerec.config as config

    yield lambda: importlib.reload(config)

    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def sqlite_store(tmp_path):
    from gamerec.library import SQLiteLibraryStore

    store = SQLiteLibraryStore(tmp_path / "test.db")
    store.init_db()
    return store
