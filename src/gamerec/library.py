import sqlite3
import json
import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from .catalog import CatalogItem
from .config import DB_PATH, MAX_USER_RATING

logger = logging.getLogger(__name__)


class GameStatus(str, Enum):
    PLAYING = "playing"
    COMPLETED = "completed"
    PLAN_TO_PLAY = "plan_to_play"
    DROPPED = "dropped"
    ON_HOLD = "on_hold"


@dataclass
class LibraryEntry:
    """A user's record of one game: ownership, rating and favorite flag."""
    game_id: int
    user_rating: int | None = None
    is_favorite: bool = False
    status: GameStatus = GameStatus.PLAYING
    item: CatalogItem | None = None
    date_added: datetime | None = None

    def __post_init__(self) -> None:
        if self.user_rating is not None and not 1 <= self.user_rating <= MAX_USER_RATING:
            raise ValueError(f"user_rating must be between 1 and {MAX_USER_RATING}, got {self.user_rating}")
        if not isinstance(self.status, GameStatus):
            self.status = GameStatus(self.status)


@dataclass
class GenreStats:
    genre: str
    game_count: int
    percentage: float
    favorite_count: int
    average_rating: float | None


class LibraryStore(Protocol):
    def get_user_library(self, user_id: str) -> list[LibraryEntry]: ...


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{val[:50]}...': {e}")
        return []


def _parse_status(value: str | None) -> GameStatus:
    try:
        return GameStatus(value)
    except ValueError:
        logger.warning(f"Unknown game status '{value}', treating as playing")
        return GameStatus.PLAYING


def _parse_rating(value, game_id: int) -> int | None:
    if value is None or 1 <= value <= MAX_USER_RATING:
        return value
    logger.warning(f"Ignoring out-of-range rating {value} for game {game_id}")
    return None


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable timestamp '{value}'")
        return None


class SQLiteLibraryStore:
    """
    SQLite-backed store for user libraries and the game detail they reference.

    Every operation opens its own connection, so the store can be used from
    worker threads (the recommender reads it through asyncio.to_thread).
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH

    @contextmanager
    def get_db(self, read_only: bool = False):
        """
        Get a database connection that commits on success and rolls back on error.

        Args:
            read_only: If True, open the file read-only and skip commit on exit.
                A missing file raises sqlite3.OperationalError instead of being created.
        """
        if read_only:
            conn = sqlite3.connect(f"{self.db_path.resolve().as_uri()}?mode=ro", uri=True)
        else:
            conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        try:
            yield conn
            if not read_only:
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        with self.get_db() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS games (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    rating REAL,
                    rating_count INTEGER,
                    genres TEXT,        -- JSON list
                    themes TEXT,        -- JSON list
                    summary TEXT,
                    cover_url TEXT,
                    release_date TEXT,
                    developer TEXT,
                    publisher TEXT
                );

                CREATE TABLE IF NOT EXISTS user_library (
                    user_id TEXT,
                    game_id INTEGER,
                    user_rating INTEGER,
                    is_favorite INTEGER DEFAULT 0,
                    status TEXT DEFAULT 'playing',
                    date_added TEXT,
                    PRIMARY KEY (user_id, game_id)
                );
            """)

    def _upsert_game(self, conn: sqlite3.Connection, item: CatalogItem) -> None:
        conn.execute("""
            INSERT INTO games (id, name, rating, rating_count, genres, themes,
                               summary, cover_url, release_date, developer, publisher)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                rating = excluded.rating,
                rating_count = excluded.rating_count,
                genres = excluded.genres,
                themes = excluded.themes,
                summary = excluded.summary,
                cover_url = excluded.cover_url,
                release_date = excluded.release_date,
                developer = excluded.developer,
                publisher = excluded.publisher
        """, (
            item.id, item.name, item.rating, item.rating_count,
            json.dumps(item.genres), json.dumps(item.themes),
            item.summary, item.cover_url,
            item.release_date.isoformat() if item.release_date else None,
            item.developer, item.publisher,
        ))

    def upsert_game(self, item: CatalogItem) -> None:
        with self.get_db() as conn:
            self._upsert_game(conn, item)

    def add_entry(self, user_id: str, entry: LibraryEntry) -> None:
        """Add a game to a user's library, or update rating/favorite/status if already owned."""
        date_added = (entry.date_added or datetime.now()).isoformat()
        with self.get_db() as conn:
            if entry.item is not None:
                self._upsert_game(conn, entry.item)
            conn.execute("""
                INSERT INTO user_library (user_id, game_id, user_rating, is_favorite, status, date_added)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, game_id) DO UPDATE SET
                    user_rating = excluded.user_rating,
                    is_favorite = excluded.is_favorite,
                    status = excluded.status
            """, (
                user_id, entry.game_id, entry.user_rating,
                int(entry.is_favorite), entry.status.value, date_added,
            ))

    def remove_entry(self, user_id: str, game_id: int) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM user_library WHERE user_id = ? AND game_id = ?",
                (user_id, game_id),
            )
            return cursor.rowcount > 0

    def get_user_library(self, user_id: str) -> list[LibraryEntry]:
        """
        Load a user's library with genre/theme detail resolved.

        Unknown users get an empty list, as does a database that was never
        initialised. Entries whose game row is missing are returned with
        item=None; an out-of-range stored rating is read as unrated.
        """
        if not self.db_path.exists():
            logger.debug(f"No library database at {self.db_path}")
            return []

        with self.get_db(read_only=True) as conn:
            has_schema = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'user_library'"
            ).fetchone()
            if not has_schema:
                logger.debug(f"Library database at {self.db_path} is not initialised")
                return []
            rows = conn.execute("""
                SELECT ul.game_id, ul.user_rating, ul.is_favorite, ul.status, ul.date_added,
                       g.id AS resolved_id, g.name, g.rating, g.rating_count, g.genres, g.themes,
                       g.summary, g.cover_url, g.release_date, g.developer, g.publisher
                FROM user_library ul
                LEFT JOIN games g ON g.id = ul.game_id
                WHERE ul.user_id = ?
                ORDER BY ul.date_added, ul.game_id
            """, (user_id,)).fetchall()

        entries = []
        for row in rows:
            item = None
            if row['resolved_id'] is not None:
                item = CatalogItem(
                    id=row['resolved_id'],
                    name=row['name'] or "",
                    rating=row['rating'] or 0.0,
                    rating_count=row['rating_count'] or 0,
                    genres=load_json(row['genres']),
                    themes=load_json(row['themes']),
                    summary=row['summary'] or "",
                    cover_url=row['cover_url'] or "",
                    release_date=_parse_timestamp(row['release_date']),
                    developer=row['developer'] or "",
                    publisher=row['publisher'] or "",
                )
            else:
                logger.debug(f"Library entry {row['game_id']} for {user_id} has no game detail")

            entries.append(LibraryEntry(
                game_id=row['game_id'],
                user_rating=_parse_rating(row['user_rating'], row['game_id']),
                is_favorite=bool(row['is_favorite']),
                status=_parse_status(row['status']),
                item=item,
                date_added=_parse_timestamp(row['date_added']),
            ))
        return entries

    def genre_statistics(self, user_id: str) -> list[GenreStats]:
        """Per-genre counts for a user's library, most common genre first."""
        return compute_genre_statistics(self.get_user_library(user_id))


def compute_genre_statistics(entries: list[LibraryEntry]) -> list[GenreStats]:
    if not entries:
        return []

    total = len(entries)
    counts: dict[str, int] = defaultdict(int)
    favorites: dict[str, int] = defaultdict(int)
    ratings: dict[str, list[int]] = defaultdict(list)

    for entry in entries:
        if entry.item is None:
            continue
        for genre in entry.item.genres:
            counts[genre] += 1
            if entry.is_favorite:
                favorites[genre] += 1
            if entry.user_rating is not None:
                ratings[genre].append(entry.user_rating)

    stats = [
        GenreStats(
            genre=genre,
            game_count=count,
            percentage=round(count / total * 100, 2),
            favorite_count=favorites[genre],
            average_rating=sum(ratings[genre]) / len(ratings[genre]) if ratings[genre] else None,
        )
        for genre, count in counts.items()
    ]
    stats.sort(key=lambda s: (-s.game_count, s.genre))
    return stats
