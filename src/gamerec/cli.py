import argparse
import asyncio
import json
import logging
from pathlib import Path

from tqdm import tqdm

from .catalog import CatalogItem, IGDBCatalog
from .candidates import RecommendationCandidate
from .config import (
    DB_PATH,
    DEFAULT_RECOMMENDATION_COUNT,
    IGDB_CLIENT_ID,
    REQUEST_TIMEOUT,
)
from .library import LibraryEntry, SQLiteLibraryStore
from .profile import build_preferences
from .recommender import GameRecommender

logger = logging.getLogger(__name__)


def _validate_user_id(user_id: str) -> str:
    """Strip whitespace and reject empty user ids."""
    cleaned = (user_id or "").strip()
    if not cleaned:
        raise ValueError("User id must not be empty")
    return cleaned


def _game_from_dict(data: dict) -> CatalogItem:
    return CatalogItem(
        id=int(data['id']),
        name=data.get('name', ''),
        rating=float(data.get('rating') or 0.0),
        rating_count=int(data.get('rating_count') or 0),
        genres=list(dict.fromkeys(data.get('genres') or [])),
        themes=list(dict.fromkeys(data.get('themes') or [])),
        summary=data.get('summary') or '',
        cover_url=data.get('cover_url') or '',
        developer=data.get('developer') or '',
        publisher=data.get('publisher') or '',
    )


def _entry_from_dict(data: dict) -> LibraryEntry:
    return LibraryEntry(
        game_id=int(data['game_id']),
        user_rating=data.get('user_rating'),
        is_favorite=bool(data.get('is_favorite', False)),
        status=data.get('status', 'playing'),
    )


def _get_store(args: argparse.Namespace) -> SQLiteLibraryStore:
    return SQLiteLibraryStore(getattr(args, 'db', None) or DB_PATH)


def cmd_init(args: argparse.Namespace) -> None:
    """Create the library database schema."""
    store = _get_store(args)
    store.init_db()
    logger.info(f"Initialized library database at {store.db_path}")


def cmd_import(args: argparse.Namespace) -> None:
    """Import games and user libraries from a JSON file."""
    path = Path(args.file)
    data = json.loads(path.read_text())

    store = _get_store(args)
    store.init_db()

    games = data.get('games', [])
    for game in tqdm(games, desc="Games", disable=not games):
        store.upsert_game(_game_from_dict(game))

    libraries = data.get('library', {})
    n_entries = 0
    for user_id, entries in libraries.items():
        user_id = _validate_user_id(user_id)
        for entry in tqdm(entries, desc=user_id, leave=False):
            store.add_entry(user_id, _entry_from_dict(entry))
            n_entries += 1

    logger.info(f"Imported {len(games)} games and {n_entries} library entries for {len(libraries)} users")


def _output_recommendations(
    recs: list[RecommendationCandidate],
    args: argparse.Namespace,
    user_id: str,
) -> None:
    """Format and log recommendations in the requested format."""
    output_format = getattr(args, 'format', 'text')

    if output_format == 'json':
        output = [
            {
                "id": r.item.id,
                "name": r.item.name,
                "score": round(r.score, 3),
                "reason": r.reason,
                "rating": r.item.rating,
                "genres": r.item.genres,
                "themes": r.item.themes,
                "cover_url": r.item.cover_url,
            }
            for r in recs
        ]
        logger.info(json.dumps(output, indent=2))
        return

    logger.info(f"\nTop {len(recs)} recommendations for {user_id}:")
    for i, r in enumerate(recs, 1):
        genres = ", ".join(r.item.genres) or "no genres"
        logger.info(f"{i}. {r.item.name} ({genres}) - Score: {r.score:.2f}")
        logger.info(f"   Why: {r.reason}")


async def _recommend(
    store: SQLiteLibraryStore,
    user_id: str,
    limit: int,
    timeout: float,
) -> list[RecommendationCandidate]:
    async with IGDBCatalog() as catalog:
        return await GameRecommender(store, catalog).recommend(user_id, limit, timeout)


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations."""
    user_id = _validate_user_id(args.user_id)
    if not IGDB_CLIENT_ID:
        logger.warning("GAMEREC_IGDB_CLIENT_ID is not set; catalog requests will likely be rejected")

    recs = asyncio.run(_recommend(_get_store(args), user_id, args.limit, args.timeout))
    _output_recommendations(recs, args, user_id)


async def _search(text: str, developer: bool, limit: int) -> list[CatalogItem]:
    async with IGDBCatalog() as catalog:
        if developer:
            return await catalog.get_items_by_developer(text, 1, limit)
        return await catalog.search_items(text, 1, limit)


def cmd_search(args: argparse.Namespace) -> None:
    """Search the catalog by title text or developer name."""
    items = asyncio.run(_search(args.text, args.developer, args.limit))
    if not items:
        logger.info(f"No catalog games match '{args.text}'")
        return

    for item in items:
        genres = ", ".join(item.genres) or "no genres"
        year = f" {item.release_date.year}" if item.release_date else ""
        logger.info(f"[{item.id}] {item.name}{year} ({genres}) - rating {item.rating:.0f}")


async def _genres() -> list[str]:
    async with IGDBCatalog() as catalog:
        return await catalog.get_genres()


def cmd_genres(args: argparse.Namespace) -> None:
    """List the catalog's genres."""
    for name in asyncio.run(_genres()):
        logger.info(name)


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's preference profile."""
    user_id = _validate_user_id(args.user_id)
    store = _get_store(args)
    entries = store.get_user_library(user_id)

    if not entries:
        logger.error(f"No library for '{user_id}'. Run: gamerec import <file>")
        return

    preferences = build_preferences(entries)

    logger.info(f"\nProfile for {user_id}")
    logger.info(
        f"  Games: {preferences.n_entries} "
        f"({preferences.n_rated} rated, {preferences.n_favorites} favorites)"
    )

    if preferences.genres:
        logger.info("\nTop genres:")
        for g, score in sorted(preferences.genres.items(), key=lambda x: (-x[1], x[0]))[:10]:
            logger.info(f"  {g}: {score:.2f}")

    if preferences.themes:
        logger.info("\nTop themes:")
        for t, score in sorted(preferences.themes.items(), key=lambda x: (-x[1], x[0]))[:10]:
            logger.info(f"  {t}: {score:.2f}")

    stats = store.genre_statistics(user_id)
    if stats:
        logger.info("\nGenres in library:")
        for s in stats:
            avg = f", avg rating {s.average_rating:.1f}" if s.average_rating is not None else ""
            logger.info(f"  {s.genre}: {s.game_count} games ({s.percentage:.1f}%), {s.favorite_count} favorites{avg}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Game recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", type=Path, help=f"Library database path (default: {DB_PATH})")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the library database")
    init_parser.set_defaults(func=cmd_init)

    import_parser = subparsers.add_parser("import", help="Import games and libraries from JSON")
    import_parser.add_argument("file", help="Input JSON file path")
    import_parser.set_defaults(func=cmd_import)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user_id", help="User id")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_RECOMMENDATION_COUNT,
                            help="Number of recommendations")
    rec_parser.add_argument("--timeout", type=float, default=REQUEST_TIMEOUT,
                            help="Seconds before falling back to popular games")
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text',
                            help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    profile_parser = subparsers.add_parser("profile", help="Show a user's preference profile")
    profile_parser.add_argument("user_id", help="User id")
    profile_parser.set_defaults(func=cmd_profile)

    search_parser = subparsers.add_parser("search", help="Search the game catalog")
    search_parser.add_argument("text", help="Title text, or a developer name with --developer")
    search_parser.add_argument("--developer", action="store_true", help="Match games by developer name")
    search_parser.add_argument("--limit", type=int, default=DEFAULT_RECOMMENDATION_COUNT,
                               help="Number of results")
    search_parser.set_defaults(func=cmd_search)

    genres_parser = subparsers.add_parser("genres", help="List catalog genres")
    genres_parser.set_defaults(func=cmd_genres)

    args = parser.parse_args(argv)

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)
