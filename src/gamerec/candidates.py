import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from .catalog import CatalogItem, CatalogService
from .library import LibraryEntry
from .profile import UserPreferences
from .config import (
    MAX_SIMILAR_PER_FAVORITE,
    MAX_GENRES,
    MAX_ITEMS_PER_GENRE,
    SIMILAR_REASON_TEMPLATE,
    GENRE_REASON_TEMPLATE,
)

logger = logging.getLogger(__name__)


@dataclass
class RecommendationCandidate:
    item: CatalogItem
    reason: str
    score: float


Scorer = Callable[[CatalogItem], float]


async def gather_all(aws: Iterable[Awaitable]) -> list:
    """
    Run awaitables concurrently and return their results in order.

    If one fails, the others still in flight are cancelled before the
    error propagates.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class CandidateGenerator:
    """
    Produce recommendation candidates from two catalog sources:
    games similar to the user's favorites, and top games of their
    strongest genres. Games already in the library are never emitted.
    """

    def __init__(
        self,
        catalog: CatalogService,
        scorer: Scorer,
        max_similar_per_favorite: int = MAX_SIMILAR_PER_FAVORITE,
        max_genres: int = MAX_GENRES,
        max_items_per_genre: int = MAX_ITEMS_PER_GENRE,
    ):
        self.catalog = catalog
        self.scorer = scorer
        self.max_similar_per_favorite = max_similar_per_favorite
        self.max_genres = max_genres
        self.max_items_per_genre = max_items_per_genre

    def _candidate(self, item: CatalogItem, reason: str) -> RecommendationCandidate:
        return RecommendationCandidate(item=item, reason=reason, score=self.scorer(item))

    async def _similar_to(self, favorite: LibraryEntry, owned: set[int]) -> list[RecommendationCandidate]:
        game = await self.catalog.get_item_by_id(favorite.game_id)
        if game is None:
            logger.debug(f"Favorite {favorite.game_id} not in catalog; skipping")
            return []

        wanted = [s for s in game.similar_items[:self.max_similar_per_favorite] if s.id not in owned]
        details = await gather_all(self.catalog.get_item_by_id(s.id) for s in wanted)

        reason = SIMILAR_REASON_TEMPLATE.format(game.name)
        candidates = []
        for similar, item in zip(wanted, details):
            if item is None:
                logger.debug(f"Similar game {similar.id} ({similar.name}) not in catalog; skipping")
                continue
            if item.id in owned:
                continue
            candidates.append(self._candidate(item, reason))
        return candidates

    async def similar_candidates(
        self,
        favorites: list[LibraryEntry],
        owned: set[int],
    ) -> list[RecommendationCandidate]:
        """Candidates similar to each favorite, in favorite order."""
        batches = await gather_all(self._similar_to(f, owned) for f in favorites)
        return [c for batch in batches for c in batch]

    async def _from_genre(self, genre: str, owned: set[int]) -> list[RecommendationCandidate]:
        items = await self.catalog.get_items_by_genre(genre, 1, self.max_items_per_genre)
        reason = GENRE_REASON_TEMPLATE.format(genre)
        return [
            self._candidate(item, reason)
            for item in items[:self.max_items_per_genre]
            if item.id not in owned
        ]

    async def genre_candidates(
        self,
        preferences: UserPreferences,
        owned: set[int],
    ) -> list[RecommendationCandidate]:
        """Candidates from the user's top genres, strongest genre first."""
        genres = preferences.top_genres(self.max_genres)
        batches = await gather_all(self._from_genre(g, owned) for g in genres)
        return [c for batch in batches for c in batch]

    async def generate(
        self,
        preferences: UserPreferences,
        favorites: list[LibraryEntry],
        owned: set[int],
    ) -> list[RecommendationCandidate]:
        """Run both branches concurrently; similar-game candidates come first."""
        similar, by_genre = await gather_all([
            self.similar_candidates(favorites, owned),
            self.genre_candidates(preferences, owned),
        ])
        logger.debug(f"Generated {len(similar)} similar-game and {len(by_genre)} genre candidates")
        return similar + by_genre
