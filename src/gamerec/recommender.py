import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Iterable

from .catalog import CatalogItem, CatalogService
from .candidates import CandidateGenerator, RecommendationCandidate
from .library import LibraryStore
from .profile import UserPreferences, build_preferences, select_favorites
from .config import (
    SCORE_WEIGHTS,
    MAX_SHARED_GENRES,
    MIN_LIBRARY_SIZE,
    DEFAULT_RECOMMENDATION_COUNT,
    REQUEST_TIMEOUT,
    POPULAR_REASON,
    MAX_PAGE_SIZE,
)

logger = logging.getLogger(__name__)


def _clamp_score(value: float) -> float:
    return max(0.0, min(value, 1.0))


class ScoringEngine:
    """
    Blend catalog rating with the user's genre and theme affinities.

    score = rating/100 * w_rating + genre_match * w_genre + theme_match * w_theme

    where a match is the mean preference weight over the item's tags that
    appear in the user's vector (0 when none do).
    """

    def __init__(self, weights: Mapping[str, float] | None = None):
        self.weights = dict(SCORE_WEIGHTS if weights is None else weights)

    @staticmethod
    def _mean_preference(tags: Iterable[str], preferences: Mapping[str, float]) -> float:
        matched = [preferences[tag] for tag in tags if tag in preferences]
        return sum(matched) / len(matched) if matched else 0.0

    def score(self, item: CatalogItem, preferences: UserPreferences) -> float:
        rating_score = item.rating / 100
        genre_score = self._mean_preference(item.genres, preferences.genres)
        theme_score = self._mean_preference(item.themes, preferences.themes)

        score = (
            rating_score * self.weights['rating']
            + genre_score * self.weights['genre']
            + theme_score * self.weights['theme']
        )
        return _clamp_score(score)


def dedupe_candidates(candidates: list[RecommendationCandidate]) -> list[RecommendationCandidate]:
    """Keep the highest scoring candidate per game; the first one wins a tie."""
    best: dict[int, RecommendationCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.item.id)
        if current is None or candidate.score > current.score:
            best[candidate.item.id] = candidate
    return list(best.values())


def diversify(
    candidates: list[RecommendationCandidate],
    n: int,
    max_shared_genres: int = MAX_SHARED_GENRES,
) -> list[RecommendationCandidate]:
    """
    Select the top n candidates while limiting genre concentration.

    Walks candidates best-first and rejects any candidate with more than
    max_shared_genres genres already represented by earlier picks.
    """
    if n <= 0:
        return []

    results: list[RecommendationCandidate] = []
    represented: set[str] = set()
    skipped = 0

    for candidate in sorted(candidates, key=lambda c: -c.score):
        genres = set(candidate.item.genres)
        if len(genres & represented) > max_shared_genres:
            skipped += 1
            continue

        results.append(candidate)
        represented |= genres

        if len(results) >= n:
            break

    if len(results) < n:
        logger.debug(
            f"Diversity filter returned {len(results)}/{n} results "
            f"({skipped} skipped for sharing more than {max_shared_genres} genres)"
        )

    return results


@dataclass(frozen=True)
class Ok:
    candidates: list[RecommendationCandidate]


@dataclass(frozen=True)
class Err:
    step: str
    error: BaseException


@dataclass(frozen=True)
class InsufficientHistory:
    n_entries: int


PipelineResult = Ok | Err | InsufficientHistory


@dataclass
class _Progress:
    """Pipeline step currently running, reported when the step fails."""
    step: str = "library"
    owned: frozenset[int] = frozenset()

    def enter(self, step: str) -> None:
        self.step = step


class GameRecommender:
    """
    Personalized game recommendations with a popularity fallback.

    Users with fewer than MIN_LIBRARY_SIZE games get the catalog's most
    popular games. Everyone else goes through preference analysis,
    candidate generation, scoring and diversity filtering; if any of that
    fails or runs past the timeout, the popular games are returned instead,
    minus any the user already owns.
    `recommend` never raises.
    """

    def __init__(
        self,
        library_store: LibraryStore,
        catalog: CatalogService,
        scoring_engine: ScoringEngine | None = None,
        min_library_size: int = MIN_LIBRARY_SIZE,
    ):
        self.library_store = library_store
        self.catalog = catalog
        self.scoring_engine = scoring_engine or ScoringEngine()
        self.min_library_size = min_library_size

    async def popular(
        self,
        count: int,
        exclude: Iterable[int] = (),
    ) -> list[RecommendationCandidate]:
        """
        Most popular catalog games, scored by rating alone.

        Games in `exclude` are dropped; the page is widened by that many
        items (up to MAX_PAGE_SIZE) so the result is not cut short.
        """
        if count <= 0:
            return []
        exclude = set(exclude)
        try:
            items = await self.catalog.get_popular_items(1, min(count + len(exclude), MAX_PAGE_SIZE))
        except Exception as exc:
            logger.error(f"Popular games unavailable: {type(exc).__name__}: {exc}")
            return []
        return [
            RecommendationCandidate(item=item, reason=POPULAR_REASON, score=_clamp_score(item.rating / 100))
            for item in items
            if item.id not in exclude
        ][:count]

    async def _personalized(self, user_id: str, count: int, progress: _Progress) -> PipelineResult:
        try:
            entries = await asyncio.to_thread(self.library_store.get_user_library, user_id)
            progress.owned = frozenset(entry.game_id for entry in entries)
            if len(entries) < self.min_library_size:
                return InsufficientHistory(len(entries))

            progress.enter("preferences")
            preferences = build_preferences(entries)

            progress.enter("favorites")
            favorites = select_favorites(entries)

            progress.enter("candidates")
            generator = CandidateGenerator(
                self.catalog,
                scorer=lambda item: self.scoring_engine.score(item, preferences),
            )
            candidates = await generator.generate(preferences, favorites, set(progress.owned))

            progress.enter("diversity")
            return Ok(diversify(dedupe_candidates(candidates), count))
        except Exception as exc:
            return Err(progress.step, exc)

    async def recommend(
        self,
        user_id: str,
        count: int = DEFAULT_RECOMMENDATION_COUNT,
        timeout: float | None = REQUEST_TIMEOUT,
    ) -> list[RecommendationCandidate]:
        """Ordered recommendations for a user, at most `count` long."""
        if count <= 0:
            return []

        progress = _Progress()
        try:
            result = await asyncio.wait_for(self._personalized(user_id, count, progress), timeout)
        except asyncio.TimeoutError as exc:
            result = Err(progress.step, exc)

        if isinstance(result, Ok):
            logger.debug(f"Personalized recommendations for {user_id}: {len(result.candidates)}")
            return result.candidates

        if isinstance(result, InsufficientHistory):
            logger.info(
                f"User {user_id} has {result.n_entries} games (< {self.min_library_size}); "
                f"using popular games"
            )
        else:
            reason = "timed out" if isinstance(result.error, asyncio.TimeoutError) else (
                f"{type(result.error).__name__}: {result.error}"
            )
            logger.error(
                f"Personalized recommendations failed for user {user_id} "
                f"at step '{result.step}' ({reason}); using popular games"
            )
        return await self.popular(count, exclude=progress.owned)

    def recommend_sync(
        self,
        user_id: str,
        count: int = DEFAULT_RECOMMENDATION_COUNT,
        timeout: float | None = REQUEST_TIMEOUT,
    ) -> list[RecommendationCandidate]:
        return asyncio.run(self.recommend(user_id, count, timeout))
