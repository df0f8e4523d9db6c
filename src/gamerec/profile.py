import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import Iterable, Mapping

from .library import LibraryEntry
from .config import (
    FAVORITE_MULTIPLIER,
    FAVORITE_RATING_THRESHOLD,
    MAX_FAVORITES,
    MAX_USER_RATING,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserPreferences:
    """Normalized genre and theme affinities derived from a user's library."""
    genres: Mapping[str, float] = field(default_factory=dict)
    themes: Mapping[str, float] = field(default_factory=dict)
    n_entries: int = 0
    n_rated: int = 0
    n_favorites: int = 0

    def top_genres(self, limit: int) -> list[str]:
        """Highest weighted genres; equal weights are ordered by name."""
        ranked = sorted(self.genres.items(), key=lambda kv: (-kv[1], kv[0]))
        return [genre for genre, _ in ranked[:limit]]


def _compute_weight(entry: LibraryEntry) -> float:
    """
    Compute the preference weight of a single library entry.

    Starts at 1.0; favorites are multiplied by FAVORITE_MULTIPLIER and a
    rating scales the weight by rating / 10. Both apply independently.
    """
    weight = 1.0
    if entry.is_favorite:
        weight *= FAVORITE_MULTIPLIER
    if entry.user_rating is not None:
        weight *= entry.user_rating / MAX_USER_RATING
    return weight


def _accumulate(scores: Mapping[str, float], tags: Iterable[str], weight: float) -> dict[str, float]:
    """Return a new mapping with `weight` added to every tag."""
    updated = dict(scores)
    for tag in tags:
        updated[tag] = updated.get(tag, 0.0) + weight
    return updated


def _normalize_scores(scores: Mapping[str, float]) -> dict[str, float]:
    """Divide by the maximum so the strongest tag is exactly 1.0."""
    if not scores:
        return {}
    max_value = max(scores.values())
    if max_value <= 0:
        return dict(scores)
    return {tag: value / max_value for tag, value in scores.items()}


def build_preferences(entries: list[LibraryEntry]) -> UserPreferences:
    """
    Build genre/theme preference vectors from library entries.

    Each entry's weight is added to every genre and every theme of its
    game, then both vectors are normalized by their maximum. Entries
    without resolved game detail contribute nothing.
    """
    tagged = [entry for entry in entries if entry.item is not None]
    skipped = len(entries) - len(tagged)
    if skipped:
        logger.debug(f"{skipped} library entries have no game detail; ignored for preferences")

    genre_scores = reduce(
        lambda acc, entry: _accumulate(acc, entry.item.genres, _compute_weight(entry)),
        tagged,
        {},
    )
    theme_scores = reduce(
        lambda acc, entry: _accumulate(acc, entry.item.themes, _compute_weight(entry)),
        tagged,
        {},
    )

    return UserPreferences(
        genres=_normalize_scores(genre_scores),
        themes=_normalize_scores(theme_scores),
        n_entries=len(entries),
        n_rated=sum(1 for e in entries if e.user_rating is not None),
        n_favorites=sum(1 for e in entries if e.is_favorite),
    )


def select_favorites(entries: list[LibraryEntry], limit: int = MAX_FAVORITES) -> list[LibraryEntry]:
    """
    Pick the strongest-signal entries to seed similar-game lookups.

    Keeps favorites and anything rated FAVORITE_RATING_THRESHOLD or higher,
    ordered by rating (unrated counts as 0), favorites first on equal
    rating, then by game id.
    """
    strong = [
        e for e in entries
        if e.is_favorite or (e.user_rating or 0) >= FAVORITE_RATING_THRESHOLD
    ]
    strong.sort(key=lambda e: (-(e.user_rating or 0), not e.is_favorite, e.game_id))
    return strong[:limit]
