"""
Configuration constants for the game recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Deployment settings can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Library store
DB_PATH = Path(os.environ.get("GAMEREC_DB", "data/gamerec.db"))

# Catalog (IGDB-compatible API)
IGDB_BASE_URL = os.environ.get("GAMEREC_IGDB_BASE_URL", "https://api.igdb.com/v4").rstrip("/")
IGDB_CLIENT_ID = os.environ.get("GAMEREC_IGDB_CLIENT_ID", "")
IGDB_ACCESS_TOKEN = os.environ.get("GAMEREC_IGDB_ACCESS_TOKEN", "")
HTTP_TIMEOUT = _get_float_env("GAMEREC_HTTP_TIMEOUT", 30.0, min_val=1.0)
DEFAULT_MAX_CONCURRENT = _get_int_env("GAMEREC_MAX_CONCURRENT", 5, min_val=1)

# Whole personalized pipeline, in seconds
REQUEST_TIMEOUT = _get_float_env("GAMEREC_REQUEST_TIMEOUT", 20.0, min_val=0.1)

# Catalog query limits
MIN_RATING_COUNT = 20  # Games with fewer ratings are ignored by the catalog
MAX_PAGE_SIZE = 50

# Recommender Configuration
MIN_LIBRARY_SIZE = 3  # Below this the user gets popular games
DEFAULT_RECOMMENDATION_COUNT = 10
MAX_FAVORITES = 3
MAX_SIMILAR_PER_FAVORITE = 3
MAX_GENRES = 3
MAX_ITEMS_PER_GENRE = 3

# Preference weights
FAVORITE_MULTIPLIER = 1.5
FAVORITE_RATING_THRESHOLD = 8  # Rated this or higher counts as a favorite seed
MAX_USER_RATING = 10

# Scoring weights (sum to 1.0)
SCORE_WEIGHTS = {
    'rating': 0.35,
    'genre': 0.40,
    'theme': 0.25,
}

# Diversity: reject a candidate when more genres than this are already represented
MAX_SHARED_GENRES = 2

# Recommendation reasons
POPULAR_REASON = "Popular among players"
SIMILAR_REASON_TEMPLATE = "Because you enjoyed {}"
GENRE_REASON_TEMPLATE = "Based on your interest in {} games"
