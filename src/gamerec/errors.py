"""Exception types raised inside the recommendation engine."""


class GameRecError(Exception):
    """Base class for gamerec errors."""


class CatalogUnavailable(GameRecError):
    """The catalog could not be reached or returned an unusable response."""


class DataInconsistency(GameRecError):
    """A catalog or library record references data that cannot be resolved."""
