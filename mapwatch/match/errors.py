"""Exceptions raised by the matching pipeline."""


class MatchingError(Exception):
    """Base class for matching errors."""


class CatalogUnavailableError(MatchingError):
    """Reference or competitor catalog is empty; the run cannot start."""


class MatchingAlreadyRunningError(MatchingError):
    """Another matching run holds the run lock."""

    def __init__(self, message: str = "Matching already running"):
        super().__init__(message)


class EmbeddingError(MatchingError):
    """Embedding provider failed for one text."""


class ProductNotFoundError(MatchingError):
    """Referenced product does not exist."""


class MatchNotFoundError(MatchingError):
    """Referenced match does not exist."""


class DuplicateMatchError(MatchingError):
    """A match between the two products already exists."""
