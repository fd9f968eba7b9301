"""Exceptions raised by contextsift."""


class ContextSiftError(Exception):
    """Base class for all contextsift errors."""


class InvalidQueryError(ContextSiftError, ValueError):
    """Raised when a query is empty or too short to search for.

    Raised before any channel work begins.
    """


class TotalChannelFailureError(ContextSiftError):
    """Raised when every signal channel was unavailable for every candidate.

    This is the only failure surfaced by a search; callers are expected to show
    a degraded-mode message.
    """

    def __init__(self, message: str, reasons: dict[str, str] | None = None):
        super().__init__(message)
        self.reasons = reasons or {}


class ChannelUnavailableError(ContextSiftError):
    """Raised by a model service that is not ready, errored, or timed out.

    Recovered locally by the engine through weight redistribution.
    """


class MalformedModelOutputError(ContextSiftError):
    """Raised when model output cannot be interpreted.

    Recovered locally as a neutral score.
    """


class CacheWriteError(ContextSiftError):
    """Raised by a key-value store when a write cannot be completed."""


class StorageQuotaExceeded(CacheWriteError):
    """Raised by a key-value store that has run out of space."""
