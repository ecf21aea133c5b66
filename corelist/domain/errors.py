class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(Exception):
    """Transient provider or network failure. Retrying may succeed."""


class PermanentFailure(Exception):
    """Non-retriable failure due to invalid input or unsupported operations."""


class NotFound(Exception):
    """Requested resource was not found."""


class AuthExpired(Exception):
    """Provider credentials expired and could not be refreshed. Re-authentication is required."""


class LibraryUnavailable(Exception):
    """No candidate library data could be fetched from any core source."""


class PlaylistStoreUnavailable(Exception):
    """The destination playlist could not be resolved, created or read."""
