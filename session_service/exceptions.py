from typing import Optional


class SessionServiceError(Exception):
    """Base class for errors raised by the session service."""


class ProviderRefreshError(SessionServiceError):
    """Raised when the identity provider rejects or garbles a refresh request.

    The full response body is kept on ``body`` for diagnostics; the message
    quotes only a short prefix of it, since the message can end up in the
    session record.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SessionTooLargeError(SessionServiceError):
    """Raised when an encoded session needs more cookie chunks than allowed."""

    def __init__(self, chunk_count: int, max_chunks: int) -> None:
        super().__init__(f"Session payload needs {chunk_count} cookie chunks; the limit is {max_chunks}")
        self.chunk_count = chunk_count
        self.max_chunks = max_chunks
