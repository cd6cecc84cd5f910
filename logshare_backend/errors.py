from __future__ import annotations

from typing import Any


class LogShareError(Exception):
    """Base class for errors raised by the session/cache layer."""

    status_code = 500


class InvalidIdentifier(LogShareError, ValueError):
    status_code = 400

    def __init__(self, message: str = "Invalid session id") -> None:
        super().__init__(message)


class PathEscape(LogShareError):
    """A resolved session path fell outside the storage root."""


class SessionNotFound(LogShareError, FileNotFoundError):
    status_code = 404


class UploadRejected(LogShareError):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class GenerationFailed(LogShareError):
    """The converter did not produce an output for a session.

    ``result`` is the converter's tagged result; ``diagnostic`` is whatever the
    tool printed before failing. Neither is meant for client responses.
    """

    def __init__(self, session_id: str, result: Any, diagnostic: str = "") -> None:
        message = f"HTML generation failed for session {session_id}"
        if diagnostic:
            message = f"{message}: {diagnostic}"
        super().__init__(message)
        self.session_id = session_id
        self.result = result
        self.diagnostic = diagnostic


class RateLimited(LogShareError):
    status_code = 429

    def __init__(self, limiter: str, result: Any) -> None:
        super().__init__("Rate limit exceeded. Please try again later.")
        self.limiter = limiter
        # ratelimit.RateLimitResult; carries the reset time for headers.
        self.result = result


class ToolNotFound(LogShareError):
    pass


class GenerationConfigError(LogShareError):
    pass
