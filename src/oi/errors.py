"""Exception hierarchy for oi."""

from __future__ import annotations


class OiError(Exception):
    """Base error.  ``reason`` is the short, human-readable explanation."""

    def __init__(self, message: str = "", reason: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason or message


class SetupError(OiError):
    """Configuration, role, model or cache-read problem.  Never retried."""


class CacheError(OiError):
    """The conversation cache could not be read or written."""


class NoMatchesError(CacheError):
    """No saved conversation matches the given id or title."""


class ManyMatchesError(CacheError):
    """Several saved conversations match the given id prefix or title."""


class StreamError(OiError):
    """The backend failed in the middle of a round.  Eligible for retry."""


class ApiError(StreamError):
    """The backend answered with an HTTP or API level error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{message}{suffix}", reason="The API returned an error.")
        self.status_code = status_code


class ToolError(OiError):
    """A tool call could not be executed."""


class NoContentError(Exception):
    """Nothing is buffered on the stream yet.  Expected while polling."""
