"""Error taxonomy shared by the store, tools, runner and HTTP layer.

Each error carries a ``kind`` string that is surfaced verbatim in
terminal stream events so clients can branch on it.
"""

from __future__ import annotations


class AtelierError(Exception):
    """Base class for all application errors."""

    kind = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AtelierError):
    """Missing or malformed request fields."""

    kind = "validation_error"


class ConfigurationError(AtelierError):
    """A required credential or upstream setting is absent."""

    kind = "configuration_error"


class AccessDeniedError(AtelierError):
    """Path escapes the workspace or touches a restricted subtree."""

    kind = "access_denied"


class UpstreamError(AtelierError):
    """The model provider failed or returned an error."""

    kind = "upstream_error"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(AtelierError):
    """Operating on a conversation that does not exist or has expired."""

    kind = "not_found"


class MaxRoundsExceeded(AtelierError):
    kind = "max_rounds_exceeded"

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Agent exceeded the maximum of {max_rounds} tool rounds")
        self.max_rounds = max_rounds
