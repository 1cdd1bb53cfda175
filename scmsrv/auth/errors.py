"""Error kinds shared by the OAuth 1.0a and OAuth 2.0 flows.

Callers branch on ``OAuthError.kind`` instead of on exception subclasses.
The kind also decides the ``error_code`` appended to the redirect target
when a browser-facing flow fails.
"""

from __future__ import annotations

import enum


class OAuthErrorKind(enum.Enum):
    DENIED = "denied"
    PROTOCOL_ERROR = "protocol_error"
    PROVIDER_EXCHANGE_FAILURE = "provider_exchange_failure"
    UNKNOWN_CREDENTIAL = "unknown_credential"

    @property
    def error_code(self) -> str:
        """Value for the ``error_code`` redirect parameter."""
        if self is OAuthErrorKind.DENIED:
            return "access_denied"
        return "invalid_request"


class OAuthError(Exception):
    """Failure of an OAuth step, tagged with its kind."""

    def __init__(self, kind: OAuthErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"OAuthError({self.kind.name}, {self.message!r})"


class ApiError(Exception):
    """Failure of a synchronous API call.

    Rendered by an application exception handler as
    ``{"error": ..., "message": ...}`` with ``status_code``.
    """

    def __init__(self, status_code: int, error: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.message = message

    @classmethod
    def unauthorized(cls, message: str = "Authorization header is required") -> ApiError:
        return cls(401, "Unauthorized", message)

    @classmethod
    def bad_request(cls, message: str) -> ApiError:
        return cls(400, "Bad Request", message)

    @classmethod
    def not_found(cls, message: str) -> ApiError:
        return cls(404, "Not Found", message)
