"""Error taxonomy for page operations.

Every error carries the HTTP status it maps to, so the web layer can
translate any of them with a single handler.
"""

from typing import Any


class PageError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, /, *, field: str | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.field is not None:
            body["field"] = self.field
        body.update(self.details)
        return body


class ValidationError(PageError):
    """Candidate payload failed structural or URL validation."""

    status_code = 400
    code = "invalid_request"


class ConfigurationError(PageError):
    """The page is missing configuration an operation needs."""

    status_code = 400
    code = "not_configured"


class AuthenticationError(PageError):
    """Missing or invalid identity credential."""

    status_code = 401
    code = "unauthenticated"


class AuthorizationError(PageError):
    """Valid credential, but it does not cover the required wallet."""

    status_code = 401
    code = "not_owner"


class AccessDeniedError(PageError):
    """Token gate check failed."""

    status_code = 403
    code = "access_denied"

    def __init__(self, reason: str, *, token_symbol: str, balance: str, **details: Any):
        super().__init__(
            "Access denied",
            message=reason,
            tokenSymbol=token_symbol,
            balance=balance,
            **details,
        )


class NotFoundError(PageError):
    status_code = 404
    code = "not_found"


class ConflictError(PageError):
    """Slug already taken by another wallet."""

    status_code = 400
    code = "slug_taken"


class StaleWriteError(ConflictError):
    """Optimistic update rejected because the record changed underneath."""

    status_code = 409
    code = "stale_write"


class ServiceError(PageError):
    """A downstream store, ledger or identity provider failed."""

    status_code = 500
    code = "service_unavailable"
