"""
core/errors.py -- Exception taxonomy shared by every layer.

Each class fixes a machine-readable code and an HTTP status. Route handlers
never build error responses by hand: they raise one of these and the
AuthApiError handler in api/main.py renders the envelope.

User-facing `message` values are safe to show. `details` may carry internal
text (driver errors, provider responses); the API layer only emits it when
DEBUG=true.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from enum import Enum


class StoreFailure(str, Enum):
    """Classification of a persistence failure, decided once at the adapter boundary.

    Callers branch on this value instead of inspecting driver exceptions.
    """

    CONNECTION = "connection"  # database unreachable
    SCHEMA_MISSING = "schema_missing"  # tables not created / migrations not run
    CONSTRAINT = "constraint"  # unique / foreign key violation
    UNAVAILABLE = "unavailable"  # circuit breaker is open
    QUERY = "query"  # anything else


class AuthApiError(Exception):
    """Base class for errors that map directly to an HTTP response."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, details: str | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        # Extra response headers (e.g. X-RateLimit-* on a 429).
        self.headers: dict[str, str] = {}
        super().__init__(self.message)


class ValidationError(AuthApiError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Validation failed"


class AuthenticationError(AuthApiError):
    code = "AUTHENTICATION_ERROR"
    status_code = 401
    default_message = "Authentication failed"


class AuthorizationError(AuthApiError):
    code = "AUTHORIZATION_ERROR"
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(AuthApiError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Record not found"


class ConflictError(AuthApiError):
    code = "CONFLICT"
    status_code = 409
    default_message = "A record with this information already exists"


class RateLimitError(AuthApiError):
    code = "RATE_LIMIT_ERROR"
    status_code = 429
    default_message = "Too many requests"


class DatabaseError(AuthApiError):
    code = "DATABASE_ERROR"
    status_code = 500
    default_message = "Database error occurred"


class ServiceUnavailable(AuthApiError):
    """Infrastructure failure. `failure` records why, for callers that route on it."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again later."

    def __init__(
        self,
        message: str | None = None,
        details: str | None = None,
        failure: StoreFailure = StoreFailure.QUERY,
    ) -> None:
        super().__init__(message, details)
        self.failure = failure


class CircuitOpenError(ServiceUnavailable):
    """Raised by CircuitBreaker while OPEN. Indistinguishable from ServiceUnavailable to callers."""

    def __init__(self, breaker_name: str) -> None:
        self.breaker_name = breaker_name
        super().__init__(details=f"circuit '{breaker_name}' is open", failure=StoreFailure.UNAVAILABLE)


class ExternalServiceError(AuthApiError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    default_message = "External service error"


class VerificationEmailError(ExternalServiceError):
    """Resending a verification email failed. Reported as a 500, not a 502."""

    status_code = 500
    default_message = "Failed to send verification email"
