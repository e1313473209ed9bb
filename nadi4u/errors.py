"""Error taxonomy and backend error classifiers."""

from typing import Optional


class Nadi4uError(Exception):
    """Base class for all client errors."""


class AuthError(Nadi4uError):
    """Not logged in, missing saved credentials, or login rejected by the backend."""


class NetworkError(Nadi4uError):
    """The backend could not be reached or did not answer in time."""


class StorageError(Nadi4uError):
    """A storage backend failed. Only used internally; callers never see it."""


class ApiError(Nadi4uError):
    """Non-2xx response from the REST backend."""

    def __init__(self, status: int, body: str, message: Optional[str] = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message or f"API Error: {status} - {body}")


class SchemaDriftError(ApiError):
    """The backend rejected a projection because a column or relation is missing."""


class SessionExpiredError(Nadi4uError):
    """The bearer token was rejected as expired.

    Resolved inside RequestExecutor into either a retried result or an
    AuthError/ApiError; never raised to callers.
    """

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"Session expired: {status} - {body}")


JWT_EXPIRED_MARKERS = ("jwt expired", "pgrst303")

SCHEMA_DRIFT_MARKERS = (
    "42703",  # postgres undefined_column
    "pgrst204",  # column not found in schema cache
    "pgrst200",  # relationship not found for an embedded resource
    "could not find a relationship",
)


def is_jwt_expired(status: int, body: Optional[str]) -> bool:
    """Return True when a response means the bearer token has expired.

    Only an HTTP 401 whose body mentions "jwt expired" or the PostgREST code
    PGRST303 counts. Other 401s (bad apikey, missing token) are not recoverable
    by logging in again with the same credentials.
    """
    if int(status) != 401:
        return False
    normalized = str(body or "").lower()
    return any(marker in normalized for marker in JWT_EXPIRED_MARKERS)


def is_schema_drift(status: int, body: Optional[str]) -> bool:
    """Return True when a response says a selected column or relation is missing."""
    if int(status) < 400:
        return False
    normalized = str(body or "").lower()
    if any(marker in normalized for marker in SCHEMA_DRIFT_MARKERS):
        return True
    return "column" in normalized and "does not exist" in normalized
