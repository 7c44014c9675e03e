"""
Sync error taxonomy.

Remote failures are classified by HTTP status class so callers can pick a
recovery path without inspecting response bodies:

    401 / 403   → AuthError        (one credential refresh + single retry)
    429         → RateLimitError   (retry after the indicated delay)
    5xx         → NetworkError     (transient, exponential backoff)
    other 4xx   → ValidationError  (permanent; the record is parked)

Transport failures and timeouts are NetworkError as well.
"""
from typing import Optional

import httpx

DEFAULT_RATE_LIMIT_DELAY = 60.0


class SyncError(RuntimeError):
    """Base class for every error raised by the sync engine."""


class NetworkError(SyncError):
    """Transient transport or server failure. Retryable with backoff."""


class AuthError(SyncError):
    """The remote API rejected the bearer credential."""


class NoCredentialsError(AuthError):
    """No stored credential exists; setup has not been run."""


class CredentialExpiredError(AuthError):
    """The stored access token is past its expiry."""


class RateLimitError(SyncError):
    """The remote API asked us to slow down."""

    def __init__(self, message: str, retry_after: float = DEFAULT_RATE_LIMIT_DELAY):
        super().__init__(message)
        self.retry_after = retry_after if retry_after > 0 else DEFAULT_RATE_LIMIT_DELAY


class ConflictError(SyncError):
    """Both sides changed the same entity. Routed to the conflict resolver."""


class ValidationError(SyncError):
    """Permanent rejection of a change. Never retried."""


class StorageError(SyncError):
    """The local store failed to read or write."""


class MigrationError(SyncError):
    """Legacy bookkeeping could not be converted. Sync must not start."""


def parse_retry_after(value: Optional[str]) -> float:
    """Parse a Retry-After header in seconds; fall back to the default delay."""
    if not value:
        return DEFAULT_RATE_LIMIT_DELAY
    try:
        return max(float(value), 1.0)
    except ValueError:
        return DEFAULT_RATE_LIMIT_DELAY


def classify_status(status_code: int, detail: str = "", retry_after: Optional[str] = None) -> Optional[SyncError]:
    """Map an HTTP status code onto the taxonomy. Returns None for 2xx/3xx."""
    if status_code < 400:
        return None
    message = f"HTTP {status_code}: {detail}" if detail else f"HTTP {status_code}"
    if status_code in (401, 403):
        return AuthError(message)
    if status_code == 429:
        return RateLimitError(message, parse_retry_after(retry_after))
    if status_code >= 500:
        return NetworkError(message)
    return ValidationError(message)


def raise_for_response(response: httpx.Response) -> None:
    """Raise the classified SyncError for a non-success response."""
    error = classify_status(
        response.status_code,
        detail=response.text[:200],
        retry_after=response.headers.get("Retry-After"),
    )
    if error is not None:
        raise error


def is_retryable(exc: BaseException) -> bool:
    """True for errors a later attempt may clear on its own."""
    return isinstance(exc, (NetworkError, RateLimitError))
