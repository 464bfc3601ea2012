"""Exception types for fetch errors.

This module defines the error taxonomy used across the fetch engine.
Every fetch-level error carries a FailureKind, which is what the backoff
policy and the scheduler reason about:

- TransientNetworkError: timeouts, connection resets, 5xx, 429. Retryable.
- PermanentRequestError: other 4xx, malformed URLs. Never retried.
- CacheStorageError: raised by the cache storage layer and absorbed by
  ResponseCache. Callers never see it.
- CancellationError: a run-level cancellation, reported apart from failures.
"""

from enum import Enum


class FailureKind(Enum):
    """Classification of a failed fetch attempt.

    Values:
        TIMEOUT: The request exceeded its deadline.
        CONNECTION: Connection refused, reset, or another transport error.
        SERVER_ERROR: The server answered with a 5xx status.
        RATE_LIMITED: The server answered 429 (or 408/425).
        CLIENT_ERROR: The server answered with another 4xx status.
        INVALID_REQUEST: The request could not be sent (malformed URL).
        INTERNAL: An unexpected error inside the engine.
    """

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    CLIENT_ERROR = "client_error"
    INVALID_REQUEST = "invalid_request"
    INTERNAL = "internal"

    @property
    def retryable(self) -> bool:
        """Whether a failure of this kind may succeed on retry."""
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {
        FailureKind.TIMEOUT,
        FailureKind.CONNECTION,
        FailureKind.SERVER_ERROR,
        FailureKind.RATE_LIMITED,
    }
)


class FetchException(Exception):
    """Base class for errors raised while fetching a request.

    Attributes:
        url: The URL of the request that failed.
        kind: FailureKind classification of the error.
        message: Human-readable error message.
    """

    kind: FailureKind = FailureKind.INTERNAL

    def __init__(self, message: str, url: str) -> None:
        self.url = url
        self.message = message
        super().__init__(message)


# =============================================================================
# Transient errors
# =============================================================================


class TransientNetworkError(FetchException):
    """Base class for transient errors that might resolve on retry.

    Transient errors represent temporary failures like network issues,
    server errors (5xx), throttling (429) or timeouts. Retrying the request
    after a backoff delay may succeed.

    The scheduler is responsible for retry logic and strategy.
    """

    kind = FailureKind.CONNECTION


class RequestTimeoutError(TransientNetworkError):
    """Raised when a request exceeds its deadline.

    Attributes:
        timeout_seconds: The deadline in seconds.
    """

    kind = FailureKind.TIMEOUT

    def __init__(self, url: str, timeout_seconds: float | None) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request to {url} timed out after {timeout_seconds}s", url
        )


class ConnectionFailedError(TransientNetworkError):
    """Raised when the transport fails (refused, reset, protocol error)."""

    kind = FailureKind.CONNECTION

    def __init__(self, url: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Connection to {url} failed: {reason}", url)


class RetryableStatusError(TransientNetworkError):
    """Raised when the server answers with a retryable status code.

    Server errors (5xx) and throttling responses (408, 425, 429) are
    transient. The server may send a Retry-After hint, which is kept so
    the backoff policy can honour it.

    Attributes:
        status_code: The HTTP status code received.
        retry_after: Seconds the server asked us to wait, if it said.
    """

    def __init__(
        self,
        status_code: int,
        url: str,
        retry_after: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        self.kind = (
            FailureKind.SERVER_ERROR
            if status_code >= 500
            else FailureKind.RATE_LIMITED
        )
        super().__init__(f"HTTP {status_code} from {url}", url)


# =============================================================================
# Permanent errors
# =============================================================================


class PermanentRequestError(FetchException):
    """Base class for errors that will not resolve on retry."""

    kind = FailureKind.CLIENT_ERROR


class PermanentStatusError(PermanentRequestError):
    """Raised when the server answers with a non-retryable 4xx status.

    Attributes:
        status_code: The HTTP status code received.
    """

    kind = FailureKind.CLIENT_ERROR

    def __init__(self, status_code: int, url: str) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} from {url}", url)


class MalformedURLError(PermanentRequestError):
    """Raised when a request URL cannot be fetched at all."""

    kind = FailureKind.INVALID_REQUEST

    def __init__(self, url: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed URL {url!r}: {reason}", url)


# =============================================================================
# Non-fetch errors
# =============================================================================


class CacheStorageError(Exception):
    """Raised by the response cache storage layer.

    ResponseCache catches this on every public operation: reads degrade to
    a cache miss and writes become no-ops.
    """


class CancellationError(Exception):
    """Raised for requests resolved by a run-level cancellation.

    Attributes:
        url: The URL of the cancelled request.
        was_in_flight: True if the request had been dispatched.
    """

    def __init__(self, url: str, was_in_flight: bool) -> None:
        self.url = url
        self.was_in_flight = was_in_flight
        where = "in flight" if was_in_flight else "queued"
        super().__init__(f"Request to {url} cancelled while {where}")


class InvalidStateTransition(RuntimeError):
    """Raised when a request is moved between states illegally."""
