"""Data types for the fetch engine.

This module defines the values exchanged between callers and the
FetchScheduler, and the records kept by the ResponseCache. They are
designed to be:

1. Immutable - frozen dataclasses with read-only header mappings
2. Exhaustive - outcomes are a closed union meant for match statements
3. Addressable - a request's cache key is a pure function of the request
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Union
from urllib.parse import urlsplit, urlunsplit

from courtesy.common.exceptions import (
    CancellationError,
    FailureKind,
    FetchException,
    InvalidStateTransition,
    MalformedURLError,
    PermanentRequestError,
    TransientNetworkError,
)

__all__ = [
    "CacheEntry",
    "Cancelled",
    "Failure",
    "FailureKind",
    "FetchOutcome",
    "FetchRequest",
    "FetchResult",
    "HttpMethod",
    "RequestState",
    "Success",
    "compute_cache_key",
    "normalize_url",
]

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _freeze_headers(headers: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(headers or {}))


class HttpMethod(Enum):
    """HTTP methods supported by the fetch engine."""

    GET = "GET"
    OPTIONS = "OPTIONS"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"


def _split(url: str) -> tuple[str, str, int | None, str, str]:
    """Split and validate a URL.

    Returns:
        Tuple of (scheme, hostname, port, path, query) with scheme and
        hostname lowercased and default ports removed.

    Raises:
        MalformedURLError: If the URL is not an absolute http(s) URL.
    """
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        raise MalformedURLError(url, str(e)) from e

    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise MalformedURLError(url, f"unsupported scheme {scheme!r}")
    if not parts.hostname:
        raise MalformedURLError(url, "missing host")

    if port == _DEFAULT_PORTS[scheme]:
        port = None
    return scheme, parts.hostname.lower(), port, parts.path, parts.query


def _netloc(hostname: str, port: int | None) -> str:
    if ":" in hostname:
        hostname = f"[{hostname}]"
    return hostname if port is None else f"{hostname}:{port}"


def normalize_url(url: str) -> str:
    """Normalize a URL for cache addressing.

    Lowercases the scheme and host, drops default ports and fragments, and
    turns an empty path into ``/``. The query string is kept verbatim since
    servers may treat parameter order as significant.

    Raises:
        MalformedURLError: If the URL is not an absolute http(s) URL.
    """
    scheme, hostname, port, path, query = _split(url)
    return urlunsplit(
        (scheme, _netloc(hostname, port), path or "/", query, "")
    )


def compute_cache_key(
    method: str,
    url: str,
    body: bytes | None = None,
    headers_json: str | None = None,
) -> str:
    """Compute a cache key for response caching.

    The cache key is a SHA256 hash of the request parameters that affect
    the response: method, URL, body, and headers.

    Args:
        method: HTTP method (GET, POST, etc.).
        url: Normalized request URL.
        body: Request body bytes (for POST/PUT requests).
        headers_json: JSON-encoded relevant headers (optional).

    Returns:
        Hex-encoded SHA256 hash string.
    """
    hasher = hashlib.sha256()
    hasher.update(method.encode("utf-8"))
    hasher.update(b"\x00")
    hasher.update(url.encode("utf-8"))
    hasher.update(b"\x00")
    if body:
        hasher.update(body)
    hasher.update(b"\x00")
    if headers_json:
        hasher.update(headers_json.encode("utf-8"))
    return hasher.hexdigest()


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class FetchRequest:
    """A request submitted to the FetchScheduler.

    Requests are immutable once built. Headers are copied into a read-only
    mapping, so later changes to the caller's dict have no effect.

    Attributes:
        url: Absolute http(s) URL to fetch.
        method: HTTP method. Defaults to GET.
        headers: Request headers.
        body: Optional request body for POST/PUT/PATCH.
    """

    url: str
    method: HttpMethod = HttpMethod.GET
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _freeze_headers(self.headers))

    @property
    def host(self) -> str:
        """The network authority this request targets.

        Formatted as ``scheme://hostname[:port]``; the unit of rate
        limiting and per-host concurrency.

        Raises:
            MalformedURLError: If the URL is not an absolute http(s) URL.
        """
        scheme, hostname, port, _, _ = _split(self.url)
        return f"{scheme}://{_netloc(hostname, port)}"

    @property
    def normalized_url(self) -> str:
        """The URL as used for cache addressing. See normalize_url()."""
        return normalize_url(self.url)

    def relevant_headers(
        self, vary_headers: Collection[str] | None = None
    ) -> dict[str, str]:
        """Headers that take part in the fingerprint.

        Args:
            vary_headers: Header names to include. None means all headers.

        Returns:
            Dict of lowercased header names to stripped values.
        """
        lowered = {k.lower(): v.strip() for k, v in self.headers.items()}
        if vary_headers is None:
            return lowered
        wanted = {name.lower() for name in vary_headers}
        return {k: v for k, v in lowered.items() if k in wanted}

    def cache_key(self, vary_headers: Collection[str] | None = None) -> str:
        """Fingerprint of the normalized request.

        Identical requests always map to the same key.

        Raises:
            MalformedURLError: If the URL is not an absolute http(s) URL.
        """
        headers = self.relevant_headers(vary_headers)
        headers_json = json.dumps(headers, sort_keys=True) if headers else None
        return compute_cache_key(
            self.method.value,
            self.normalized_url,
            self.body,
            headers_json,
        )


# =============================================================================
# Cache entries
# =============================================================================


@dataclass(frozen=True)
class CacheEntry:
    """A cached response, owned by the ResponseCache.

    Entries are never mutated after they are written; a refresh writes a
    new entry over the same key.

    Attributes:
        key: Fingerprint of the request this response answers.
        url: The request URL.
        status_code: HTTP status code of the cached response.
        headers: Response headers.
        body: Raw response bytes.
        stored_at: Unix timestamp when the entry was written.
        ttl: Seconds the entry stays fresh.
    """

    key: str
    url: str
    status_code: int
    headers: Mapping[str, str]
    body: bytes
    stored_at: float
    ttl: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _freeze_headers(self.headers))

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_fresh(self, now: float) -> bool:
        return now <= self.expires_at


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Success:
    """A fetch that produced a usable response.

    Attributes:
        body: Raw response bytes.
        status_code: HTTP status code.
        headers: Response headers.
        fetched_at: Unix timestamp when the response was fetched. For cache
            hits, this is when the cached entry was stored.
        from_cache: True if the response was served from the cache.
    """

    body: bytes
    status_code: int
    headers: Mapping[str, str]
    fetched_at: float
    from_cache: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _freeze_headers(self.headers))

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Failure:
    """A fetch that failed permanently.

    Attributes:
        kind: Classification of the last error.
        attempts: Number of network attempts made.
        message: Description of the last error.
        status_code: HTTP status of the last response, if there was one.
    """

    kind: FailureKind
    attempts: int
    message: str = ""
    status_code: int | None = None


@dataclass(frozen=True)
class Cancelled:
    """A fetch resolved by a run-level cancellation.

    Attributes:
        attempts: Number of network attempts made before cancellation.
        was_in_flight: True if the request had been dispatched.
    """

    attempts: int
    was_in_flight: bool = False


FetchOutcome = Union[Success, Failure, Cancelled]


@dataclass(frozen=True)
class FetchResult:
    """The terminal result of one submitted FetchRequest.

    Exactly one FetchResult is produced per submitted request.

    Attributes:
        request: The request this result answers.
        outcome: Success, Failure or Cancelled.
        attempts: Number of network attempts made (0 for cache hits).
    """

    request: FetchRequest
    outcome: FetchOutcome
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)

    @property
    def failed(self) -> bool:
        return isinstance(self.outcome, Failure)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.outcome, Cancelled)

    def raise_for_outcome(self) -> Success:
        """Return the Success outcome or raise an exception describing why not.

        Returns:
            The Success outcome.

        Raises:
            TransientNetworkError: Retries were exhausted on a transient error.
            PermanentRequestError: The request failed permanently.
            CancellationError: The request was cancelled.
        """
        url = self.request.url
        match self.outcome:
            case Success():
                return self.outcome
            case Failure(kind=kind, message=message):
                exc_class: type[FetchException] = (
                    TransientNetworkError
                    if kind.retryable
                    else PermanentRequestError
                )
                exc = exc_class(message or f"{kind.value} for {url}", url)
                exc.kind = kind
                raise exc
            case Cancelled(was_in_flight=was_in_flight):
                raise CancellationError(url, was_in_flight)
        raise AssertionError(f"Unknown outcome {self.outcome!r}")


# =============================================================================
# Request lifecycle
# =============================================================================


class RequestState(Enum):
    """Lifecycle states of a submitted request inside the scheduler."""

    QUEUED = "queued"
    CACHE_CHECK = "cache_check"
    CACHE_HIT = "cache_hit"
    RATE_LIMITED = "rate_limited"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED_PERMANENTLY = "failed_permanently"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES

    def check_transition(self, new_state: RequestState) -> None:
        """Validate a move from this state to new_state.

        Raises:
            InvalidStateTransition: If the move is not allowed.
        """
        if new_state not in _TRANSITIONS[self]:
            raise InvalidStateTransition(
                f"Cannot move request from {self.value} to {new_state.value}"
            )


_TERMINAL_STATES = frozenset(
    {
        RequestState.CACHE_HIT,
        RequestState.SUCCEEDED,
        RequestState.FAILED_PERMANENTLY,
        RequestState.CANCELLED,
    }
)

_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.QUEUED: frozenset(
        {RequestState.CACHE_CHECK, RequestState.CANCELLED}
    ),
    RequestState.CACHE_CHECK: frozenset(
        {
            RequestState.CACHE_HIT,
            RequestState.RATE_LIMITED,
            RequestState.FAILED_PERMANENTLY,
            RequestState.CANCELLED,
        }
    ),
    RequestState.RATE_LIMITED: frozenset(
        {RequestState.DISPATCHED, RequestState.CANCELLED}
    ),
    RequestState.DISPATCHED: frozenset(
        {
            RequestState.SUCCEEDED,
            RequestState.RETRYING,
            RequestState.CANCELLED,
        }
    ),
    RequestState.RETRYING: frozenset(
        {
            RequestState.RATE_LIMITED,
            RequestState.FAILED_PERMANENTLY,
            RequestState.CANCELLED,
        }
    ),
    RequestState.CACHE_HIT: frozenset(),
    RequestState.SUCCEEDED: frozenset(),
    RequestState.FAILED_PERMANENTLY: frozenset(),
    RequestState.CANCELLED: frozenset(),
}
