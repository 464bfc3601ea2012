"""Request manager for performing HTTP fetches.

This module provides AsyncRequestManager, which encapsulates the HTTP
client and turns raw responses and transport errors into the fetch error
taxonomy.

The request manager is responsible for:
- Maintaining the HTTP client (httpx.AsyncClient)
- Classifying status codes and transport errors
- Converting HTTP responses to Success outcomes

This separation lets the scheduler focus on queueing, pacing and retries
while delegating HTTP concerns to the request manager.
"""

from __future__ import annotations

import logging
import ssl
import time
from typing import Any

import httpx

from courtesy.common.exceptions import (
    ConnectionFailedError,
    MalformedURLError,
    PermanentStatusError,
    RequestTimeoutError,
    RetryableStatusError,
)
from courtesy.data_types import FetchRequest, Success
from courtesy.driver.backoff import parse_retry_after

logger = logging.getLogger(__name__)

# Client errors that are worth retrying: throttling and timeouts
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


def raise_for_status(status_code: int, url: str, headers: Any) -> None:
    """Raise the taxonomy exception for an unsuccessful status code.

    Args:
        status_code: HTTP status code.
        url: The request URL, for error context.
        headers: Response headers (used for Retry-After).

    Raises:
        RetryableStatusError: For 5xx and 408/425/429.
        PermanentStatusError: For every other 4xx.
    """
    if status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES:
        raise RetryableStatusError(
            status_code=status_code,
            url=url,
            retry_after=parse_retry_after(headers),
        )
    if status_code >= 400:
        raise PermanentStatusError(status_code=status_code, url=url)


class AsyncRequestManager:
    """Manages HTTP requests for the FetchScheduler.

    This class encapsulates:

    - httpx.AsyncClient lifecycle
    - Request resolution (URL fetching)
    - Error classification

    Example::

        manager = AsyncRequestManager(timeout=30.0)
        success = await manager.resolve_request(request)
    """

    def __init__(
        self,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
        follow_redirects: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the request manager.

        Args:
            ssl_context: Optional SSL context for HTTPS connections. Use this
                for servers requiring specific cipher suites.
            timeout: Request timeout in seconds. None means no timeout.
            user_agent: User-Agent header sent with every request.
            follow_redirects: Whether to follow redirects.
            client: Pre-built client (e.g. with a mock transport). When
                given, the other client options are ignored.
        """
        self.timeout = timeout

        if client is not None:
            self._client = client
            return

        headers = {"User-Agent": user_agent} if user_agent else None
        self._client = httpx.AsyncClient(
            verify=ssl_context if ssl_context else True,
            timeout=timeout,
            headers=headers,
            follow_redirects=follow_redirects,
        )

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> AsyncRequestManager:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit - closes the client."""
        await self.close()

    async def resolve_request(self, request: FetchRequest) -> Success:
        """Fetch a FetchRequest and return the Success outcome.

        Args:
            request: The request to fetch. URL must be absolute.

        Returns:
            Success containing the HTTP response data.

        Raises:
            RequestTimeoutError: If the request times out.
            ConnectionFailedError: On other transport errors.
            RetryableStatusError: If the server answers 5xx or 408/425/429.
            PermanentStatusError: If the server answers with another 4xx.
            MalformedURLError: If httpx rejects the URL.
        """
        url = request.url
        try:
            http_response = await self._client.request(
                method=request.method.value,
                url=url,
                headers=dict(request.headers),
                content=request.body,
            )
        except httpx.TimeoutException:
            raise RequestTimeoutError(url=url, timeout_seconds=self.timeout)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise MalformedURLError(url, str(e)) from e
        except httpx.TransportError as e:
            raise ConnectionFailedError(
                url, f"{type(e).__name__}: {e}"
            ) from e

        raise_for_status(http_response.status_code, url, http_response.headers)

        logger.debug(
            f"Fetched {request.method.value} {url}: "
            f"{http_response.status_code} ({len(http_response.content)} bytes)"
        )
        return Success(
            body=http_response.content,
            status_code=http_response.status_code,
            headers=dict(http_response.headers),
            fetched_at=time.time(),
        )
