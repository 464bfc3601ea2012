"""Test utilities for fetch engine tests."""

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from courtesy.common.request_manager import AsyncRequestManager
from courtesy.data_types import FetchRequest, FetchResult


def collect_results_async() -> tuple[
    Callable[[FetchResult], Awaitable[None]], list[FetchResult]
]:
    """Create an async on_result callback that collects results in a list.

    Returns:
        A tuple of (async_callback_function, results_list).
        The results list is shared and can be inspected after the run.

    Example:
        callback, results = collect_results_async()
        scheduler = FetchScheduler(config, on_result=callback)
        ...
        assert len(results) > 0
    """
    results: list[FetchResult] = []

    async def callback(result: FetchResult) -> None:
        results.append(result)

    return callback, results


def make_requests(base_url: str, path: str, n: int) -> list[FetchRequest]:
    """Build n distinct GET requests against base_url + path."""
    return [FetchRequest(url=f"{base_url}{path}?i={i}") for i in range(n)]


def mock_request_manager(handler) -> AsyncRequestManager:
    """Build a request manager whose client answers via handler.

    The handler receives an httpx.Request and returns an httpx.Response,
    either directly or from a coroutine. No sockets are opened, so any
    hostname works.
    """
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AsyncRequestManager(client=client)


class ConcurrencyProbe:
    """Async MockTransport handler that tracks concurrent requests.

    Each request sleeps for ``delay`` seconds before answering 200, or
    blocks until ``release`` is set when ``delay`` is None.
    """

    def __init__(self, delay: float | None = 0.1) -> None:
        self.delay = delay
        self.release = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.max_in_flight_per_host: dict[str, int] = {}
        self._per_host: dict[str, int] = {}
        self.started: list[str] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.started.append(str(request.url))
        self.in_flight += 1
        self._per_host[host] = self._per_host.get(host, 0) + 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.max_in_flight_per_host[host] = max(
            self.max_in_flight_per_host.get(host, 0), self._per_host[host]
        )
        try:
            if self.delay is None:
                await self.release.wait()
            else:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
            self._per_host[host] -= 1
        return httpx.Response(200, content=str(request.url).encode())
