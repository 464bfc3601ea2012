"""Shared fixtures for fetch engine tests."""

import asyncio
import socket
import threading
from collections.abc import AsyncGenerator, Generator
from contextlib import closing, suppress
from pathlib import Path

import pytest
from aiohttp import web

from courtesy.config import FetchConfig
from courtesy.driver.cache.response_cache import ResponseCache
from tests.mock_server import STATS_KEY, ServerStats, create_app

# =============================================================================
# aiohttp test server fixtures
# =============================================================================


def find_free_port() -> int:
    """Ask the OS for an unused TCP port on this machine."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


class AioHttpTestServer:
    """The mock origin server, running on its own loop in a daemon thread.

    The scheduler under test owns the pytest event loop, so the server
    needs a separate one. Request counters live in ``stats``.
    """

    def __init__(self, app: web.Application, port: int) -> None:
        self.app = app
        self.port = port
        self.host = "127.0.0.1"
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: web.AppRunner | None = None
        self._thread: threading.Thread | None = None
        self._listening = threading.Event()

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def stats(self) -> ServerStats:
        return self.app[STATS_KEY]

    def start(self) -> None:
        """Start serving; blocks until the socket is bound."""
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()
        if not self._listening.wait(timeout=5.0):
            raise RuntimeError("Test server did not start")

    def _serve(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._runner = web.AppRunner(self.app)
        self._loop.run_until_complete(self._runner.setup())
        site = web.TCPSite(self._runner, self.host, self.port)
        self._loop.run_until_complete(site.start())
        self._listening.set()
        self._loop.run_forever()

    def stop(self) -> None:
        if self._loop is None:
            return
        if self._runner is not None:
            cleanup = asyncio.run_coroutine_threadsafe(
                self._runner.cleanup(), self._loop
            )
            # A slow shutdown must not fail the test that used the server
            with suppress(Exception):
                cleanup.result(timeout=2.0)
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=2.0)


@pytest.fixture
def http_server() -> Generator[AioHttpTestServer, None, None]:
    """Mock origin server on a free port, torn down after the test."""
    server = AioHttpTestServer(create_app(), find_free_port())
    server.start()
    yield server
    server.stop()


@pytest.fixture
def server_url(http_server: AioHttpTestServer) -> str:
    return http_server.url


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> FetchConfig:
    """Config with no pacing and tiny backoff, for tests about behavior
    rather than timing."""
    return FetchConfig(
        default_interval_per_host=0.0,
        base_backoff=0.01,
        max_backoff=0.05,
        request_timeout=5.0,
        cancel_grace=1.0,
    )


class FakeClock:
    """Manually advanced clock for deterministic time-based tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def response_cache(
    tmp_path: Path, clock: FakeClock
) -> AsyncGenerator[ResponseCache, None]:
    """A ResponseCache in a temporary directory, driven by the fake clock."""
    async with ResponseCache.open(
        tmp_path / "cache" / "responses.db", clock=clock
    ) as cache:
        yield cache

