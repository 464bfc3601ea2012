"""Per-host request spacing.

The RateLimiter keeps one HostState per distinct host and enforces a
minimum interval between dispatches to that host. Hosts never share a
lock: each HostState carries its own, so traffic to one host cannot block
another.

The limiter itself never sleeps on the caller's behalf in admit(); it
only reports how long the caller must wait. acquire() is the awaitable
convenience for callers that just want to be let through.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase

logger = logging.getLogger(__name__)


@dataclass
class HostState:
    """Mutable scheduling state for a single host.

    Created on the first request to a host and kept for the lifetime of
    the limiter. Mutate only while holding ``lock``.

    Attributes:
        host: The ``scheme://hostname[:port]`` authority.
        next_allowed_at: Monotonic time before which no dispatch may start.
        in_flight_count: Requests currently dispatched to this host.
        consecutive_failures: Transient failures since the last success.
        lock: Re-entrant lock guarding this record.
    """

    host: str
    next_allowed_at: float = 0.0
    in_flight_count: int = 0
    consecutive_failures: int = 0
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )


class RateLimiter:
    """Enforces a minimum spacing between dispatches per host.

    Intervals are configured per host pattern. A pattern may be an exact
    authority (``https://example.com``), a bare hostname
    (``example.com``), or an fnmatch glob over either form
    (``*.example.com``). Exact matches win; otherwise the first matching
    pattern in insertion order is used, and unmatched hosts fall back to
    default_interval.

    Example::

        limiter = RateLimiter(
            default_interval=1.0,
            host_overrides={"*.slow.gov": 5.0},
        )
        wait = limiter.admit(host)
        if wait == 0:
            limiter.record_dispatch(host)
            ...  # send the request
    """

    def __init__(
        self,
        default_interval: float = 1.0,
        host_overrides: Mapping[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            default_interval: Seconds between dispatches to unmatched hosts.
            host_overrides: Host pattern to interval in seconds.
            clock: Monotonic time source. Injected in tests.
        """
        self.default_interval = default_interval
        self.host_overrides: dict[str, float] = dict(host_overrides or {})
        self._clock = clock
        self._hosts: dict[str, HostState] = {}

    def interval(self, host: str) -> float:
        """Configured dispatch interval for a host.

        Args:
            host: A ``scheme://hostname[:port]`` authority.

        Returns:
            Interval in seconds.
        """
        if host in self.host_overrides:
            return self.host_overrides[host]

        hostname = host.split("://", 1)[-1]
        if hostname in self.host_overrides:
            return self.host_overrides[hostname]

        for pattern, interval in self.host_overrides.items():
            if fnmatchcase(host, pattern) or fnmatchcase(hostname, pattern):
                return interval
        return self.default_interval

    def host_state(self, host: str) -> HostState:
        """Get the HostState for a host, creating it on first use."""
        state = self._hosts.get(host)
        if state is None:
            # dict.setdefault is atomic, so racing creators share one record
            state = self._hosts.setdefault(host, HostState(host=host))
        return state

    def admit(self, host: str) -> float:
        """Seconds the caller must wait before dispatching to host.

        Never negative. A zero result means a dispatch may start now.
        """
        state = self.host_state(host)
        with state.lock:
            return max(0.0, state.next_allowed_at - self._clock())

    def record_dispatch(self, host: str) -> None:
        """Record that a request to host is being dispatched now.

        Pushes next_allowed_at to ``now + interval(host)``. The value never
        moves backwards.
        """
        state = self.host_state(host)
        with state.lock:
            state.next_allowed_at = max(
                state.next_allowed_at, self._clock() + self.interval(host)
            )

    async def acquire(self, host: str) -> None:
        """Wait until a dispatch to host is allowed, then record it.

        Reserves the next free slot under the host lock and sleeps outside
        it, so concurrent callers line up one interval apart:

        - Caller A: slot at T, no wait
        - Caller B: slot at T + interval, waits one interval
        - Caller C: slot at T + 2 * interval, waits two intervals
        """
        state = self.host_state(host)
        with state.lock:
            now = self._clock()
            slot = max(now, state.next_allowed_at)
            state.next_allowed_at = slot + self.interval(host)
            wait_time = slot - now

        if wait_time > 0:
            logger.debug(f"Rate limiter: waiting {wait_time:.3f}s for {host}")
            await asyncio.sleep(wait_time)

    def reconfigure(
        self,
        default_interval: float | None = None,
        host_overrides: Mapping[str, float] | None = None,
    ) -> None:
        """Apply new interval settings.

        This is the only operation that may move next_allowed_at
        backwards: every known host is reset so the new intervals apply
        from the next dispatch.

        Args:
            default_interval: New default interval. None keeps the current.
            host_overrides: New override mapping. None keeps the current.
        """
        if default_interval is not None:
            self.default_interval = default_interval
        if host_overrides is not None:
            self.host_overrides = dict(host_overrides)

        for state in list(self._hosts.values()):
            with state.lock:
                state.next_allowed_at = 0.0

        logger.info(
            f"Rate limiter reconfigured: default={self.default_interval}s, "
            f"overrides={len(self.host_overrides)}"
        )

    def snapshot(self) -> list[HostState]:
        """Copies of every HostState, for monitoring."""
        copies = []
        for state in list(self._hosts.values()):
            with state.lock:
                copies.append(replace(state, lock=threading.RLock()))
        return copies
