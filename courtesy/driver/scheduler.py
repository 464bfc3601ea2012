"""Concurrent fetch scheduler.

This module contains the FetchScheduler, which turns a stream of
FetchRequests into FetchResults while staying polite to every host it
touches.

The scheduler is built from four kinds of asyncio tasks:

1. Intake - checks each submission against the ResponseCache, in
   submission order, and routes misses to their host's FIFO queue
2. Dispatcher - admits queued requests when the host's rate limit, the
   host's concurrency cap and the global cap all allow it
3. Workers - a fixed pool that performs the admitted fetches
4. Retry timers - failed requests re-enter their host queue after a
   backoff delay via loop.call_later, so no worker sleeps on a retry

Each submitted request resolves to exactly one FetchResult.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections import deque
from collections.abc import (
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
)
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from courtesy.common.exceptions import (
    FailureKind,
    FetchException,
    MalformedURLError,
    RequestTimeoutError,
)
from courtesy.common.request_manager import AsyncRequestManager
from courtesy.config import FetchConfig
from courtesy.data_types import (
    CacheEntry,
    Cancelled,
    Failure,
    FetchOutcome,
    FetchRequest,
    FetchResult,
    RequestState,
    Success,
)
from courtesy.driver.backoff import BackoffPolicy
from courtesy.driver.cache.response_cache import ResponseCache
from courtesy.driver.rate_limiter import HostState, RateLimiter

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Job:
    """Scheduler-side bookkeeping for one submitted request."""

    job_id: int
    request: FetchRequest
    future: asyncio.Future[FetchResult]
    state: RequestState = RequestState.QUEUED
    host: str = ""
    cache_key: str = ""
    attempts: int = 0
    last_error: FetchException | None = None
    retry_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    def transition(self, new_state: RequestState) -> None:
        self.state.check_transition(new_state)
        logger.debug(
            f"Request {self.job_id} {self.state.value} -> {new_state.value} "
            f"({self.request.url})"
        )
        self.state = new_state


class FetchScheduler:
    """Orchestrates polite, concurrent fetching with caching and retries.

    Global parallelism is bounded by the worker pool
    (max_concurrency_global); per-host parallelism by
    max_concurrency_per_host. Within a host, requests are dispatched in
    submission order among those eligible; a request coming back from a
    retry joins the back of the queue.

    Example::

        config = FetchConfig(cache_dir=Path("cache"))
        async with FetchScheduler.open(config) as scheduler:
            async for result in scheduler.run(requests):
                if result.ok:
                    parse(result.outcome.body)
    """

    def __init__(
        self,
        config: FetchConfig,
        cache: ResponseCache | None = None,
        request_manager: AsyncRequestManager | None = None,
        rate_limiter: RateLimiter | None = None,
        backoff: BackoffPolicy | None = None,
        on_result: Callable[[FetchResult], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Scheduler configuration.
            cache: Response cache. None disables caching.
            request_manager: HTTP request manager. Built from config if None.
            rate_limiter: Per-host rate limiter. Built from config if None.
            backoff: Retry backoff policy. Built from config if None.
            on_result: Optional async callback invoked once per result.
        """
        self.config = config
        self.cache = cache
        self.request_manager = request_manager or AsyncRequestManager(
            timeout=config.request_timeout,
            user_agent=config.user_agent,
            follow_redirects=config.follow_redirects,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            default_interval=config.default_interval_per_host,
            host_overrides=config.host_overrides,
        )
        self.backoff = backoff or BackoffPolicy(
            base_delay=config.base_backoff,
            max_delay=config.max_backoff,
            max_attempts=config.max_attempts,
        )
        self.on_result = on_result

        self.stop_event = asyncio.Event()
        self._started = False
        self._closed = False
        self._hard_cancelled = False

        self._next_job_id = 1
        self._outstanding: dict[int, _Job] = {}
        self._idle = asyncio.Event()
        self._idle.set()

        self._intake: asyncio.Queue[_Job | None] = asyncio.Queue()
        self._host_queues: dict[str, deque[_Job]] = {}
        self._ready: asyncio.Queue[_Job | None] = asyncio.Queue()
        self._retrying: dict[int, _Job] = {}
        self._fetch_tasks: dict[int, asyncio.Task[Success]] = {}
        self._in_flight_total = 0
        self._wakeup = asyncio.Event()

        self._tasks: list[asyncio.Task[None]] = []
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self._previous_handlers: dict[int, Any] = {}
        self._counters = {
            "submitted": 0,
            "cache_hits": 0,
            "succeeded": 0,
            "failed": 0,
            "cancelled": 0,
            "retries": 0,
        }

    @classmethod
    @asynccontextmanager
    async def open(
        cls, config: FetchConfig, **kwargs: Any
    ) -> AsyncIterator[FetchScheduler]:
        """Open a scheduler as an async context manager.

        Opens the response cache (when config.cache_dir is set and no cache
        was passed in), starts the workers, and on exit cancels whatever is
        still outstanding and releases everything the scheduler created.

        Args:
            config: Scheduler configuration.
            **kwargs: Additional arguments passed to __init__.

        Yields:
            A started FetchScheduler.

        Example:
            async with FetchScheduler.open(config) as scheduler:
                results = await scheduler.fetch_all(requests)
        """
        owned_cache: ResponseCache | None = None
        if kwargs.get("cache") is None and config.cache_path is not None:
            owned_cache = await ResponseCache.create(config.cache_path)
            kwargs["cache"] = owned_cache
        owns_manager = kwargs.get("request_manager") is None

        scheduler = cls(config, **kwargs)
        scheduler.start()
        try:
            yield scheduler
        finally:
            await scheduler.close()
            if owns_manager:
                await scheduler.request_manager.close()
            if owned_cache is not None:
                await owned_cache.close()

    # --- Lifecycle ---

    def start(self) -> None:
        """Spawn the intake, dispatcher and worker tasks.

        Must be called from within a running event loop.
        """
        if self._started:
            return
        self._started = True
        self._tasks.append(asyncio.create_task(self._intake_loop()))
        self._tasks.append(asyncio.create_task(self._dispatch_loop()))
        for worker_id in range(self.config.max_concurrency_global):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))
        logger.info(
            f"Fetch scheduler started with "
            f"{self.config.max_concurrency_global} workers "
            f"(per-host cap {self.config.max_concurrency_per_host})"
        )

    async def join(self) -> None:
        """Wait until every submitted request has a result."""
        await self._idle.wait()

    async def close(self) -> None:
        """Cancel outstanding work and stop all scheduler tasks."""
        if self._closed:
            return
        if self._outstanding:
            await self.cancel()
        self._closed = True
        self.stop_event.set()
        self._wakeup.set()

        self._intake.put_nowait(None)
        for _ in range(self.config.max_concurrency_global):
            self._ready.put_nowait(None)
        if self._tasks:
            await asyncio.gather(*self._tasks)
        self._tasks.clear()

        if self._callback_tasks:
            await asyncio.gather(*self._callback_tasks)
        logger.info(f"Fetch scheduler closed: {self.stats}")

    async def cancel(self, grace: float | None = None) -> None:
        """Cancel the run.

        Requests that have not been dispatched are resolved as Cancelled
        immediately. In-flight fetches get ``grace`` seconds to complete;
        any still running after that are interrupted and resolved as
        Cancelled. Returns once every outstanding request has a result.

        Args:
            grace: Seconds to let in-flight fetches finish. Defaults to
                config.cancel_grace.
        """
        if grace is None:
            grace = self.config.cancel_grace
        if not self.stop_event.is_set():
            logger.info(
                f"Cancelling run: {len(self._outstanding)} outstanding, "
                f"{len(self._fetch_tasks)} in flight (grace {grace}s)"
            )
        self.stop_event.set()
        self._wakeup.set()

        self._cancel_queued()

        if self._fetch_tasks:
            _, pending = await asyncio.wait(
                list(self._fetch_tasks.values()), timeout=grace
            )
            if pending:
                logger.warning(
                    f"Interrupting {len(pending)} in-flight fetches "
                    f"after {grace}s grace"
                )
                self._hard_cancelled = True
                for task in pending:
                    task.cancel()

        await self._idle.wait()

    def request_cancel(self) -> None:
        """Schedule cancel() from synchronous code such as a signal handler."""
        task = asyncio.create_task(self.cancel())
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)

    def install_signal_handlers(self) -> None:
        """Cancel the run on SIGINT or SIGTERM.

        Note: Only works on Unix-like systems. On Windows, only SIGINT
        is supported.
        """
        loop = asyncio.get_running_loop()

        def handle_signal(signum: int, frame: Any) -> None:
            sig_name = signal.Signals(signum).name
            logger.info(f"Received {sig_name}, cancelling run...")
            loop.call_soon_threadsafe(self.request_cancel)

        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(
                signum, handle_signal
            )

    def restore_signal_handlers(self) -> None:
        """Restore the handlers that were active before installation."""
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    # --- Submission ---

    def submit(self, request: FetchRequest) -> asyncio.Future[FetchResult]:
        """Submit a request for fetching.

        Must be called from within a running event loop.

        Args:
            request: The request to fetch.

        Returns:
            A future resolved with the request's FetchResult.
        """
        loop = asyncio.get_running_loop()
        job = _Job(
            job_id=self._next_job_id,
            request=request,
            future=loop.create_future(),
        )
        self._next_job_id += 1
        self._counters["submitted"] += 1

        if self.stop_event.is_set():
            self._resolve(job, RequestState.CANCELLED, Cancelled(attempts=0))
            return job.future

        self._outstanding[job.job_id] = job
        self._idle.clear()
        self._intake.put_nowait(job)
        return job.future

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Submit a request and wait for its result."""
        return await self.submit(request)

    async def fetch_all(
        self, requests: Iterable[FetchRequest]
    ) -> list[FetchResult]:
        """Submit requests and return their results in submission order."""
        futures = [self.submit(request) for request in requests]
        return list(await asyncio.gather(*futures))

    async def run(
        self, requests: Iterable[FetchRequest]
    ) -> AsyncIterator[FetchResult]:
        """Submit requests and yield results in completion order.

        Running the same requests again after an interruption is cheap:
        responses cached by the earlier run are served without network I/O.
        """
        futures = [self.submit(request) for request in requests]
        for next_done in asyncio.as_completed(futures):
            yield await next_done

    # --- Monitoring ---

    @property
    def stats(self) -> dict[str, int]:
        """Counters for the run so far."""
        queued = sum(len(q) for q in self._host_queues.values())
        return {
            **self._counters,
            "in_flight": self._in_flight_total,
            "queued": queued + self._intake.qsize(),
            "retrying": len(self._retrying),
        }

    def host_states(self) -> list[HostState]:
        """Snapshot of per-host scheduling state."""
        return self.rate_limiter.snapshot()

    def reconfigure_rate_limits(
        self,
        default_interval: float | None = None,
        host_overrides: dict[str, float] | None = None,
    ) -> None:
        """Apply new rate-limit intervals to the running scheduler."""
        self.rate_limiter.reconfigure(default_interval, host_overrides)
        self._wakeup.set()

    # --- Intake: Queued -> CacheCheck -> CacheHit | RateLimited ---

    async def _intake_loop(self) -> None:
        while True:
            job = await self._intake.get()
            if job is None:
                break
            if job.future.done():
                self._forget(job)
                continue
            await self._check_cache(job)

    async def _check_cache(self, job: _Job) -> None:
        job.transition(RequestState.CACHE_CHECK)
        try:
            job.host = job.request.host
            job.cache_key = job.request.cache_key(
                self.config.cache_vary_headers
            )
        except MalformedURLError as e:
            logger.warning(f"Request {job.job_id} rejected: {e}")
            self._resolve(
                job,
                RequestState.FAILED_PERMANENTLY,
                Failure(kind=e.kind, attempts=0, message=str(e)),
            )
            return

        entry = None
        if self.cache is not None:
            entry = await self.cache.get(job.cache_key)

        if self.stop_event.is_set():
            self._resolve(job, RequestState.CANCELLED, Cancelled(attempts=0))
            return

        if entry is not None:
            logger.debug(f"Cache hit for {job.request.url}")
            self._counters["cache_hits"] += 1
            self._resolve(
                job,
                RequestState.CACHE_HIT,
                Success(
                    body=entry.body,
                    status_code=entry.status_code,
                    headers=entry.headers,
                    fetched_at=entry.stored_at,
                    from_cache=True,
                ),
            )
            return

        self._enqueue(job)

    def _enqueue(self, job: _Job) -> None:
        job.transition(RequestState.RATE_LIMITED)
        self._host_queues.setdefault(job.host, deque()).append(job)
        self._wakeup.set()

    # --- Dispatcher: RateLimited -> Dispatched ---

    async def _dispatch_loop(self) -> None:
        while not self.stop_event.is_set():
            self._wakeup.clear()
            next_wake = self._dispatch_ready()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=next_wake)
            except asyncio.TimeoutError:
                pass

    def _dispatch_ready(self) -> float | None:
        """Dispatch every request that may start now.

        Serves hosts round-robin, one request per host per pass, so a host
        with a long queue cannot starve the others.

        Returns:
            Seconds until the earliest rate-limited host opens up, or None
            if nothing is waiting on a timer.
        """
        next_wake: float | None = None
        progressed = True
        while progressed:
            progressed = False
            for host in list(self._host_queues):
                queue = self._host_queues[host]
                while queue and queue[0].future.done():
                    # Caller gave up on the future; never dispatch it
                    self._forget(queue.popleft())
                if not queue:
                    del self._host_queues[host]
                    continue
                if self._in_flight_total >= self.config.max_concurrency_global:
                    return next_wake

                state = self.rate_limiter.host_state(host)
                with state.lock:
                    if (
                        state.in_flight_count
                        >= self.config.max_concurrency_per_host
                    ):
                        continue
                    wait = self.rate_limiter.admit(host)
                    if wait > 0:
                        if next_wake is None or wait < next_wake:
                            next_wake = wait
                        continue
                    state.in_flight_count += 1
                    self.rate_limiter.record_dispatch(host)

                job = queue.popleft()
                job.transition(RequestState.DISPATCHED)
                job.attempts += 1
                self._in_flight_total += 1
                self._ready.put_nowait(job)
                # Rotate so the next pass starts with another host
                self._host_queues[host] = self._host_queues.pop(host)
                progressed = True
        return next_wake

    def _release_slot(self, job: _Job) -> None:
        state = self.rate_limiter.host_state(job.host)
        with state.lock:
            state.in_flight_count -= 1
        self._in_flight_total -= 1
        self._wakeup.set()

    # --- Workers: Dispatched -> Succeeded | Retrying ---

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"[W{worker_id}] Worker started")
        requests_processed = 0
        while True:
            job = await self._ready.get()
            if job is None:
                break
            if job.future.done():
                # Caller gave up on the future before any I/O started
                self._release_slot(job)
                self._forget(job)
                continue
            await self._execute(job, worker_id)
            requests_processed += 1
        logger.debug(
            f"[W{worker_id}] Worker stopped (processed {requests_processed})"
        )

    async def _fetch(self, job: _Job) -> Success:
        try:
            return await asyncio.wait_for(
                self.request_manager.resolve_request(job.request),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                url=job.request.url,
                timeout_seconds=self.config.request_timeout,
            )

    async def _execute(self, job: _Job, worker_id: int) -> None:
        fetch = asyncio.ensure_future(self._fetch(job))
        self._fetch_tasks[job.job_id] = fetch
        released = False
        try:
            try:
                success = await fetch
            except asyncio.CancelledError:
                if not self._hard_cancelled:
                    raise
                self._resolve(
                    job,
                    RequestState.CANCELLED,
                    Cancelled(attempts=job.attempts, was_in_flight=True),
                )
                return
            except FetchException as e:
                self._fetch_tasks.pop(job.job_id, None)
                self._release_slot(job)
                released = True
                self._handle_failure(job, e, worker_id)
                return
            except Exception as e:
                logger.exception(
                    f"[W{worker_id}] Unexpected error fetching request "
                    f"{job.job_id} ({job.request.url})"
                )
                job.transition(RequestState.RETRYING)
                self._resolve(
                    job,
                    RequestState.FAILED_PERMANENTLY,
                    Failure(
                        kind=FailureKind.INTERNAL,
                        attempts=job.attempts,
                        message=f"{type(e).__name__}: {e}",
                    ),
                )
                return

            self._fetch_tasks.pop(job.job_id, None)
            state = self.rate_limiter.host_state(job.host)
            with state.lock:
                state.consecutive_failures = 0
            if self.cache is not None:
                await self.cache.put(
                    job.cache_key,
                    CacheEntry(
                        key=job.cache_key,
                        url=job.request.url,
                        status_code=success.status_code,
                        headers=success.headers,
                        body=success.body,
                        stored_at=success.fetched_at,
                        ttl=self.config.cache_ttl,
                    ),
                )
            self._resolve(job, RequestState.SUCCEEDED, success)
        finally:
            self._fetch_tasks.pop(job.job_id, None)
            if not released:
                self._release_slot(job)

    def _handle_failure(
        self, job: _Job, error: FetchException, worker_id: int
    ) -> None:
        """Route a failed attempt through Retrying.

        BackoffPolicy decides whether the request goes back to its host
        queue after a delay or fails permanently.
        """
        job.last_error = error
        job.transition(RequestState.RETRYING)

        if error.kind.retryable:
            state = self.rate_limiter.host_state(job.host)
            with state.lock:
                state.consecutive_failures += 1

        if error.kind.retryable and self.stop_event.is_set():
            self._resolve(
                job,
                RequestState.CANCELLED,
                Cancelled(attempts=job.attempts, was_in_flight=True),
            )
            return

        delay = self.backoff.next_delay(
            job.attempts,
            error.kind,
            retry_after=getattr(error, "retry_after", None),
        )
        if delay is None:
            log = logger.warning if error.kind.retryable else logger.info
            log(
                f"[W{worker_id}] Request {job.job_id} failed permanently "
                f"after {job.attempts} attempt(s): {error}"
            )
            self._resolve(
                job,
                RequestState.FAILED_PERMANENTLY,
                Failure(
                    kind=error.kind,
                    attempts=job.attempts,
                    message=str(error),
                    status_code=getattr(error, "status_code", None),
                ),
            )
            return

        logger.warning(
            f"[W{worker_id}] Request {job.job_id} attempt {job.attempts} "
            f"failed ({type(error).__name__}: {error}); "
            f"retrying in {delay:.2f}s"
        )
        self._counters["retries"] += 1
        self._retrying[job.job_id] = job
        job.retry_handle = asyncio.get_running_loop().call_later(
            delay, self._requeue, job
        )

    def _requeue(self, job: _Job) -> None:
        """Retrying -> RateLimited, once the backoff delay has elapsed."""
        self._retrying.pop(job.job_id, None)
        job.retry_handle = None
        if job.future.done():
            self._forget(job)
            return
        if self.stop_event.is_set():
            return
        self._enqueue(job)

    # --- Resolution ---

    def _cancel_queued(self) -> None:
        """Resolve every request that has not been dispatched as Cancelled."""
        cancelled = 0

        while not self._intake.empty():
            job = self._intake.get_nowait()
            if job is None:
                continue
            self._resolve(job, RequestState.CANCELLED, Cancelled(attempts=0))
            cancelled += 1

        for queue in self._host_queues.values():
            while queue:
                job = queue.popleft()
                self._resolve(
                    job,
                    RequestState.CANCELLED,
                    Cancelled(attempts=job.attempts),
                )
                cancelled += 1
        self._host_queues.clear()

        for job in list(self._retrying.values()):
            if job.retry_handle is not None:
                job.retry_handle.cancel()
            self._resolve(
                job, RequestState.CANCELLED, Cancelled(attempts=job.attempts)
            )
            cancelled += 1
        self._retrying.clear()

        # Dispatched but not yet picked up by a worker: no I/O has started
        while not self._ready.empty():
            job = self._ready.get_nowait()
            if job is None:
                continue
            self._release_slot(job)
            job.attempts -= 1
            self._resolve(
                job, RequestState.CANCELLED, Cancelled(attempts=job.attempts)
            )
            cancelled += 1

        if cancelled:
            logger.info(f"Cancelled {cancelled} queued requests")

    def _resolve(
        self, job: _Job, state: RequestState, outcome: FetchOutcome
    ) -> None:
        """Move a job to its terminal state and publish its result."""
        if job.future.done():
            self._forget(job)
            return

        job.transition(state)
        result = FetchResult(
            request=job.request, outcome=outcome, attempts=job.attempts
        )
        job.future.set_result(result)

        match outcome:
            case Success(from_cache=True):
                pass
            case Success():
                self._counters["succeeded"] += 1
            case Failure():
                self._counters["failed"] += 1
            case Cancelled():
                self._counters["cancelled"] += 1

        self._forget(job)

        if self.on_result is not None:
            task = asyncio.create_task(self._notify(self.on_result, result))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)

    def _forget(self, job: _Job) -> None:
        self._outstanding.pop(job.job_id, None)
        if not self._outstanding:
            self._idle.set()

    async def _notify(
        self,
        callback: Callable[[FetchResult], Awaitable[None]],
        result: FetchResult,
    ) -> None:
        try:
            await callback(result)
        except Exception:
            logger.exception(
                f"on_result callback failed for {result.request.url}"
            )
