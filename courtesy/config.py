"""Configuration for the fetch engine.

FetchConfig collects every tunable the scheduler and its collaborators
recognize. Loading it from files or the environment is left to the
caller; this module only defines and validates the values.

All durations are in seconds. The defaults are placeholders meant to be
tuned per deployment: one request per second per host, two concurrent
requests per host, and three retries.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FetchConfig(BaseModel):
    """Validated scheduler configuration.

    Attributes:
        default_interval_per_host: Minimum spacing between dispatches to a
            host with no override.
        host_overrides: Host pattern to interval. Patterns are exact hosts
            (``https://example.com``), bare hostnames (``example.com``), or
            fnmatch globs (``*.example.com``).
        max_concurrency_global: Size of the worker pool.
        max_concurrency_per_host: Maximum in-flight requests per host.
        max_attempts: Retries allowed after the first attempt. Zero
            disables retrying.
        base_backoff: Delay before the first retry, before jitter.
        max_backoff: Cap on any single retry delay.
        cache_ttl: Seconds a cached response stays fresh.
        cache_dir: Directory holding the response cache. None disables
            caching.
        request_timeout: Deadline for each dispatched fetch.
        cancel_grace: Seconds in-flight fetches may keep running after a
            cancellation before they are interrupted.
        cache_vary_headers: Header names that take part in the cache key.
            None means every request header does.
        user_agent: User-Agent sent with every request, if set.
        follow_redirects: Whether the HTTP client follows redirects.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_interval_per_host: float = Field(default=1.0, ge=0)
    host_overrides: dict[str, float] = Field(default_factory=dict)
    max_concurrency_global: int = Field(default=8, ge=1)
    max_concurrency_per_host: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=3, ge=0)
    base_backoff: float = Field(default=1.0, gt=0)
    max_backoff: float = Field(default=60.0, gt=0)
    cache_ttl: float = Field(default=86400.0, gt=0)
    cache_dir: Path | None = None
    request_timeout: float = Field(default=30.0, gt=0)
    cancel_grace: float = Field(default=5.0, ge=0)
    cache_vary_headers: tuple[str, ...] | None = None
    user_agent: str | None = None
    follow_redirects: bool = True

    @model_validator(mode="after")
    def _check_consistency(self) -> FetchConfig:
        if self.max_backoff < self.base_backoff:
            raise ValueError(
                f"max_backoff ({self.max_backoff}) must be >= "
                f"base_backoff ({self.base_backoff})"
            )
        for pattern, interval in self.host_overrides.items():
            if interval < 0:
                raise ValueError(
                    f"host_overrides[{pattern!r}] must be >= 0, got {interval}"
                )
        return self

    @property
    def cache_path(self) -> Path | None:
        """Location of the response cache database, if caching is enabled."""
        if self.cache_dir is None:
            return None
        return self.cache_dir / "responses.db"
