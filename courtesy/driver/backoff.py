"""Jittered exponential backoff for retrying transient failures.

The delay before retry n is drawn uniformly from
``[0, min(max_delay, base_delay * 2 ** (n - 1))]``. This is the "full jitter"
strategy, which spreads concurrent retriers apart instead of letting them
retry in lock-step against a struggling server.
"""

from __future__ import annotations

import math
import random
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime

from courtesy.common.exceptions import FailureKind


@dataclass(frozen=True)
class BackoffPolicy:
    """Computes retry delays for failed fetch attempts.

    The policy holds no shared state; the only moving part is the random
    source, which can be injected for deterministic tests.

    Attributes:
        base_delay: Delay ceiling for the first retry.
        max_delay: Cap on any single delay.
        max_attempts: Retries allowed after the first attempt. A request
            is attempted at most ``max_attempts + 1`` times.
        rng: Random source for jitter.

    Example::

        policy = BackoffPolicy(base_delay=1.0, max_delay=30.0, max_attempts=3)
        delay = policy.next_delay(1, FailureKind.SERVER_ERROR)
        if delay is None:
            ...  # give up
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 3
    rng: random.Random = field(
        default_factory=random.Random, compare=False, repr=False
    )

    def raw_delay(self, attempt_number: int) -> float:
        """Exponential delay ceiling for a retry, before jitter."""
        exponent = max(attempt_number, 1) - 1
        # 2 ** exponent overflows floats long before it matters
        if exponent >= 64:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def next_delay(
        self,
        attempt_number: int,
        failure_kind: FailureKind,
        retry_after: float | None = None,
    ) -> float | None:
        """Delay before retrying after a failed attempt.

        Args:
            attempt_number: 1-based number of the attempt that just failed.
            failure_kind: Classification of the failure.
            retry_after: Server-provided Retry-After hint in seconds, if any.
                The returned delay is never shorter than the hint, but is
                still capped at max_delay.

        Returns:
            Seconds to wait before the next attempt, or None if the request
            must not be retried (non-retryable kind, or attempts exhausted).
        """
        if not failure_kind.retryable:
            return None
        if attempt_number > self.max_attempts:
            return None

        delay = self.rng.uniform(0.0, self.raw_delay(attempt_number))
        if retry_after is not None and retry_after > delay:
            delay = min(retry_after, self.max_delay)
        return delay


def parse_retry_after(
    headers: Mapping[str, str], now: float | None = None
) -> float | None:
    """Parse a Retry-After header into seconds to wait.

    Accepts both delta-seconds (``"120"``) and HTTP-date forms.

    Args:
        headers: Response headers. Lookup is case-insensitive.
        now: Current Unix time, used for HTTP-date values.

    Returns:
        Seconds to wait, or None when the header is absent or invalid.
    """
    value = None
    for name, header_value in headers.items():
        if name.lower() == "retry-after":
            value = header_value.strip()
            break
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if math.isfinite(seconds) and seconds >= 0:
            return seconds
        return None

    try:
        target = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if target is None:
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)

    current = time.time() if now is None else now
    return max(0.0, target.timestamp() - current)
