"""
Rate Limiter - Hourly sliding window and per-batch ceiling per plan.

`acquire` takes a window slot under the same lock as the count, before any
credits are reserved; a request that does not complete gives its slot back
with `release`. State is in-process.
"""

import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import NoReturn

from credit_engine.exceptions import BatchLimitExceededError, RateLimitExceededError
from credit_engine.models.domain import RateLimits, RateLimitStatus
from credit_engine.observability import get_logger, metrics
from credit_engine.services.subscription_policy import SubscriptionPolicyResolver

logger = get_logger(__name__)

WINDOW_SECONDS = 3600


class RateLimiter:
    """Per-user hourly request window plus a batch-size ceiling."""

    def __init__(
        self,
        resolver: SubscriptionPolicyResolver,
        window_seconds: int = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.resolver = resolver
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, user_id: str, plan_key: str | None, batch_size: int = 1) -> RateLimitStatus:
        """
        Verify one request, part of a batch of batch_size images, fits the plan's limits.

        Read-only: nothing is counted against the window.

        Raises:
            BatchLimitExceededError: If batch_size exceeds the plan's batch limit
            RateLimitExceededError: If the hourly window has no room left
        """
        limits = self._check_batch(user_id, plan_key, batch_size)

        now = self._clock()
        with self._lock:
            window = self._window(user_id, now)
            used = len(window)
            oldest = window[0] if window else None

        if used >= limits.hourly_limit:
            self._reject_hourly(user_id, plan_key, limits, used, oldest, now)
        return self._status(used, limits.hourly_limit, limits.batch_limit, oldest)

    def acquire(self, user_id: str, plan_key: str | None, batch_size: int = 1) -> float:
        """
        Check the limits and take a slot in the hourly window atomically.

        Returns:
            The slot's timestamp, to hand back to release() if the request fails

        Raises:
            BatchLimitExceededError: If batch_size exceeds the plan's batch limit
            RateLimitExceededError: If the hourly window has no room left
        """
        limits = self._check_batch(user_id, plan_key, batch_size)

        now = self._clock()
        with self._lock:
            window = self._window(user_id, now)
            used = len(window)
            oldest = window[0] if window else None
            if used < limits.hourly_limit:
                self._events.setdefault(user_id, deque()).append(now)
                return now

        self._reject_hourly(user_id, plan_key, limits, used, oldest, now)

    def release(self, user_id: str, slot: float) -> None:
        """Give back a slot taken by acquire(); a slot already aged out is ignored."""
        with self._lock:
            window = self._events.get(user_id)
            if window is None:
                return
            if slot in window:
                window.remove(slot)
            if not window:
                del self._events[user_id]

    def record(self, user_id: str, count: int = 1) -> None:
        """Count requests against the window without checking the limit."""
        now = self._clock()
        with self._lock:
            self._window(user_id, now)
            self._events.setdefault(user_id, deque()).extend([now] * count)

    def usage(self, user_id: str, plan_key: str | None) -> RateLimitStatus:
        """Current window usage without recording anything."""
        limits = self.resolver.limits_for(plan_key)
        with self._lock:
            window = self._window(user_id, self._clock())
            used = len(window)
            oldest = window[0] if window else None
        return self._status(used, limits.hourly_limit, limits.batch_limit, oldest)

    def reset(self, user_id: str) -> None:
        with self._lock:
            self._events.pop(user_id, None)

    def tracked_users(self) -> int:
        """Users with at least one request still inside the window."""
        with self._lock:
            return len(self._events)

    def _check_batch(self, user_id: str, plan_key: str | None, batch_size: int) -> RateLimits:
        limits = self.resolver.limits_for(plan_key)
        if batch_size > limits.batch_limit:
            metrics.record_rate_limit_rejection("batch")
            logger.info(
                "batch_limit_exceeded",
                user_id=user_id,
                plan=plan_key,
                batch_size=batch_size,
                limit=limits.batch_limit,
            )
            raise BatchLimitExceededError(batch_size=batch_size, limit=limits.batch_limit)
        return limits

    def _reject_hourly(
        self,
        user_id: str,
        plan_key: str | None,
        limits: RateLimits,
        used: int,
        oldest: float | None,
        now: float,
    ) -> NoReturn:
        retry_after = int((oldest or now) + self.window_seconds - now) + 1
        metrics.record_rate_limit_rejection("hourly")
        logger.info(
            "hourly_limit_exceeded",
            user_id=user_id,
            plan=plan_key,
            used=used,
            limit=limits.hourly_limit,
            retry_after_seconds=retry_after,
        )
        raise RateLimitExceededError(limit=limits.hourly_limit, retry_after_seconds=retry_after)

    def _window(self, user_id: str, now: float) -> deque[float]:
        # Caller holds self._lock; an emptied window is dropped from the map
        window = self._events.get(user_id)
        if window is None:
            return deque()
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        if not window:
            del self._events[user_id]
        return window
