"""
Per-tenant rate limiter for Act! API calls.

Each tenant gets its own fixed call budget per window plus a minimum
spacing between consecutive calls. One tenant exhausting its budget
never delays another tenant.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from act_billing_sync.cache import Clock, TenantCache

logger = structlog.get_logger(__name__)


class RateLimitExceeded(Exception):
    """Raised when a tenant's window budget is spent and waiting is not allowed."""

    def __init__(self, tenant_id: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for tenant {tenant_id}, retry in {retry_after:.1f}s"
        )
        self.tenant_id = tenant_id
        self.retry_after = retry_after


@dataclass
class RateLimitEntry:
    """Window state for one tenant."""
    call_count: int = 0
    reset_at: float = 0.0
    last_call: float | None = None


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    requests_rejected: int = 0
    total_wait_time: float = 0.0


class TenantRateLimiter:
    """
    Thread-safe sliding-window limiter keyed by tenant.

    How it works:
    - A window opens on a tenant's first call and lasts `window_seconds`
    - Each accepted call increments the tenant's counter
    - When the window has passed, the counter resets
    - At `calls_per_window`, the call is rejected (or waits for the reset
      if the wait fits in `max_window_wait_seconds`)
    - Calls closer together than `min_interval_seconds` sleep the remainder

    Example:
        limiter = TenantRateLimiter(calls_per_window=100, window_seconds=60)

        limiter.check_or_wait("tenant-1")  # may sleep, may raise
        make_api_request()
    """

    def __init__(
        self,
        calls_per_window: int = 100,
        window_seconds: float = 60.0,
        min_interval_seconds: float = 0.1,
        max_window_wait_seconds: float = 0.0,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        if calls_per_window <= 0:
            raise ValueError("calls_per_window must be positive")

        self.calls_per_window = calls_per_window
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self.max_window_wait_seconds = max_window_wait_seconds

        self._clock = clock or time.time
        self._sleep = sleep or time.sleep
        self._entries: TenantCache[str, RateLimitEntry] = TenantCache(clock=self._clock)
        self._lock = threading.Lock()

        self.stats = RateLimiterStats()

    def check_or_wait(self, tenant_id: str) -> None:
        """
        Block until the tenant may make one call, then record it.

        Raises:
            RateLimitExceeded: window budget spent and the reset is further
                away than max_window_wait_seconds
        """
        while True:
            with self._lock:
                now = self._clock()
                entry = self._entries.get_or_set(tenant_id, RateLimitEntry)

                if now >= entry.reset_at:
                    entry.call_count = 0
                    entry.reset_at = now + self.window_seconds

                if entry.call_count >= self.calls_per_window:
                    wait_time = entry.reset_at - now
                    if wait_time > self.max_window_wait_seconds:
                        self.stats.requests_rejected += 1
                        logger.warning(
                            "Rate limit exceeded",
                            tenant_id=tenant_id,
                            retry_after=round(wait_time, 2),
                        )
                        raise RateLimitExceeded(tenant_id, wait_time)
                else:
                    since_last = (
                        now - entry.last_call
                        if entry.last_call is not None
                        else self.min_interval_seconds
                    )
                    wait_time = self.min_interval_seconds - since_last

                    if wait_time <= 0:
                        entry.call_count += 1
                        entry.last_call = now
                        self.stats.requests_made += 1
                        return

            # Wait outside the lock
            self.stats.requests_throttled += 1
            self.stats.total_wait_time += wait_time
            logger.debug("Waiting for rate limit", tenant_id=tenant_id, wait_seconds=wait_time)
            self._sleep(wait_time)

    def status(self, tenant_id: str) -> dict[str, Any]:
        """Remaining calls in the current window and when it resets."""
        entry = self._entries.get(tenant_id)
        if entry is None or self._clock() >= entry.reset_at:
            return {"calls_remaining": self.calls_per_window, "reset_at": None}

        return {
            "calls_remaining": max(0, self.calls_per_window - entry.call_count),
            "reset_at": entry.reset_at,
        }

    def reset(self, tenant_id: str) -> None:
        """Forget a tenant's window state."""
        self._entries.invalidate(tenant_id)

    def get_stats(self) -> dict:
        """Get rate limiter statistics for monitoring."""
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "requests_rejected": self.stats.requests_rejected,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "tenants_tracked": len(self._entries),
            "calls_per_window": self.calls_per_window,
        }
