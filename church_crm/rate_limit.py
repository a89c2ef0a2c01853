"""
Fixed-window request limits for recognition and admin entry points.

Each limiter keeps one counter per client id and resets it once the window
has elapsed. Counters are shared across threads.

Usage:
    from church_crm.rate_limit import recognition_limiter

    decision = recognition_limiter.check(client_identifier(ip, user_agent))
    if not decision.allowed:
        ...
"""

from __future__ import annotations

import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int | None = None


class FixedWindowLimiter:
    """Thread-safe fixed-window counter keyed by client id."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("Rate limits need a positive request count and window.")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, client_id: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            count, reset_at = self._entries.get(client_id, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + self.window_seconds

            if count >= self.max_requests:
                retry_after = max(1, math.ceil(reset_at - now))
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            count += 1
            self._entries[client_id] = (count, reset_at)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - count)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, reset_at) in self._entries.items() if now >= reset_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def reset(self, client_id: str | None = None) -> None:
        with self._lock:
            if client_id:
                self._entries.pop(client_id, None)
            else:
                self._entries.clear()


def client_identifier(ip_address: str | None, user_agent: str | None = None) -> str:
    ip = (ip_address or "").split(",")[0].strip() or "unknown"
    agent_hash = hashlib.sha256(user_agent.encode("utf-8")).hexdigest()[:8] if user_agent else "unknown"
    return f"{ip}:{agent_hash}"


church_data_limiter = FixedWindowLimiter(max_requests=50, window_seconds=5 * 60)
recognition_limiter = FixedWindowLimiter(max_requests=100, window_seconds=15 * 60)
admin_action_limiter = FixedWindowLimiter(max_requests=20, window_seconds=10 * 60)
