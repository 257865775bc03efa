"""
Per-user fixed-window rate limiting.
State is in-process; each worker enforces its own window.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from tradelens.app.common.config import get_config
from tradelens.app.common.supabase_client import insert_row

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter keyed by prefix and user id."""

    def __init__(
        self,
        max_requests: int,
        window_sec: float,
        key_prefix: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_sec = window_sec
        self.key_prefix = key_prefix
        self._clock = clock
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def check(self, user_id: str) -> RateLimitResult:
        key = f"{self.key_prefix}:{user_id}"
        now = self._clock()

        with self._lock:
            # Drop expired windows
            for k in [k for k, v in self._windows.items() if v["reset_at"] < now]:
                del self._windows[k]

            entry = self._windows.get(key)
            if entry is None:
                entry = {"count": 1, "reset_at": now + self.window_sec}
                self._windows[key] = entry
                return RateLimitResult(True, self.max_requests - 1, entry["reset_at"])

            entry["count"] += 1
            if entry["count"] > self.max_requests:
                return RateLimitResult(False, 0, entry["reset_at"])

            return RateLimitResult(
                True, self.max_requests - int(entry["count"]), entry["reset_at"]
            )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def log_rate_limit_exceeded(user_id: str, endpoint: str, ip: Optional[str] = None) -> None:
    """Audit a rejected request. Failures are logged, never raised."""
    if not get_config().supabase_url:
        return
    try:
        insert_row(
            "rate_limit_logs",
            {
                "user_id": user_id,
                "endpoint": endpoint,
                "ip_address": ip,
                "exceeded_at": datetime.now(timezone.utc).isoformat(),
            },
        )
    except Exception as e:
        logger.error(f"Error logging rate limit for {user_id}: {e}")


_limiters: Dict[str, RateLimiter] = {}


def get_limiter(name: str) -> RateLimiter:
    """Named limiter built from config: 'payment' or 'community'."""
    limiter = _limiters.get(name)
    if limiter is None:
        config = get_config()
        limits = {
            "payment": config.payment_rate_limit,
            "community": config.community_rate_limit,
        }
        if name not in limits:
            raise ValueError(f"Unknown rate limiter: {name}")
        limiter = RateLimiter(limits[name], config.rate_limit_window_sec, key_prefix=name)
        _limiters[name] = limiter
    return limiter


def reset_limiters() -> None:
    """Reset limiters for testing."""
    _limiters.clear()
