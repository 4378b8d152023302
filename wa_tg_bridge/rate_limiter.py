"""
Sliding-window rate limiter keyed by actor.
"""

import logging
import time
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Admit at most max_per_minute events per key in any 60-second window"""

    def __init__(self, max_per_minute: int = 30, clock: Callable[[], float] = time.monotonic):
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._windows: Dict[str, List[float]] = {}

    def can_proceed(self, key: str) -> bool:
        """Record an admission for key if the window has room"""
        now = self._clock()
        window_start = now - WINDOW_SECONDS
        valid = [ts for ts in self._windows.get(key, []) if ts > window_start]
        self._windows[key] = valid

        if len(valid) >= self.max_per_minute:
            logger.warning(f"⚠️  Rate limit hit for: {key}")
            return False

        valid.append(now)
        return True

    def cleanup(self) -> int:
        """Drop expired timestamps and empty windows. Returns keys removed."""
        window_start = self._clock() - WINDOW_SECONDS
        removed = 0
        for key in list(self._windows):
            valid = [ts for ts in self._windows[key] if ts > window_start]
            if valid:
                self._windows[key] = valid
            else:
                del self._windows[key]
                removed += 1
        return removed

    def tracked_keys(self) -> int:
        return len(self._windows)
