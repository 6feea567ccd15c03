"""Per-client sliding-window request limiter."""

from __future__ import annotations

import time


class SlidingWindowLimiter:
    """Sliding-window rate limiter: at most ``max_per_window`` hits per key."""

    def __init__(self, max_per_window: int, window_seconds: float = 60.0) -> None:
        self._max = max_per_window
        self._window = window_seconds
        self._counters: dict[str, list[float]] = {}

    def check(self, key: str, now: float | None = None) -> bool:
        """Return True if the request should be allowed."""
        now = time.monotonic() if now is None else now
        cutoff = now - self._window
        window = [t for t in self._counters.get(key, []) if t > cutoff]

        if len(window) >= self._max:
            self._counters[key] = window
            return False

        window.append(now)
        self._counters[key] = window
        return True

    def cleanup(self, now: float | None = None) -> None:
        """Remove stale keys (call periodically)."""
        now = time.monotonic() if now is None else now
        cutoff = now - 2 * self._window
        stale = [k for k, v in self._counters.items() if all(t < cutoff for t in v)]
        for k in stale:
            del self._counters[k]

    def __len__(self) -> int:
        return len(self._counters)


class RouteRateLimiter:
    """One sliding window per route group (general, auth, tasks, security)."""

    def __init__(self, limits: dict[str, int], window_seconds: float = 60.0) -> None:
        self._limiters = {
            group: SlidingWindowLimiter(limit, window_seconds)
            for group, limit in limits.items()
        }
        self.rejected = 0

    def check(self, group: str, client: str, now: float | None = None) -> bool:
        limiter = self._limiters.get(group) or self._limiters.get("general")
        if limiter is None:
            return True
        allowed = limiter.check(client, now)
        if not allowed:
            self.rejected += 1
        return allowed

    def cleanup(self, now: float | None = None) -> None:
        for limiter in self._limiters.values():
            limiter.cleanup(now)
