import time
from collections import deque
from collections.abc import Callable
from threading import Lock

from fastapi import Depends, HTTPException, status

from .models import Identity


class SlidingWindowLimiter:
    def __init__(self, max_requests: int, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.buckets: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._last_sweep = clock()

    def check(self, key: str) -> None:
        now = self.clock()
        window_start = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(window_start)
                self._last_sweep = now
            bucket = self.buckets.setdefault(key, deque())
            while bucket and bucket[0] < window_start:
                bucket.popleft()
            if len(bucket) >= self.max_requests:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Rate limit exceeded",
                    headers={"Retry-After": str(int(bucket[0] + self.window_seconds - now) + 1)},
                )
            bucket.append(now)

    def _sweep(self, window_start: float) -> None:
        # Callers that went quiet for a whole window leave no entry behind.
        for key in [key for key, bucket in self.buckets.items() if not bucket or bucket[-1] < window_start]:
            del self.buckets[key]


def per_user_limit(limiter: SlidingWindowLimiter, current_user: Callable[..., Identity]):
    """Dependency that charges one request to the authenticated caller."""

    def dependency(user: Identity = Depends(current_user)) -> Identity:
        limiter.check(f"user:{user.id}")
        return user

    return dependency
