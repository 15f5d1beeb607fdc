# common/rate_limit.py
import os
import time
from typing import Dict, List

from fastapi import HTTPException, status


class SlidingWindowLimiter:
    """
    In-process sliding-window rate limiter: at most ``max_requests`` hits
    per ``window_seconds`` for each key.

    Every service keeps its own limiter instances, so limits are per process.
    All checks are skipped when ``TESTING=1``.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60, detail: str = "Too many requests"):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.detail = detail
        self._request_log: Dict[str, List[float]] = {}

    def hit(self, key: str) -> None:
        """
        Record one request for ``key``.

        Raises
        ------
        HTTPException
            429 once the key has used up its window.
        """
        if os.getenv("TESTING") == "1":
            return

        now = time.time()
        timestamps = [
            ts for ts in self._request_log.get(key, []) if ts >= now - self.window_seconds
        ]

        if len(timestamps) >= self.max_requests:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=self.detail,
            )

        timestamps.append(now)
        self._request_log[key] = timestamps

    def reset(self) -> None:
        self._request_log.clear()


def client_ip(request) -> str:
    return request.client.host if request.client else "unknown"
