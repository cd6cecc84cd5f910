from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from fastapi import Request


logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    count: int


class FixedWindowRateLimiter:
    """Fixed-window request counter per client key.

    check() and sweep() share one lock, so concurrent requests for the same
    key never lose an increment.
    """

    def __init__(
        self,
        name: str,
        window_ms: int,
        max_requests: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.window_seconds = window_ms / 1000.0
        self.max_requests = max_requests
        self._clock = clock
        self._entries: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def check(self, key: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _Window(count=0, reset_at=now + self.window_seconds)
                self._entries[key] = entry
            entry.count += 1
            count, reset_at = entry.count, entry.reset_at

        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            count=count,
        )

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries whose window has elapsed. Returns how many were removed."""
        with self._lock:
            if now is None:
                now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)


async def run_sweeper(limiters: Iterable[FixedWindowRateLimiter], interval_seconds: float) -> None:
    """Periodically sweep expired rate-limit windows until cancelled."""
    limiters = list(limiters)
    while True:
        await asyncio.sleep(interval_seconds)
        for limiter in limiters:
            try:
                removed = limiter.sweep()
            except Exception:
                logger.exception("Rate limit sweep failed for %s", limiter.name)
                continue
            if removed:
                logger.debug("Swept %d expired %s rate-limit entries", removed, limiter.name)


PROXY_HEADERS = ("x-forwarded-for", "x-real-ip", "forwarded")


def client_key(request: Request, trust_proxy_headers: bool = False) -> str:
    """Identify the client for rate limiting.

    Forwarding headers are client-controlled unless a proxy overwrites them,
    so they are only honoured when the deployment says one does.
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
