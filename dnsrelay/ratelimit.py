"""Per-client-IP request rate limiting."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections import deque
from typing import Callable, Iterable

log = logging.getLogger(__name__)

_BUCKET_TTL = 3600.0


class RateLimiter:
    """Allows at most ``limit`` events within any sliding ``interval`` seconds."""

    def __init__(
        self,
        limit: int,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError(f"bad limit: {limit}")
        self.limit = limit
        self.interval = interval
        self._clock = clock
        self._times: deque[float] = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Record an event and report whether it is within the limit."""
        with self._lock:
            now = self._clock()
            if len(self._times) < self.limit:
                self._times.append(now)
                return True

            if now - self._times[0] < self.interval:
                return False

            self._times.popleft()
            self._times.append(now)
            return True


class IPRateLimiter:
    """Keeps one :class:`RateLimiter` per client IP address.

    A ``ratelimit`` of zero or less disables limiting.  Addresses in
    ``whitelist`` are never limited.  Idle buckets are dropped after an hour.
    """

    def __init__(
        self,
        ratelimit: int,
        whitelist: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ratelimit = ratelimit
        self.whitelist = frozenset(whitelist)
        self._clock = clock
        self._buckets: dict[str, tuple[RateLimiter, float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + _BUCKET_TTL

    def _limiter_for(self, ip: str) -> RateLimiter:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._buckets = {k: v for k, v in self._buckets.items() if v[1] > now}
                self._next_sweep = now + _BUCKET_TTL

            entry = self._buckets.get(ip)
            if entry is None or entry[1] <= now:
                limiter = RateLimiter(self.ratelimit, 1.0, self._clock)
                self._buckets[ip] = (limiter, now + _BUCKET_TTL)
                return limiter

            return entry[0]

    def is_ratelimited(self, addr) -> bool:
        """Report whether a request from ``addr`` must be dropped.

        ``addr`` is a socket address tuple, an IP string or an IP address.
        """
        if self.ratelimit <= 0:
            return False

        host = addr[0] if isinstance(addr, tuple) else addr
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            log.info("failed to get the ip address from %r", addr)
            return False

        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped

        ip_str = str(ip)
        if ip_str in self.whitelist:
            return False

        return not self._limiter_for(ip_str).try_acquire()