"""
Sliding-window request limiter keyed by client address.

Every client address gets a budget of requests per window (15 minutes by
default).  Loopback callers and containers on the Docker bridge network get an
elevated budget.
"""

from __future__ import annotations

import ipaddress
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

WINDOW_SECONDS = 15 * 60
DEFAULT_BUDGET = 100
INTERNAL_BUDGET = 10000
PRUNE_INTERVAL_SECONDS = 60

_DOCKER_BRIDGE = ipaddress.ip_network("172.16.0.0/12")


def is_internal_address(address: Optional[str]) -> bool:
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback or ip in _DOCKER_BRIDGE


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class SlidingWindowRateLimiter:
    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        budget: int = DEFAULT_BUDGET,
        internal_budget: int = INTERNAL_BUDGET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.budget = budget
        self.internal_budget = internal_budget
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    def budget_for(self, address: Optional[str]) -> int:
        return self.internal_budget if is_internal_address(address) else self.budget

    def hit(self, address: Optional[str]) -> RateLimitDecision:
        key = address or "unknown"
        limit = self.budget_for(address)
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            allowed = len(hits) < limit
            if allowed:
                hits.append(now)
            oldest = hits[0] if hits else now
            reset = max(0, math.ceil(oldest + self.window_seconds - now))
            remaining = max(0, limit - len(hits))
            if now - self._last_prune >= PRUNE_INTERVAL_SECONDS:
                self._prune(cutoff)
                self._last_prune = now
        return RateLimitDecision(allowed=allowed, limit=limit, remaining=remaining, reset_seconds=reset)

    def _prune(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
