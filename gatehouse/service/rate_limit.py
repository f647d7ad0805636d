from __future__ import annotations

import asyncio
import hashlib
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.context import RequestContext
from gatehouse.storage.models import RateLimitBucket

logger = get_logger(__name__)

_FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


class RateLimitBackend(Protocol):
    async def check_rate_limit(
        self, key: str, *, capacity: float, refill_rate: float, cost: int = 1
    ) -> Tuple[bool, float, int]:
        ...

    async def reset_rate_limit(self, key: str) -> None:
        ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int
    limit: int

    def headers(self) -> Dict[str, str]:
        """Response headers per draft-polli-ratelimit-headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.retry_after),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, self.retry_after))
        return headers


class RateLimiter:
    """Token bucket limiter with a burst bucket alongside the primary one.

    With a backend (``RedisStore``) each bucket is an atomic Lua call; the two
    calls are not atomic together, so a request denied by the burst bucket has
    still spent a primary token. Without one, buckets live in this process and
    both are consumed under a single ``asyncio.Lock``.
    """

    def __init__(
        self,
        settings: Settings,
        backend: Optional[RateLimitBackend] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self._clock = clock
        self.capacity = float(settings.rate_limit_capacity)
        self.refill_rate = float(settings.rate_limit_refill_per_second)
        self.burst_capacity = float(settings.burst_limit)
        self.burst_refill_rate = self.burst_capacity / float(settings.burst_window_seconds)
        self.max_buckets = settings.rate_limit_max_buckets
        # least recently used first
        self._buckets: OrderedDict[str, RateLimitBucket] = OrderedDict()
        self._lock = asyncio.Lock()

    def is_exempt(self, path: str) -> bool:
        return path in self.settings.rate_limit_exempt_paths

    def _bucket(self, key: str, capacity: float, refill_rate: float, now: float) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            self._buckets.move_to_end(key)
        else:
            bucket = RateLimitBucket(
                key=key,
                tokens=capacity,
                last_refill=now,
                capacity=capacity,
                refill_rate=refill_rate,
            )
            self._buckets[key] = bucket
        return bucket

    async def check(self, key: str, cost: int = 1) -> RateLimitDecision:
        if self.backend is not None:
            decision = await self._check_backend(key, cost)
        else:
            decision = await self._check_local(key, cost)
        if not decision.allowed:
            logger.warning("rate_limit_exceeded", key=key, retry_after=decision.retry_after)
        return decision

    async def _check_local(self, key: str, cost: int) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            if key not in self._buckets and len(self._buckets) + 2 > self.max_buckets:
                self._shrink(now)
            primary = self._bucket(key, self.capacity, self.refill_rate, now)
            burst = self._bucket(
                f"burst:{key}", self.burst_capacity, self.burst_refill_rate, now
            )
            primary.refill(now)
            burst.refill(now)
            if primary.tokens >= cost and burst.tokens >= cost:
                primary.tokens -= cost
                burst.tokens -= cost
                return RateLimitDecision(
                    allowed=True,
                    remaining=int(primary.tokens),
                    retry_after=0,
                    limit=int(self.capacity),
                )
            wait = max(primary.retry_after(cost), burst.retry_after(cost))
            return RateLimitDecision(
                allowed=False,
                remaining=int(primary.tokens),
                retry_after=max(1, math.ceil(wait)),
                limit=int(self.capacity),
            )

    async def _check_backend(self, key: str, cost: int) -> RateLimitDecision:
        allowed, remaining, retry_after = await self.backend.check_rate_limit(
            key, capacity=self.capacity, refill_rate=self.refill_rate, cost=cost
        )
        if allowed:
            allowed, _, retry_after = await self.backend.check_rate_limit(
                f"burst:{key}",
                capacity=self.burst_capacity,
                refill_rate=self.burst_refill_rate,
                cost=cost,
            )
        return RateLimitDecision(
            allowed=allowed,
            remaining=int(remaining),
            retry_after=0 if allowed else max(1, retry_after),
            limit=int(self.capacity),
        )

    def _prune_full(self, now: float) -> int:
        full = [key for key, bucket in self._buckets.items() if bucket.is_full(now)]
        for key in full:
            del self._buckets[key]
        return len(full)

    def _shrink(self, now: float) -> None:
        self._prune_full(now)
        # room for the primary and burst bucket of one new key
        evicted = 0
        while len(self._buckets) + 2 > self.max_buckets:
            self._buckets.popitem(last=False)
            evicted += 1
        if evicted:
            logger.warning("rate_limit_buckets_evicted", count=evicted)

    async def prune(self) -> int:
        """Forget in-process buckets that have refilled to capacity."""
        async with self._lock:
            return self._prune_full(self._clock())

    async def reset(self, key: str) -> None:
        if self.backend is not None:
            await self.backend.reset_rate_limit(key)
            await self.backend.reset_rate_limit(f"burst:{key}")
            return
        async with self._lock:
            self._buckets.pop(key, None)
            self._buckets.pop(f"burst:{key}", None)


def _strip_mapped_prefix(address: str) -> str:
    address = address.strip()
    if address.lower().startswith("::ffff:"):
        return address[7:]
    return address


def client_ip(request: RequestContext, trust_forwarded_for: bool = False) -> str:
    """Best-effort client address; forwarding headers only behind a trusted proxy."""
    if trust_forwarded_for:
        for header in _FORWARDING_HEADERS:
            value = request.header(header)
            if value:
                first_hop = value.split(",")[0].strip()
                if first_hop:
                    return _strip_mapped_prefix(first_hop)
    return _strip_mapped_prefix(request.client_ip or "unknown")


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def resolve_rate_key(request: RequestContext, trust_forwarded_for: bool = False) -> str:
    """API key first, then bearer token, then client address."""
    api_key = request.header("x-api-key")
    if api_key:
        return f"api:{_digest(api_key)}"
    authorization = request.header("authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return f"bearer:{_digest(credentials.strip())}"
    return f"ip:{client_ip(request, trust_forwarded_for)}"


__all__ = [
    "RateLimitBackend",
    "RateLimitDecision",
    "RateLimiter",
    "client_ip",
    "resolve_rate_key",
]
