from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Optional

from redis import Redis, RedisError
from starlette.requests import Request

logger = logging.getLogger("whatsapp_ingest.rate_limit")


class RateLimitBackendError(Exception):
    pass


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class EndpointRateLimits:
    ip: RateLimitRule
    org: RateLimitRule
    burst: RateLimitRule
    enabled: bool = True


DEFAULT_RATE_LIMITS: dict[str, EndpointRateLimits] = {
    "webhook": EndpointRateLimits(
        ip=RateLimitRule(1000, 3600),
        org=RateLimitRule(5000, 3600),
        burst=RateLimitRule(50, 60),
    ),
    "webhook_retry_job": EndpointRateLimits(
        ip=RateLimitRule(60, 3600),
        org=RateLimitRule(100, 3600),
        burst=RateLimitRule(2, 60),
    ),
    "admin": EndpointRateLimits(
        ip=RateLimitRule(60, 3600),
        org=RateLimitRule(100, 3600),
        burst=RateLimitRule(2, 60),
    ),
    "default": EndpointRateLimits(
        ip=RateLimitRule(200, 3600),
        org=RateLimitRule(1000, 3600),
        burst=RateLimitRule(20, 60),
    ),
}



def _utc_from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class RateLimitResult:
    strategy: str
    allowed: bool
    current: int
    limit: int
    reset_at: datetime
    retry_after: int

    @property
    def reset_epoch(self) -> int:
        return int((self.reset_at - datetime(1970, 1, 1)).total_seconds())


class InMemoryRateLimitBackend:
    """Fixed-window counters for a single process."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, tuple[float, int]] = {}
        self._hits_since_purge = 0

    def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        with self._lock:
            now = self._clock()
            self._hits_since_purge += 1
            if self._hits_since_purge >= 1000:
                self._purge(now)
            reset_at, count = self._windows.get(key, (0.0, 0))
            if reset_at <= now:
                reset_at, count = now + window_seconds, 0
            count += 1
            self._windows[key] = (reset_at, count)
            return count, reset_at

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _purge(self, now: float) -> None:
        self._windows = {key: value for key, value in self._windows.items() if value[0] > now}
        self._hits_since_purge = 0


class RedisRateLimitBackend:
    """Fixed-window counters shared across processes.

    INCR and TTL run in one MULTI block. A counter found without an expiry gets
    one, whether it was just created or left behind by an interrupted hit.
    """

    def __init__(self, client: Redis, *, clock: Callable[[], float] = time.time) -> None:
        self._redis = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float = 2.0) -> "RedisRateLimitBackend":
        return cls(
            Redis.from_url(
                url,
                socket_timeout=timeout_seconds,
                socket_connect_timeout=timeout_seconds,
            )
        )

    def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        now = self._clock()
        try:
            pipeline = self._redis.pipeline(transaction=True)
            pipeline.incr(key)
            pipeline.ttl(key)
            current, ttl = pipeline.execute()
            if ttl < 0:
                self._redis.expire(key, window_seconds)
                ttl = window_seconds
        except RedisError as exc:
            raise RateLimitBackendError("rate limit counter unavailable") from exc
        remaining = ttl if isinstance(ttl, int) and ttl > 0 else window_seconds
        return int(current), now + remaining

    def reset(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except RedisError as exc:
            raise RateLimitBackendError("rate limit counter unavailable") from exc


class RateLimiter:
    """
    Evaluates ip, org and burst strategies in that order for an endpoint.

    The first violated strategy decides the outcome. Backend failures allow the
    request through.
    """

    def __init__(
        self,
        backend,
        *,
        limits: Optional[dict[str, EndpointRateLimits]] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.limits = limits or DEFAULT_RATE_LIMITS
        self.enabled = enabled
        self._clock = clock

    def _strategies(
        self, endpoint: str, ip: str, org_id: Optional[str]
    ) -> list[tuple[str, str, RateLimitRule]]:
        config = self.limits.get(endpoint) or self.limits["default"]
        strategies = [("ip", f"ratelimit:{endpoint}:ip:{ip}", config.ip)]
        if org_id:
            strategies.append(("org", f"ratelimit:{endpoint}:org:{org_id}", config.org))
        strategies.append(
            ("burst", f"ratelimit:{endpoint}:burst:{ip}:{org_id or 'anonymous'}", config.burst)
        )
        return strategies

    def check(self, endpoint: str, ip: str, org_id: Optional[str] = None) -> RateLimitResult:
        config = self.limits.get(endpoint) or self.limits["default"]
        now = self._clock()
        if not self.enabled or not config.enabled:
            return RateLimitResult(
                strategy="disabled",
                allowed=True,
                current=0,
                limit=0,
                reset_at=_utc_from_epoch(now),
                retry_after=0,
            )

        result: Optional[RateLimitResult] = None
        for strategy, key, rule in self._strategies(endpoint, ip, org_id):
            try:
                current, reset_epoch = self.backend.hit(key, rule.window_seconds)
            except RateLimitBackendError as exc:
                logger.warning(
                    "rate_limit_backend_unavailable endpoint=%s strategy=%s error=%s",
                    endpoint,
                    strategy,
                    exc,
                )
                current, reset_epoch = 0, now + rule.window_seconds
            allowed = current <= rule.limit
            result = RateLimitResult(
                strategy=strategy,
                allowed=allowed,
                current=current,
                limit=rule.limit,
                reset_at=_utc_from_epoch(reset_epoch),
                retry_after=0 if allowed else max(1, math.ceil(reset_epoch - now)),
            )
            if not allowed:
                logger.warning(
                    "rate_limit_exceeded endpoint=%s strategy=%s current=%s limit=%s",
                    endpoint,
                    strategy,
                    current,
                    rule.limit,
                )
                return result
        return result

    def reset(self, endpoint: str, ip: str, org_id: Optional[str] = None) -> None:
        for _, key, _ in self._strategies(endpoint, ip, org_id):
            try:
                self.backend.reset(key)
            except RateLimitBackendError as exc:
                logger.warning("rate_limit_reset_failed key=%s error=%s", key, exc)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    if request.client and request.client.host:
        return request.client.host
    return "unknown-ip"


def build_rate_limiter(*, enabled: bool, redis_url: str) -> RateLimiter:
    backend = RedisRateLimitBackend.from_url(redis_url) if redis_url else InMemoryRateLimitBackend()
    return RateLimiter(backend, enabled=enabled)
