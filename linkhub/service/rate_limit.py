from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Union

from redis.exceptions import RedisError

from linkhub.logging import get_logger
from linkhub.service.audit import AuditLogger, AuditReason, SecurityEvent
from linkhub.service.errors import RateLimitedError, ServerError
from linkhub.storage.errors import StoreUnavailableError
from linkhub.storage.models import utcnow
from linkhub.storage.redis_cache import RedisCache, SyncRedisCache
from linkhub.storage.repository import AuthRepository

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    window_seconds: int = DEFAULT_WINDOW_SECONDS


class RateLimiter:
    """Fixed-window counters keyed by scope and caller identifier.

    Windows are aligned to the epoch (``floor(now / window) * window``), so
    every process agrees on where a window starts. Counters live in Redis when
    a cache is configured and in the entity store otherwise; either way the
    increment is a single atomic operation. Backend failures deny the request
    rather than silently allowing it.
    """

    def __init__(
        self,
        repository: AuthRepository,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.audit = audit
        self._clock = clock or utcnow

    @staticmethod
    def _normalize_window(scope: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                scope=scope,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return window_seconds

    def _window(self, window_seconds: int) -> Tuple[int, int]:
        """Start of the current window and seconds until it ends."""
        now_ts = int(self._clock().timestamp())
        start = (now_ts // window_seconds) * window_seconds
        return start, max(1, start + window_seconds - now_ts)

    @staticmethod
    def _counter_key(scope: str, identifier: str, window_start: int) -> str:
        digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:32]
        return f"{scope}:{digest}:{window_start}"

    async def _increment(self, key: str, window_start: int, window_seconds: int) -> int:
        try:
            if self.cache is not None:
                return await self.cache.incr_window(key, window_seconds)
            expires_at = datetime.fromtimestamp(window_start + window_seconds, tz=timezone.utc)
            return self.repository.increment_counter(key, expires_at=expires_at)
        except (RedisError, StoreUnavailableError, OSError) as exc:
            logger.error("rate_limit_backend_failed", error_type=type(exc).__name__, error=str(exc))
            raise ServerError("rate limiter unavailable") from exc

    async def _read(self, key: str) -> int:
        try:
            if self.cache is not None:
                return await self.cache.get_window(key)
            return self.repository.get_counter(key)
        except (RedisError, StoreUnavailableError, OSError) as exc:
            logger.error("rate_limit_backend_failed", error_type=type(exc).__name__, error=str(exc))
            raise ServerError("rate limiter unavailable") from exc

    def _decide(self, count: int, limit: int, reset: int, window_seconds: int) -> RateLimitDecision:
        allowed = count <= limit
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            retry_after=0 if allowed else reset,
            window_seconds=window_seconds,
        )

    async def check(
        self,
        scope: str,
        identifier: str,
        *,
        limit: int,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        client_ip: Optional[str] = None,
    ) -> RateLimitDecision:
        """Count one request and decide whether it is within the limit."""
        if limit <= 0:
            return RateLimitDecision(True, limit, limit, 0, window_seconds)
        window_seconds = self._normalize_window(scope, window_seconds)
        start, reset = self._window(window_seconds)
        count = await self._increment(self._counter_key(scope, identifier, start), start, window_seconds)
        decision = self._decide(count, limit, reset, window_seconds)
        if not decision.allowed and self.audit is not None:
            # Every denial is recorded; only the first in a window logs at warning
            self.audit.record(
                SecurityEvent.RATE_LIMIT_EXCEEDED,
                outcome="failure",
                reason=AuditReason.RATE_LIMITED,
                client_ip=client_ip,
                level=None if count == limit + 1 else "info",
                scope=scope,
                limit=limit,
                window_seconds=window_seconds,
                count=count,
            )
        return decision

    async def peek(
        self,
        scope: str,
        identifier: str,
        *,
        limit: int,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitDecision:
        """Decide whether a further request would still be counted as allowed."""
        if limit <= 0:
            return RateLimitDecision(True, limit, limit, 0, window_seconds)
        window_seconds = self._normalize_window(scope, window_seconds)
        start, reset = self._window(window_seconds)
        count = await self._read(self._counter_key(scope, identifier, start))
        allowed = count < limit
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            retry_after=0 if allowed else reset,
            window_seconds=window_seconds,
        )

    async def enforce(
        self,
        scope: str,
        identifier: str,
        *,
        limit: int,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        client_ip: Optional[str] = None,
    ) -> RateLimitDecision:
        decision = await self.check(
            scope, identifier, limit=limit, window_seconds=window_seconds, client_ip=client_ip
        )
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after)
        return decision

    async def reset(
        self, scope: str, identifier: str, *, window_seconds: int = DEFAULT_WINDOW_SECONDS
    ) -> None:
        window_seconds = self._normalize_window(scope, window_seconds)
        start, _ = self._window(window_seconds)
        key = self._counter_key(scope, identifier, start)
        try:
            if self.cache is not None:
                await self.cache.reset_window(key)
            else:
                self.repository.delete_counter(key)
        except (RedisError, StoreUnavailableError, OSError) as exc:
            logger.error("rate_limit_backend_failed", error_type=type(exc).__name__, error=str(exc))
            raise ServerError("rate limiter unavailable") from exc
