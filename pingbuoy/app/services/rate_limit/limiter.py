"""Sliding window log rate limiter over a shared Redis store.

Every check is a single atomic script round trip, so the hard cap holds
across any number of application instances. The limiter keeps no
in-process locks or state beyond its injected backend and clock.
"""

import asyncio
import math
import time
import uuid
from typing import Any, Callable, Optional, Sequence

from pingbuoy.app.core.config import settings
from pingbuoy.app.core.logging import get_log_context, get_logger
from pingbuoy.app.exceptions import (
    BackendProtocolError,
    RateLimitBackendError,
    RateLimitConfigError,
)
from pingbuoy.app.services.rate_limit.backend import KeyValueBackend
from pingbuoy.app.services.rate_limit.identifiers import (
    blocked_identifier,
    build_key,
    ip_identifier,
    user_identifier,
)
from pingbuoy.app.services.rate_limit.models import (
    DualLimitResult,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStats,
)
from pingbuoy.app.services.rate_limit.policy import FailurePolicy
from pingbuoy.app.services.rate_limit.redis_lua import (
    SLIDING_WINDOW_RESULT_FIELDS,
    SLIDING_WINDOW_SCRIPT,
)

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _retry_after_seconds(oldest_hit_ms: float, window_ms: int, now: int) -> int:
    return max(0, math.ceil((oldest_hit_ms + window_ms - now) / 1000))


def _parse_script_reply(reply: Any) -> RateLimitResult:
    """Turn the sliding window script reply into a RateLimitResult.

    Raises:
        BackendProtocolError: If the reply does not have the expected shape
    """
    if not isinstance(reply, (list, tuple)) or len(reply) != len(SLIDING_WINDOW_RESULT_FIELDS):
        raise BackendProtocolError(f"Unexpected rate limit script reply: {reply!r}")
    try:
        values = dict(zip(SLIDING_WINDOW_RESULT_FIELDS, (int(v) for v in reply)))
    except (TypeError, ValueError) as e:
        raise BackendProtocolError(f"Non-integer rate limit script reply: {reply!r}") from e

    if values["success"] not in (0, 1):
        raise BackendProtocolError(f"Invalid success flag in script reply: {reply!r}")

    success = values["success"] == 1
    return RateLimitResult(
        success=success,
        limit=values["limit"],
        remaining=values["remaining"],
        reset_time=values["reset_time"],
        retry_after=None if success else values["retry_after"],
        total_hits=values["total_hits"],
        window_start=values["window_start"],
    )


def _validate_config(config: RateLimitConfig) -> None:
    if not isinstance(config, RateLimitConfig):
        raise RateLimitConfigError(f"Expected RateLimitConfig, got {type(config).__name__}")
    config.validate()


class SlidingWindowRateLimiter:
    """Sliding window log rate limiter.

    Each identifier owns a sorted set of hit timestamps under
    ``<prefix>[:<service>]:<identifier>``. A check purges hits older than
    the window, counts the rest and records a new hit only if the count is
    under quota, all inside one Lua script.

    Backend failures go through the FailurePolicy: fail open outside
    production (or when the config sets ``skip_if_disabled``), fail closed
    in production.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        key_prefix: Optional[str] = None,
        policy: Optional[FailurePolicy] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            backend: Backend adapter; must execute scripts atomically
            key_prefix: Key namespace, defaults to settings.rate_limit_key_prefix
            policy: Failure policy, defaults to one for settings.environment
            clock: Returns current epoch milliseconds
        """
        self._backend = backend
        self._key_prefix = key_prefix or settings.rate_limit_key_prefix
        self._policy = policy or FailurePolicy()
        self._clock = clock or _now_ms

    @property
    def backend(self) -> KeyValueBackend:
        return self._backend

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def policy(self) -> FailurePolicy:
        return self._policy

    def build_key(
        self,
        identifier: str,
        service: Optional[str] = None,
        key_prefix: Optional[str] = None,
    ) -> str:
        return build_key(key_prefix or self._key_prefix, identifier, service)

    async def check_limit(
        self,
        identifier: str,
        config: RateLimitConfig,
        service: Optional[str] = None,
    ) -> RateLimitResult:
        """Atomically evaluate and record one request attempt.

        Args:
            identifier: Scoped identifier, e.g. ``ip:203.0.113.7``
            config: Window and quota to enforce
            service: Optional service class label

        Returns:
            RateLimitResult with allow/deny and quota metadata

        Raises:
            RateLimitConfigError: For an invalid config or empty identifier
            RateLimitBackendError: When the backend fails and policy fails closed
        """
        _validate_config(config)
        key = self.build_key(identifier, service, config.key_prefix)
        now = self._clock()

        try:
            reply = await self._backend.eval(
                SLIDING_WINDOW_SCRIPT,
                [key],
                [now, config.window_ms, config.max_requests, uuid.uuid4().hex],
            )
            result = _parse_script_reply(reply)
        except RateLimitBackendError as e:
            self._policy.handle(e, "check", config=config, identifier=identifier, service=service)
            return self._policy.fail_open_result(config, now)

        if not result.success:
            logger.info(
                f"Rate limit exceeded: {result.total_hits}/{result.limit} hits, "
                f"retry after {result.retry_after}s",
                extra=get_log_context(identifier=identifier, service=service),
            )
        return result

    async def get_status(
        self,
        identifier: str,
        config: RateLimitConfig,
        service: Optional[str] = None,
    ) -> RateLimitResult:
        """Report quota state without recording a hit.

        Expired hits are purged, the rest counted; nothing is added and the
        key's expiry is left alone.
        """
        _validate_config(config)
        key = self.build_key(identifier, service, config.key_prefix)
        now = self._clock()
        window_start = now - config.window_ms

        try:
            await self._backend.zremrangebyscore(key, 0, window_start)
            current_count = int(await self._backend.zcard(key))
            retry_after = None
            if current_count >= config.max_requests:
                oldest = await self._backend.zrange_withscores(key, 0, 0)
                retry_after = (
                    _retry_after_seconds(float(oldest[0][1]), config.window_ms, now)
                    if oldest
                    else math.ceil(config.window_ms / 1000)
                )
        except RateLimitBackendError as e:
            self._policy.handle(e, "status", config=config, identifier=identifier, service=service)
            return self._policy.fail_open_status(config, now)
        except (TypeError, ValueError, IndexError) as e:
            error = BackendProtocolError(f"Unexpected status reply: {e}")
            self._policy.handle(error, "status", config=config, identifier=identifier, service=service)
            return self._policy.fail_open_status(config, now)

        return RateLimitResult(
            success=current_count < config.max_requests,
            limit=config.max_requests,
            remaining=max(0, config.max_requests - current_count),
            reset_time=now + config.window_ms,
            retry_after=retry_after,
            total_hits=current_count,
            window_start=window_start,
        )

    async def reset(
        self,
        identifier: str,
        service: Optional[str] = None,
        key_prefix: Optional[str] = None,
    ) -> None:
        """Delete all recorded hits for an identifier."""
        key = self.build_key(identifier, service, key_prefix)
        try:
            await self._backend.delete(key)
        except RateLimitBackendError as e:
            self._policy.handle(e, "reset", identifier=identifier, service=service)
            return
        logger.info("Rate limit reset", extra=get_log_context(identifier=identifier, service=service))

    async def block(
        self,
        identifier: str,
        duration_ms: int,
        service: Optional[str] = None,
    ) -> None:
        """Hard-block an identifier for ``duration_ms``, whatever its window holds."""
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, int) or duration_ms <= 0:
            raise RateLimitConfigError(f"duration_ms must be a positive integer, got {duration_ms!r}")
        key = self.build_key(blocked_identifier(identifier), service)
        try:
            await self._backend.setex(key, math.ceil(duration_ms / 1000), "1")
        except RateLimitBackendError as e:
            self._policy.handle(e, "block", identifier=identifier, service=service)
            return
        logger.warning(
            f"Identifier blocked for {math.ceil(duration_ms / 1000)}s",
            extra=get_log_context(identifier=identifier, service=service),
        )

    async def is_blocked(self, identifier: str, service: Optional[str] = None) -> bool:
        """Whether an identifier is currently blocked.

        Backend errors always read as "not blocked"; the sliding window
        check that follows still applies the failure policy.
        """
        key = self.build_key(blocked_identifier(identifier), service)
        try:
            return await self._backend.get(key) == "1"
        except RateLimitBackendError as e:
            logger.error(
                f"Rate limit block check failed: {e.message}",
                extra=get_log_context(identifier=identifier, service=service, error_kind=e.kind),
            )
            return False

    async def check_dual_limit(
        self,
        ip: str,
        user_id: Optional[str],
        ip_config: RateLimitConfig,
        user_config: RateLimitConfig,
        service: str,
    ) -> DualLimitResult:
        """Check the IP scope and, when a user is known, the user scope.

        Both checks run concurrently and both always complete, so quota
        accounting stays consistent for each scope even when the other
        denies or errors.
        """
        checks = [self.check_limit(ip_identifier(ip), ip_config, service)]
        if user_id:
            checks.append(self.check_limit(user_identifier(user_id), user_config, service))

        results: Sequence[Any] = await asyncio.gather(*checks, return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome

        return DualLimitResult(
            ip=results[0],
            user=results[1] if len(results) > 1 else None,
        )

    async def check_ip_limit(
        self, ip: str, config: RateLimitConfig, service: Optional[str] = None
    ) -> RateLimitResult:
        return await self.check_limit(ip_identifier(ip), config, service)

    async def check_user_limit(
        self, user_id: str, config: RateLimitConfig, service: Optional[str] = None
    ) -> RateLimitResult:
        return await self.check_limit(user_identifier(user_id), config, service)

    async def get_stats(self) -> RateLimitStats:
        """Aggregate counters across the whole key prefix.

        Walks the keyspace with SCAN; a diagnostic for admin dashboards,
        never for request paths. Errors yield empty stats.
        """
        stats = RateLimitStats()
        unique_ips: set = set()
        unique_users: set = set()
        try:
            keys = await self._backend.scan_keys(f"{self._key_prefix}:*")
            for key in keys:
                if ":blocked:" in key:
                    stats.blocked_identifiers += 1
                    continue
                stats.total_requests += int(await self._backend.zcard(key))
                _, sep, rest = key.partition(":ip:")
                if sep:
                    unique_ips.add(rest)
                    continue
                _, sep, rest = key.partition(":user:")
                if sep:
                    unique_users.add(rest)
        except RateLimitBackendError as e:
            logger.error(
                f"Rate limit stats failed: {e.message}",
                extra=get_log_context(error_kind=e.kind),
            )
            return RateLimitStats()

        stats.unique_ips = len(unique_ips)
        stats.unique_users = len(unique_users)
        return stats
