"""Shared fixtures for rate limiting tests.

``FakeRedisBackend`` keeps sorted sets and strings in dicts and runs the
sliding window script as one critical section, the way Redis runs a Lua
script. Coroutines yield inside the critical section so that concurrency
tests would catch a non-atomic implementation.
"""

import asyncio
import fnmatch
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from pingbuoy.app.services.rate_limit import (
    FailurePolicy,
    KeyValueBackend,
    SLIDING_WINDOW_SCRIPT,
    SlidingWindowRateLimiter,
)

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRedisBackend(KeyValueBackend):
    """In-memory backend emulating the Redis commands the limiter uses."""

    def __init__(self):
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.strings: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.pexpires: Dict[str, int] = {}
        self.error: Optional[BaseException] = None
        self.eval_reply: Any = None
        self.calls: List[str] = []
        self.closed = False
        self._lock = asyncio.Lock()

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if self.error is not None:
            raise self.error

    def _purge(self, key: str, max_score: float) -> int:
        members = self.zsets.get(key, {})
        expired = [m for m, score in members.items() if 0 <= score <= max_score]
        for member in expired:
            del members[member]
        return len(expired)

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        self._record("eval")
        assert script == SLIDING_WINDOW_SCRIPT
        if self.eval_reply is not None:
            return self.eval_reply

        key = keys[0]
        now, window_ms, max_requests = int(args[0]), int(args[1]), int(args[2])
        member = f"{args[0]}:{args[3]}"
        window_start = now - window_ms

        async with self._lock:
            self._purge(key, window_start)
            await asyncio.sleep(0)
            members = self.zsets.setdefault(key, {})
            count = len(members)
            await asyncio.sleep(0)

            if count >= max_requests:
                oldest = min(members.values())
                retry_after = max(0, math.ceil((oldest + window_ms - now) / 1000))
                return [0, max_requests, 0, now + window_ms, retry_after, count, window_start]

            members[member] = now
            self.pexpires[key] = window_ms
            total = count + 1
            return [1, max_requests, max_requests - total, now + window_ms, 0, total, window_start]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        self._record("zremrangebyscore")
        return self._purge(key, max_score)

    async def zcard(self, key: str) -> int:
        self._record("zcard")
        return len(self.zsets.get(key, {}))

    async def zrange_withscores(self, key: str, start: int, end: int) -> List[Tuple[str, float]]:
        self._record("zrange")
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start:end + 1]

    async def delete(self, key: str) -> int:
        self._record("delete")
        removed = int(self.zsets.pop(key, None) is not None)
        removed += int(self.strings.pop(key, None) is not None)
        return removed

    async def setex(self, key: str, seconds: int, value: str) -> None:
        self._record("setex")
        self.strings[key] = value
        self.ttls[key] = seconds

    async def get(self, key: str) -> Optional[str]:
        self._record("get")
        return self.strings.get(key)

    async def scan_keys(self, pattern: str) -> List[str]:
        self._record("scan")
        keys = list(self.zsets) + list(self.strings)
        return [k for k in keys if fnmatch.fnmatchcase(k, pattern)]

    async def ping(self) -> bool:
        self._record("ping")
        return True

    async def info(self) -> Dict[str, Any]:
        self._record("info")
        return {
            "redis_version": "7.2.4",
            "used_memory_human": "1.20M",
            "used_memory_peak_human": "2.00M",
        }

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeRedisBackend()


@pytest.fixture
def limiter(backend, clock):
    """Limiter with a development (fail-open) policy."""
    return SlidingWindowRateLimiter(
        backend,
        key_prefix="ratelimit",
        policy=FailurePolicy("development"),
        clock=clock,
    )


@pytest.fixture
def production_limiter(backend, clock):
    """Limiter with a production (fail-closed) policy."""
    return SlidingWindowRateLimiter(
        backend,
        key_prefix="ratelimit",
        policy=FailurePolicy("production"),
        clock=clock,
    )
