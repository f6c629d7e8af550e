"""Distributed token bucket rate limiter.

Bucket state lives in the shared store as two keys, ``<prefix>:<key>:tokens``
and ``<prefix>:<key>:ts``. Every decision is one atomic script evaluation:
refill from elapsed time, then deduct or reject. Concurrent callers for the
same key are therefore serialised by the store without any client-side lock,
and a rejected call never modifies the stored state.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from kvguard.adapters.store.base import AbstractSharedStore, AtomicScript, ScriptView
from kvguard.adapters.store.keys import bucket_keys, validate_prefix
from kvguard.core.config import RateLimitSettings
from kvguard.core.errors import LimiterEvalError, StoreUnavailableError


@dataclass(frozen=True)
class RateDecision:
    """Result of a token bucket evaluation.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Tokens left after this decision (fractional).
        retry_after: Seconds until ``cost`` tokens are available (0 when allowed).
        limit: Bucket capacity.
        reset_after: Seconds until the bucket would be full again.
        evaluated_at: Limiter clock reading (UNIX seconds) the decision used.
    """

    allowed: bool
    remaining: float
    retry_after: float
    limit: float
    reset_after: float
    evaluated_at: float


def _idle_ttl(capacity: float, rate: float) -> int:
    # Twice the time a drained bucket needs to refill completely
    return max(1, math.ceil(capacity / rate * 2))


def _token_bucket_local(view: ScriptView, keys: Sequence[str], args: Sequence[str]) -> list[Any]:
    tokens_key, timestamp_key = keys
    rate, capacity, now, requested = (float(a) for a in args)

    stored_tokens = view.get(tokens_key)
    tokens = capacity if stored_tokens is None else float(stored_tokens)
    stored_ts = view.get(timestamp_key)
    last_refill = now if stored_ts is None else float(stored_ts)

    elapsed = max(0.0, now - last_refill)
    tokens = min(capacity, tokens + elapsed * rate)

    allowed = 0
    retry_after = 0.0
    if tokens >= requested:
        tokens -= requested
        allowed = 1
        if requested > 0:
            ttl = _idle_ttl(capacity, rate)
            view.set(tokens_key, repr(tokens))
            view.set(timestamp_key, repr(now))
            view.expire(tokens_key, ttl)
            view.expire(timestamp_key, ttl)
    else:
        retry_after = (requested - tokens) / rate

    return [allowed, repr(tokens), repr(retry_after)]


# Numbers go back as strings: Redis truncates Lua numbers in replies to integers
TOKEN_BUCKET_SCRIPT = AtomicScript(
    name="token_bucket",
    lua="""
local tokens_key = KEYS[1]
local timestamp_key = KEYS[2]

local rate = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local requested = tonumber(ARGV[4])

local tokens = tonumber(redis.call("get", tokens_key))
if tokens == nil then
    tokens = capacity
end

local last_refill = tonumber(redis.call("get", timestamp_key))
if last_refill == nil then
    last_refill = now
end

local elapsed = math.max(0, now - last_refill)
tokens = math.min(capacity, tokens + elapsed * rate)

local allowed = 0
local retry_after = 0
if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
    if requested > 0 then
        local ttl = math.max(1, math.ceil(capacity / rate * 2))
        redis.call("set", tokens_key, string.format("%.17g", tokens))
        redis.call("set", timestamp_key, string.format("%.17g", now))
        redis.call("expire", tokens_key, ttl)
        redis.call("expire", timestamp_key, ttl)
    end
else
    retry_after = (requested - tokens) / rate
end

return {allowed, string.format("%.17g", tokens), string.format("%.17g", retry_after)}
""",
    local=_token_bucket_local,
)


class TokenBucketLimiter:
    """Token bucket limiter whose state is shared by every instance.

    Attributes:
        rate: Tokens refilled per second.
        capacity: Maximum tokens a bucket holds (burst size).
        prefix: Key prefix of bucket state in the store.
    """

    def __init__(
        self,
        store: AbstractSharedStore,
        *,
        rate: float,
        capacity: float,
        prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared store evaluating the bucket script.
            rate: Tokens per second, > 0.
            capacity: Bucket size, > 0.
            prefix: Bucket key prefix.
            clock: UNIX time source in seconds; instances should share a
                synchronised clock since refill uses caller time.
            logger: Logger for limiter events.

        Raises:
            ValueError: If rate or capacity are invalid.
        """
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self.rate = float(rate)
        self.capacity = float(capacity)
        self.prefix = validate_prefix(prefix, "prefix")
        self._store = store
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(
        cls,
        store: AbstractSharedStore,
        rate_limit_settings: RateLimitSettings,
        **overrides: Any,
    ) -> "TokenBucketLimiter":
        """Build a limiter from ``RateLimitSettings``; keyword overrides win."""
        params: dict[str, Any] = {
            "rate": rate_limit_settings.rate_per_second,
            "capacity": rate_limit_settings.capacity,
            "prefix": rate_limit_settings.prefix,
        }
        params.update(overrides)
        return cls(store, **params)

    async def allow(self, key: str) -> RateDecision:
        """Consume one token for ``key`` if available."""
        return await self.allow_n(key, 1)

    async def allow_n(self, key: str, cost: float) -> RateDecision:
        """Consume ``cost`` tokens for ``key`` if available.

        Args:
            key: Bucket identifier (e.g. ``api_key:<key>``).
            cost: Tokens the operation weighs.

        Returns:
            RateDecision for this call.

        Raises:
            ValueError: If cost is not positive or exceeds capacity.
            LimiterEvalError: If the store could not evaluate the bucket.
        """
        if cost <= 0:
            raise ValueError("cost must be > 0")
        if cost > self.capacity:
            raise ValueError("cost must not exceed capacity")

        decision = await self._evaluate(key, float(cost), "allow")
        if decision.allowed:
            self._logger.debug(
                "rate_limit.allowed",
                extra={"bucket": key, "cost": cost, "remaining": round(decision.remaining, 3)},
            )
        else:
            self._logger.debug(
                "rate_limit.exceeded",
                extra={
                    "bucket": key,
                    "cost": cost,
                    "remaining": round(decision.remaining, 3),
                    "retry_after_s": round(decision.retry_after, 3),
                },
            )
        return decision

    async def peek(self, key: str) -> RateDecision:
        """Report the current balance of ``key`` without consuming or persisting."""
        return await self._evaluate(key, 0.0, "peek")

    async def reset(self, key: str) -> None:
        """Delete the bucket so it starts full on next use."""
        for bucket_key in bucket_keys(self.prefix, key):
            try:
                await self._store.delete(bucket_key)
            except StoreUnavailableError as exc:
                raise LimiterEvalError(
                    code="limiter_eval_failed",
                    message=f"Could not reset rate limit bucket: {exc.message}",
                    details={"operation": "reset", "key": key},
                ) from exc

    async def _evaluate(self, key: str, cost: float, operation: str) -> RateDecision:
        keys = bucket_keys(self.prefix, key)
        now = self._clock()
        try:
            reply = await self._store.eval_atomic(
                TOKEN_BUCKET_SCRIPT,
                list(keys),
                [self.rate, self.capacity, now, cost],
            )
        except StoreUnavailableError as exc:
            raise LimiterEvalError(
                code="limiter_eval_failed",
                message=f"Rate limit evaluation failed: {exc.message}",
                details={"operation": operation, "key": key},
            ) from exc

        try:
            allowed_raw, remaining_raw, retry_raw = reply
            allowed = int(allowed_raw) == 1
            remaining = float(remaining_raw)
            retry_after = float(retry_raw)
        except (TypeError, ValueError) as exc:
            raise LimiterEvalError(
                code="limiter_eval_failed",
                message="Invalid reply from rate limit evaluation",
                details={"operation": operation, "key": key},
            ) from exc

        # Guard the invariant against float noise from the store round trip
        remaining = min(self.capacity, max(0.0, remaining))
        return RateDecision(
            allowed=allowed,
            remaining=remaining,
            retry_after=max(0.0, retry_after),
            limit=self.capacity,
            reset_after=(self.capacity - remaining) / self.rate,
            evaluated_at=now,
        )
