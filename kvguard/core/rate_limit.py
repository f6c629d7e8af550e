"""Rate limiting dependency for FastAPI routes.

This module wires the token bucket limiter into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Shared state: buckets live in the shared store, so every worker and host
  enforces one limit per requester.
- Explicit failure policy: when the store cannot evaluate a bucket,
  RATE_LIMIT_FAILURE_MODE decides. "open" (default) lets the request through
  and logs ``rate_limit.fail_open``; "closed" rejects it with 503.

Rate limiting strategy:
- One bucket per API key.
- If the API key is missing, fall back to client IP.
- Routes declare their cost; reads cost 1 token, writes cost more.
"""

from __future__ import annotations

import hashlib
import logging
import math
from typing import Annotated, Awaitable, Callable, Union

from fastapi import Header, HTTPException, Request, Response, status

from kvguard.core.config import RateLimitSettings
from kvguard.core.errors import LimiterEvalError
from kvguard.services.token_bucket import RateDecision, TokenBucketLimiter

logger = logging.getLogger(__name__)


def get_rate_limiter(request: Request) -> TokenBucketLimiter:
    """Return the limiter built by the app factory.

    Returns:
        TokenBucketLimiter: Limiter bound to the shared store.
    """

    return request.app.state.rate_limiter


def _build_rate_limit_key(request: Request, x_api_key: str | None) -> str:
    """Build the limiter key for the current request.

    Args:
        request: FastAPI request.
        x_api_key: API key value from the X-API-Key header.

    Returns:
        str: Namespaced limiter key.
    """

    if x_api_key:
        return f"api_key:{x_api_key}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


def _hash_limiter_key(key: str) -> str:
    """Hash the rate limit key for logging without exposing secrets."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def _format_tokens(value: float) -> str:
    return f"{value:.2f}"


def _decision_headers(decision: RateDecision) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": f"{decision.limit:g}",
        "X-RateLimit-Remaining": _format_tokens(decision.remaining),
    }
    if not decision.allowed:
        retry_after = max(1, math.ceil(decision.retry_after))
        headers["Retry-After"] = str(retry_after)
        # Limiter clock, not wall time, so both headers share one reading
        headers["X-RateLimit-Reset"] = str(math.ceil(decision.evaluated_at + decision.retry_after))
    return headers


Cost = Union[float, Callable[[RateLimitSettings], float]]


def rate_limited(cost: Cost = 1.0) -> Callable[..., Awaitable[None]]:
    """Build a FastAPI dependency consuming ``cost`` tokens per request.

    Args:
        cost: Tokens the route weighs, or a callable reading them from the
            app's rate limit settings.

    Returns:
        Dependency callable for ``Depends``.
    """

    async def _enforce(
        request: Request,
        response: Response,
        x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
    ) -> None:
        """Consume tokens for the requester or raise HTTP 429.

        Raises:
            HTTPException: 429 Too Many Requests when the bucket is empty.
            LimiterEvalError: When evaluation fails and the policy is "closed".
        """

        cfg = request.app.state.settings.rate_limit
        if not cfg.enabled:
            return

        tokens = cost(cfg) if callable(cost) else cost
        limiter = get_rate_limiter(request)
        key = _build_rate_limit_key(request, x_api_key)
        key_hash = _hash_limiter_key(key)
        key_type = "api_key" if x_api_key else "ip"

        try:
            decision = await limiter.allow_n(key, tokens)
        except LimiterEvalError as exc:
            if cfg.failure_mode == "closed":
                logger.error(
                    "rate_limit.fail_closed",
                    extra={"key_type": key_type, "key_hash": key_hash, "error_msg": exc.message},
                )
                raise
            logger.warning(
                "rate_limit.fail_open",
                extra={"key_type": key_type, "key_hash": key_hash, "error_msg": exc.message},
            )
            return

        headers = _decision_headers(decision) if cfg.include_headers else {}

        if decision.allowed:
            logger.info(
                "rate_limit.allowed",
                extra={
                    "key_type": key_type,
                    "key_hash": key_hash,
                    "cost": tokens,
                    "limit": decision.limit,
                    "remaining": round(decision.remaining, 2),
                },
            )
            response.headers.update(headers)
            return

        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_type": key_type,
                "key_hash": key_hash,
                "cost": tokens,
                "limit": decision.limit,
                "remaining": round(decision.remaining, 2),
                "retry_after_s": round(decision.retry_after, 3),
            },
        )

        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Try again later.",
            headers=headers or None,
        )

    return _enforce


enforce_rate_limit = rate_limited()
enforce_write_rate_limit = rate_limited(lambda cfg: cfg.write_cost)
