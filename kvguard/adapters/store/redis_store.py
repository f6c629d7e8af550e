"""Redis shared store adapter.

Atomic evaluation runs the Lua rendition of an ``AtomicScript`` server-side
(EVALSHA with EVAL fallback), which Redis executes without interleaving any
other client's command.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import redis.asyncio as redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from kvguard.adapters.store.base import AbstractSharedStore, AtomicScript, StoreValue
from kvguard.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _ttl_ms(ttl: float) -> int:
    # PX rejects zero; sub-millisecond TTLs round up to 1 ms
    return max(1, int(round(ttl * 1000)))


class RedisSharedStore(AbstractSharedStore):
    """Shared store backed by a Redis server (or a Redis-compatible service)."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        operation_timeout_seconds: float = 2.0,
    ) -> None:
        """Initialize the adapter.

        Args:
            client: Async Redis client; responses must not be decoded.
            operation_timeout_seconds: Upper bound for each store call.
        """
        self._client = client
        self._timeout = operation_timeout_seconds
        self._scripts: dict[str, AsyncScript] = {}

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        operation_timeout_seconds: float = 2.0,
        socket_timeout_seconds: float = 1.0,
        connect_timeout_seconds: float = 1.0,
        max_connections: int = 50,
    ) -> "RedisSharedStore":
        """Build the adapter with a pooled client for ``url``."""
        client = redis.from_url(
            url,
            decode_responses=False,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=connect_timeout_seconds,
            max_connections=max_connections,
            health_check_interval=30,
        )
        return cls(client, operation_timeout_seconds=operation_timeout_seconds)

    async def _call(self, operation: str, key: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run one Redis command under the operation timeout.

        Raises:
            StoreUnavailableError: On timeout or any Redis failure.
        """
        try:
            async with asyncio.timeout(self._timeout):
                return await call()
        except (RedisError, TimeoutError, OSError) as exc:
            logger.warning(
                "store.error",
                extra={
                    "operation": operation,
                    "key": key,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Shared store call '{operation}' failed: {exc}",
                details={"operation": operation, "key": key},
            ) from exc

    async def get(self, key: str) -> bytes | None:
        return await self._call("get", key, lambda: self._client.get(key))

    async def set_with_ttl(self, key: str, value: StoreValue, ttl: float) -> None:
        await self._call(
            "set_with_ttl",
            key,
            lambda: self._client.set(key, value, px=_ttl_ms(ttl)),
        )

    async def set_if_absent_with_ttl(self, key: str, value: StoreValue, ttl: float) -> bool:
        result = await self._call(
            "set_if_absent_with_ttl",
            key,
            lambda: self._client.set(key, value, nx=True, px=_ttl_ms(ttl)),
        )
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._call("delete", key, lambda: self._client.delete(key))

    def _script(self, script: AtomicScript) -> AsyncScript:
        registered = self._scripts.get(script.name)
        if registered is None:
            registered = self._client.register_script(script.lua)
            self._scripts[script.name] = registered
        return registered

    async def eval_atomic(
        self,
        script: AtomicScript,
        keys: Sequence[str],
        args: Sequence[StoreValue],
    ) -> Any:
        registered = self._script(script)
        first_key = keys[0] if keys else ""
        return await self._call(
            f"eval_atomic:{script.name}",
            first_key,
            lambda: registered(keys=list(keys), args=list(args)),
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", "", self._client.ping))
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
