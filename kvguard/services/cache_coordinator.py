"""Stampede-protected cache-aside loading on top of the shared store.

Only one caller across all processes populates a given key at a time:
- Readers first try the cached entry and return it when it decodes.
- On a miss, a caller tries to create ``lock:<namespace>:<key>`` with a
  conditional write carrying a fresh random token.
- The winner runs the loader, writes the value with a jittered TTL and
  releases the lock with an atomic check-and-delete on its own token.
- Everyone else backs off and re-reads, for a bounded number of attempts.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from kvguard.adapters.store.base import AbstractSharedStore, AtomicScript, ScriptView
from kvguard.adapters.store.keys import data_key, lock_key, validate_prefix
from kvguard.core.config import CacheSettings
from kvguard.core.errors import (
    DecodeFailedError,
    LoaderFailedError,
    PopulationInProgressError,
    StoreUnavailableError,
)
from kvguard.utils.backoff import backoff_delay, jittered_ttl
from kvguard.utils.codecs import Codec, JsonCodec

T = TypeVar("T")

Loader = Callable[[], Awaitable[T]]


def _release_lock_local(view: ScriptView, keys: Sequence[str], args: Sequence[str]) -> int:
    current = view.get(keys[0])
    if current is not None and current.decode("utf-8") == args[0]:
        return view.delete(keys[0])
    return 0


RELEASE_LOCK_SCRIPT = AtomicScript(
    name="release_lock",
    lua="""
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
""",
    local=_release_lock_local,
)


class CacheCoordinator:
    """Single-flight cache-aside loader.

    Attributes:
        namespace: Prefix of every data key handled by this coordinator.
        lock_ttl: Lifetime of a population lock; bounds the damage of a
            crash between acquisition and release.
    """

    def __init__(
        self,
        store: AbstractSharedStore,
        *,
        namespace: str = "cache",
        default_ttl: float = 600.0,
        jitter_max: float = 100.0,
        lock_ttl: float = 30.0,
        loader_timeout: float = 20.0,
        max_attempts: int = 5,
        backoff_base: float = 0.05,
        backoff_max: float = 0.5,
        codec: Codec[Any] | None = None,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Shared store every instance talks to.
            namespace: Data key prefix.
            default_ttl: Base TTL used when ``get_or_load`` gets no ttl.
            jitter_max: Exclusive upper bound of the TTL jitter in seconds.
            lock_ttl: Population lock TTL in seconds.
            loader_timeout: Time budget of the loader; must be below lock_ttl.
            max_attempts: Lock attempts before giving up on a contended key.
            backoff_base: First backoff step in seconds.
            backoff_max: Cap of any backoff step in seconds.
            codec: Default payload codec (JSON when omitted).
            rng: Random source for jitter and backoff.
            logger: Logger for cache events.

        Raises:
            ValueError: If timing parameters are inconsistent.
        """
        if default_ttl <= 0 or lock_ttl <= 0 or loader_timeout <= 0:
            raise ValueError("default_ttl, lock_ttl and loader_timeout must be > 0")
        if loader_timeout >= lock_ttl:
            raise ValueError("loader_timeout must be lower than lock_ttl")
        if jitter_max < 0:
            raise ValueError("jitter_max must be >= 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.namespace = validate_prefix(namespace)
        self.lock_ttl = lock_ttl
        self._store = store
        self._default_ttl = default_ttl
        self._jitter_max = jitter_max
        self._loader_timeout = loader_timeout
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._codec: Codec[Any] = codec or JsonCodec()
        self._rng = rng or random.Random()
        self._logger = logger or logging.getLogger(__name__)
        self._hits = 0
        self._misses = 0
        self._loads = 0
        self._contended = 0
        self._decode_failures = 0

    @classmethod
    def from_settings(
        cls,
        store: AbstractSharedStore,
        cache_settings: CacheSettings,
        **overrides: Any,
    ) -> "CacheCoordinator":
        """Build a coordinator from ``CacheSettings``; keyword overrides win."""
        params: dict[str, Any] = {
            "namespace": cache_settings.namespace,
            "default_ttl": cache_settings.default_ttl_seconds,
            "jitter_max": cache_settings.jitter_max_seconds,
            "lock_ttl": cache_settings.lock_ttl_seconds,
            "loader_timeout": cache_settings.loader_timeout_seconds,
            "max_attempts": cache_settings.max_attempts,
            "backoff_base": cache_settings.backoff_base_seconds,
            "backoff_max": cache_settings.backoff_max_seconds,
        }
        params.update(overrides)
        return cls(store, **params)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"CacheCoordinator(namespace={self.namespace!r}, lock_ttl={self.lock_ttl}, "
            f"hits={self._hits}, misses={self._misses}, loads={self._loads})"
        )

    async def get_or_load(
        self,
        key: str,
        loader: Loader[T],
        ttl: float | None = None,
        *,
        codec: Codec[T] | None = None,
    ) -> T:
        """Return the cached value for ``key``, populating it once on a miss.

        Args:
            key: Cache key (without namespace).
            loader: Coroutine factory producing the value from the origin.
            ttl: Base TTL in seconds (jitter is added on write).
            codec: Payload codec overriding the coordinator default.

        Returns:
            The cached or freshly loaded value.

        Raises:
            PopulationInProgressError: Another caller held the lock for the
                whole attempt budget.
            LoaderFailedError: The loader exceeded its timeout.
            StoreUnavailableError: The shared store failed.
            Exception: Whatever the loader raised, after the lock is released.
        """
        active_codec: Codec[Any] = codec or self._codec
        base_ttl = self._default_ttl if ttl is None else ttl
        if base_ttl <= 0:
            raise ValueError("ttl must be > 0")
        cache_key = data_key(self.namespace, key)
        lock = lock_key(self.namespace, key)

        for attempt in range(self._max_attempts):
            found, value = await self._read(cache_key, active_codec)
            if found:
                return value

            holder = uuid.uuid4().hex
            if await self._store.set_if_absent_with_ttl(lock, holder, self.lock_ttl):
                self._logger.debug(
                    "cache.lock_acquired",
                    extra={"cache_key": cache_key, "attempt": attempt + 1},
                )
                return await self._populate(
                    cache_key, lock, holder, loader, base_ttl, active_codec
                )

            self._contended += 1
            if attempt + 1 < self._max_attempts:
                delay = backoff_delay(
                    attempt, base=self._backoff_base, cap=self._backoff_max, rng=self._rng
                )
                self._logger.debug(
                    "cache.lock_contended",
                    extra={
                        "cache_key": cache_key,
                        "attempt": attempt + 1,
                        "backoff_s": round(delay, 4),
                    },
                )
                await asyncio.sleep(delay)

        self._logger.warning(
            "cache.population_in_progress",
            extra={"cache_key": cache_key, "attempts": self._max_attempts},
        )
        raise PopulationInProgressError(
            code="population_in_progress",
            message="Another caller is populating this key; try again shortly.",
            details={
                "operation": "get_or_load",
                "key": cache_key,
                "attempts": self._max_attempts,
            },
        )

    async def invalidate(self, key: str) -> None:
        """Drop the cached entry for ``key`` so the next read repopulates it."""
        cache_key = data_key(self.namespace, key)
        await self._store.delete(cache_key)
        self._logger.info("cache.invalidated", extra={"cache_key": cache_key})

    def stats(self) -> dict[str, int]:
        """Return per-process counters (not shared across instances)."""
        return {
            "hits": self._hits,
            "misses": self._misses,
            "loads": self._loads,
            "contended": self._contended,
            "decode_failures": self._decode_failures,
        }

    async def _read(self, cache_key: str, codec: Codec[Any]) -> tuple[bool, Any]:
        raw = await self._store.get(cache_key)
        if raw is None:
            self._misses += 1
            self._logger.debug("cache.miss", extra={"cache_key": cache_key, "reason": "not_found"})
            return False, None

        try:
            value = codec.decode(raw)
        except DecodeFailedError as exc:
            self._misses += 1
            self._decode_failures += 1
            self._logger.warning(
                "cache.decode_failed",
                extra={"cache_key": cache_key, "error_msg": exc.message},
            )
            return False, None

        self._hits += 1
        self._logger.debug("cache.hit", extra={"cache_key": cache_key})
        return True, value

    async def _populate(
        self,
        cache_key: str,
        lock: str,
        holder: str,
        loader: Loader[Any],
        base_ttl: float,
        codec: Codec[Any],
    ) -> Any:
        try:
            deadline = asyncio.timeout(self._loader_timeout)
            try:
                async with deadline:
                    value = await loader()
            except TimeoutError as exc:
                if not deadline.expired():
                    raise
                raise LoaderFailedError(
                    code="loader_failed",
                    message="Origin loader did not finish in time.",
                    details={
                        "operation": "get_or_load",
                        "key": cache_key,
                        "timeout_s": self._loader_timeout,
                    },
                ) from exc

            self._loads += 1
            effective_ttl = jittered_ttl(base_ttl, self._jitter_max, self._rng)
            await self._store.set_with_ttl(cache_key, codec.encode(value), effective_ttl)
            self._logger.info(
                "cache.populated",
                extra={"cache_key": cache_key, "ttl_s": round(effective_ttl, 3)},
            )
            return value
        finally:
            await self._release(lock, holder)

    async def _release(self, lock: str, holder: str) -> None:
        try:
            released = await self._store.eval_atomic(RELEASE_LOCK_SCRIPT, [lock], [holder])
        except StoreUnavailableError as exc:
            # The lock TTL reclaims it; the caller keeps the primary outcome
            self._logger.warning(
                "cache.lock_release_failed",
                extra={"lock_key": lock, "error_msg": exc.message},
            )
            return

        if not released:
            self._logger.warning("cache.lock_lost", extra={"lock_key": lock})
