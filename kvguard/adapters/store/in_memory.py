"""In-memory shared store.

Notes:
- Per-process only: it cannot coordinate separate processes, so it is meant
  for tests and single-process local runs.
- Atomic evaluation is emulated with one asyncio lock around the Python
  rendition of each script.
- Every call yields to the event loop first so concurrent callers interleave
  the way network round trips would.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from kvguard.adapters.store.base import AbstractSharedStore, AtomicScript, StoreValue


def _to_bytes(value: StoreValue) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return str(value).encode("ascii")


@dataclass
class _Entry:
    value: bytes
    expires_at: float | None


class _LockedView:
    """ScriptView over the store's map; only valid while the store lock is held."""

    def __init__(self, store: "InMemorySharedStore") -> None:
        self._store = store

    def get(self, key: str) -> bytes | None:
        return self._store._read(key)

    def set(self, key: str, value: StoreValue) -> None:
        # Plain SET clears any previous expiry, as in Redis
        self._store._data[key] = _Entry(value=_to_bytes(value), expires_at=None)

    def delete(self, key: str) -> int:
        return 1 if self._store._data.pop(key, None) is not None else 0

    def expire(self, key: str, seconds: float) -> None:
        entry = self._store._data.get(key)
        if entry is not None:
            entry.expires_at = self._store._clock() + seconds


class InMemorySharedStore(AbstractSharedStore):
    """Dictionary-backed store with TTLs and emulated atomic evaluation."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        latency_seconds: float = 0.0,
    ) -> None:
        """Initialize the store.

        Args:
            clock: Time source used for expiries (seconds).
            latency_seconds: Simulated round-trip delay applied to every call.
        """
        self._clock = clock
        self._latency = latency_seconds
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemorySharedStore(keys={len(self._data)}, latency_s={self._latency})"

    async def _round_trip(self) -> None:
        await asyncio.sleep(self._latency)

    def _read(self, key: str) -> bytes | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry.value

    async def get(self, key: str) -> bytes | None:
        await self._round_trip()
        return self._read(key)

    async def set_with_ttl(self, key: str, value: StoreValue, ttl: float) -> None:
        await self._round_trip()
        self._data[key] = _Entry(value=_to_bytes(value), expires_at=self._clock() + ttl)

    async def set_if_absent_with_ttl(self, key: str, value: StoreValue, ttl: float) -> bool:
        await self._round_trip()
        if self._read(key) is not None:
            return False
        self._data[key] = _Entry(value=_to_bytes(value), expires_at=self._clock() + ttl)
        return True

    async def delete(self, key: str) -> None:
        await self._round_trip()
        self._data.pop(key, None)

    async def eval_atomic(
        self,
        script: AtomicScript,
        keys: Sequence[str],
        args: Sequence[StoreValue],
    ) -> Any:
        await self._round_trip()
        # ARGV always reaches a script as strings
        str_args = [_to_bytes(a).decode("utf-8") for a in args]
        async with self._lock:
            return script.local(_LockedView(self), list(keys), str_args)

    async def ping(self) -> bool:
        return True

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime of ``key`` in seconds (None if absent or persistent)."""
        if self._read(key) is None:
            return None
        expires_at = self._data[key].expires_at
        if expires_at is None:
            return None
        return expires_at - self._clock()

    def clear(self) -> None:
        """Remove all keys."""
        self._data.clear()
