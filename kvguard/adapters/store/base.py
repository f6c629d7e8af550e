"""Shared store interfaces.

Coordination code depends on this abstraction only, so the same cache and
limiter logic runs against Redis in deployments and an in-memory double in
tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

StoreValue = bytes | str | int | float


class ScriptView(Protocol):
    """Key-level operations available to the Python rendition of a script.

    The view is only handed out while the store guarantees exclusive access,
    so a script may read, compute and write without interleaving.
    """

    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: StoreValue) -> None: ...

    def delete(self, key: str) -> int: ...

    def expire(self, key: str, seconds: float) -> None: ...


@dataclass(frozen=True)
class AtomicScript:
    """A read-compute-write sequence the store runs as one indivisible step.

    The same algorithm is carried in two renditions: ``lua`` for stores with
    server-side scripting (Redis) and ``local`` for stores that execute it
    in-process under their own exclusion. Both must return the same reply
    shape: lists of ints/strings, an int, or None.

    Attributes:
        name: Identifier used in logs and errors.
        lua: Lua source; KEYS/ARGV follow the Redis EVAL conventions.
        local: Callable ``(view, keys, args) -> reply`` with string args.
    """

    name: str
    lua: str
    local: Callable[[ScriptView, Sequence[str], Sequence[str]], Any] = field(repr=False)


class AbstractSharedStore(ABC):
    """Interface for the networked key-value store shared by all instances.

    Every call is a coroutine so cancelling the calling task aborts the call.
    Transport failures surface as ``StoreUnavailableError``.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Read a key.

        Returns:
            The stored bytes, or None when the key is absent or expired.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_with_ttl(self, key: str, value: StoreValue, ttl: float) -> None:
        """Unconditionally write ``value`` with an expiry of ``ttl`` seconds."""
        raise NotImplementedError

    @abstractmethod
    async def set_if_absent_with_ttl(self, key: str, value: StoreValue, ttl: float) -> bool:
        """Write ``value`` only if ``key`` does not exist.

        Returns:
            True when this call created the key.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""
        raise NotImplementedError

    @abstractmethod
    async def eval_atomic(
        self,
        script: AtomicScript,
        keys: Sequence[str],
        args: Sequence[StoreValue],
    ) -> Any:
        """Run ``script`` against ``keys`` atomically with respect to all clients.

        Args:
            script: Script carrying the algorithm.
            keys: Keys the script touches (KEYS in Lua).
            args: Script arguments (ARGV in Lua); delivered as strings.

        Returns:
            The script's reply.
        """
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the store answers."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
