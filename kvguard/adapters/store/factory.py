"""Factory pattern for creating shared store instances."""

from kvguard.adapters.store.base import AbstractSharedStore
from kvguard.adapters.store.in_memory import InMemorySharedStore
from kvguard.adapters.store.redis_store import RedisSharedStore
from kvguard.core.config import StoreSettings, settings
from kvguard.core.errors import ValidationAppError


def create_shared_store(store_settings: StoreSettings | None = None) -> AbstractSharedStore:
    """Factory function to instantiate the shared store based on the backend.

    Reads configuration from kvguard.core.config.settings unless explicit
    settings are given.

    Returns:
        AbstractSharedStore: Configured store instance.

    Raises:
        ValidationAppError: If the backend is unknown.
    """
    cfg = store_settings or settings.store
    backend = cfg.backend.lower()

    if backend == "redis":
        return RedisSharedStore.from_url(
            cfg.redis_url,
            operation_timeout_seconds=cfg.operation_timeout_seconds,
            socket_timeout_seconds=cfg.socket_timeout_seconds,
            connect_timeout_seconds=cfg.connect_timeout_seconds,
            max_connections=cfg.max_connections,
        )

    # Single process only; instances will not see each other's locks or buckets
    if backend == "memory":
        return InMemorySharedStore()

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown store backend: '{backend}'. Supported backends: redis, memory",
    )
