"""Application factory for FastAPI app.

Centralizes app construction (components, middleware, handlers, routers) so
tests can build an app around an in-memory store and a fake origin.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from kvguard.adapters.origin.base import AbstractOriginClient
from kvguard.adapters.origin.factory import create_origin_client
from kvguard.adapters.store.base import AbstractSharedStore
from kvguard.adapters.store.factory import create_shared_store
from kvguard.adapters.store.keys import ensure_disjoint_prefixes
from kvguard.api.routes import health_router, resources_router
from kvguard.core.config import Settings, settings as default_settings
from kvguard.core.exception_handlers import setup_exception_handlers
from kvguard.core.logging import configure_logging
from kvguard.core.middleware import request_id_middleware
from kvguard.core.openapi import apply_openapi_customizations
from kvguard.services.cache_coordinator import CacheCoordinator
from kvguard.services.token_bucket import TokenBucketLimiter

logger = logging.getLogger(__name__)


def create_app(
    *,
    store: AbstractSharedStore | None = None,
    origin_client: AbstractOriginClient | None = None,
    app_settings: Settings | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        store: Shared store to use; built from settings when omitted.
        origin_client: Origin consulted on cache misses; built from settings
            when omitted.
        app_settings: Settings to build components from (global by default).
        configure_logs: Whether to (re)configure the root logger.

    Returns:
        Configured FastAPI app with components on ``app.state``.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    shared_store = store or create_shared_store(cfg.store)
    origin = origin_client or create_origin_client(cfg.origin)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.startup",
            extra={"store_backend": type(shared_store).__name__, "namespace": cfg.cache.namespace},
        )
        try:
            yield
        finally:
            await origin.aclose()
            await shared_store.close()
            logger.info("app.shutdown")

    app = FastAPI(
        title="kvguard",
        description=(
            "Cache-aside read-through service with stampede protection and a "
            "distributed token bucket rate limiter, both coordinated through a "
            "shared key-value store."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    cache_coordinator = CacheCoordinator.from_settings(shared_store, cfg.cache)
    rate_limiter = TokenBucketLimiter.from_settings(shared_store, cfg.rate_limit)
    ensure_disjoint_prefixes(cache_coordinator.namespace, rate_limiter.prefix)

    app.state.settings = cfg
    app.state.store = shared_store
    app.state.origin_client = origin
    app.state.cache_coordinator = cache_coordinator
    app.state.rate_limiter = rate_limiter

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(resources_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
