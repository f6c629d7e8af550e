"""Request-scoped accessors for the components built by the app factory.

Components are constructed once per application and stored on ``app.state``;
routes reach them through these providers, which keeps them overridable in
tests via ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Request

from kvguard.adapters.origin.base import AbstractOriginClient
from kvguard.adapters.store.base import AbstractSharedStore
from kvguard.services.cache_coordinator import CacheCoordinator


def get_store(request: Request) -> AbstractSharedStore:
    return request.app.state.store


def get_cache_coordinator(request: Request) -> CacheCoordinator:
    return request.app.state.cache_coordinator


def get_origin_client(request: Request) -> AbstractOriginClient:
    return request.app.state.origin_client
