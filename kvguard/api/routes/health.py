from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from kvguard.adapters.store.base import AbstractSharedStore
from kvguard.api.dependencies import get_cache_coordinator, get_store
from kvguard.services.cache_coordinator import CacheCoordinator

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/store")
async def store_health_check(
    store: Annotated[AbstractSharedStore, Depends(get_store)],
    coordinator: Annotated[CacheCoordinator, Depends(get_cache_coordinator)],
) -> JSONResponse:
    """Readiness check: the shared store must answer a ping.

    The body also carries this process's cache counters (hits, misses,
    loads, contended, decode_failures); they are not aggregated across
    instances.

    Returns:
        JSONResponse: 200 with status "ok", or 503 with status "unavailable".
    """

    body = {"cache": coordinator.stats()}
    if await store.ping():
        return JSONResponse({"status": "ok", **body})
    return JSONResponse({"status": "unavailable", **body}, status_code=503)
