from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from kvguard.adapters.origin.base import AbstractOriginClient
from kvguard.api.dependencies import get_cache_coordinator, get_origin_client
from kvguard.core.rate_limit import enforce_rate_limit, enforce_write_rate_limit
from kvguard.schemas.resources import CachedResourceResponse
from kvguard.services.cache_coordinator import CacheCoordinator

router = APIRouter(tags=["Resources"])


@router.get(
    "/resources/{resource_path:path}",
    response_model=CachedResourceResponse,
    dependencies=[Depends(enforce_rate_limit)],
)
async def read_resource(
    resource_path: str,
    coordinator: Annotated[CacheCoordinator, Depends(get_cache_coordinator)],
    origin: Annotated[AbstractOriginClient, Depends(get_origin_client)],
) -> CachedResourceResponse:
    """Serve an origin document through the shared cache.

    Concurrent misses for the same path across all instances result in a
    single origin request; the other callers wait for the populated entry.

    Args:
        resource_path: Path of the document at the origin; also the cache key.

    Returns:
        CachedResourceResponse: The key and the cached or freshly loaded document.

    Raises:
        PopulationInProgressError: 503 when another caller kept the key locked.
        OriginAppError: 404/502 when the origin fails.
    """

    async def load_from_origin():
        return await origin.fetch_json(resource_path)

    value = await coordinator.get_or_load(resource_path, load_from_origin)
    return CachedResourceResponse(key=resource_path, value=value)


@router.delete(
    "/resources/{resource_path:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(enforce_write_rate_limit)],
)
async def invalidate_resource(
    resource_path: str,
    coordinator: Annotated[CacheCoordinator, Depends(get_cache_coordinator)],
) -> Response:
    """Drop the cached copy of a document so the next read refetches it."""

    await coordinator.invalidate(resource_path)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
