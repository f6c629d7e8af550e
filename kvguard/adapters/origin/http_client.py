"""HTTP origin client adapter."""

from typing import Any

import httpx

from kvguard.adapters.origin.base import AbstractOriginClient
from kvguard.core.errors import OriginAppError


class HttpOriginClient(AbstractOriginClient):
    """Client fetching JSON resources from an upstream HTTP API.

    Uses a pooled ``httpx.AsyncClient`` so concurrent misses share connections.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the async HTTP client.

        Args:
            base_url: Upstream base URL.
            timeout_seconds: Timeout for requests in seconds.
            transport: Optional transport (e.g. ``httpx.MockTransport`` in tests).
        """
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def fetch_json(self, path: str) -> Any:
        """Fetch ``path`` and decode the JSON body.

        Args:
            path: Resource path relative to the base URL.

        Returns:
            Any: Decoded JSON document.

        Raises:
            OriginAppError: On transport errors, non-2xx statuses or invalid JSON.
        """
        url = "/" + path.lstrip("/")
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as exc:
            raise OriginAppError(
                code="origin_unavailable",
                message=f"Origin request failed: {exc}",
                details={"operation": "fetch_json", "url": url},
            ) from exc

        if response.status_code == 404:
            raise OriginAppError(
                code="origin_not_found",
                message="Resource not found at origin",
                details={"operation": "fetch_json", "url": url, "http_status": 404},
            )
        if response.is_error:
            raise OriginAppError(
                code="origin_unavailable",
                message=f"Origin returned HTTP {response.status_code}",
                details={
                    "operation": "fetch_json",
                    "url": url,
                    "http_status": response.status_code,
                },
            )

        try:
            return response.json()
        except ValueError as exc:
            raise OriginAppError(
                code="origin_invalid_response",
                message=f"Origin returned invalid JSON: {exc}",
                details={"operation": "fetch_json", "url": url},
            ) from exc

    async def aclose(self) -> None:
        await self.client.aclose()
