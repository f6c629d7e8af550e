"""Factory for the origin client used by the read-through routes."""

from kvguard.adapters.origin.base import AbstractOriginClient
from kvguard.adapters.origin.http_client import HttpOriginClient
from kvguard.core.config import OriginSettings, settings
from kvguard.core.errors import ValidationAppError


def create_origin_client(origin_settings: OriginSettings | None = None) -> AbstractOriginClient:
    """Instantiate the origin client from configuration.

    Raises:
        ValidationAppError: If the base URL is not an http(s) URL.
    """
    cfg = origin_settings or settings.origin

    if not cfg.base_url.startswith(("http://", "https://")):
        raise ValidationAppError(
            code="origin_invalid_base_url",
            message="ORIGIN_BASE_URL must be an http:// or https:// URL",
        )

    return HttpOriginClient(
        base_url=cfg.base_url,
        timeout_seconds=cfg.timeout_seconds,
    )
