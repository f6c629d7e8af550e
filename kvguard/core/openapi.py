"""OpenAPI customization.

Documents the rate limiting contract in the generated schema:
- ``X-API-Key`` as an optional identity header (buckets fall back to client IP)
- 429 responses with their ``Retry-After`` / ``X-RateLimit-*`` headers on
  every rate limited operation
- Tags metadata
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_RATE_LIMIT_HEADERS = {
    "Retry-After": {
        "description": "Seconds until enough tokens are available.",
        "schema": {"type": "integer"},
    },
    "X-RateLimit-Limit": {
        "description": "Bucket capacity.",
        "schema": {"type": "string"},
    },
    "X-RateLimit-Remaining": {
        "description": "Tokens left in the bucket.",
        "schema": {"type": "string"},
    },
    "X-RateLimit-Reset": {
        "description": "UNIX time at which the request could succeed.",
        "schema": {"type": "integer"},
    },
}

_TAGS = [
    {
        "name": "Resources",
        "description": "Cached read-through access to the upstream origin.",
    },
    {
        "name": "Health",
        "description": "Liveness and readiness checks.",
    },
]


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation with rate limit documentation."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "RateLimitIdentity",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Optional; selects the rate limit bucket (client IP otherwise).",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in _TAGS:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if path.startswith("/health"):
                continue
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                method_obj.setdefault("responses", {}).setdefault(
                    "429",
                    {"description": "Rate limit exceeded", "headers": _RATE_LIMIT_HEADERS},
                )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
