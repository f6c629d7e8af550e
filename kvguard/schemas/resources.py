from typing import Any

from pydantic import BaseModel, Field


class CachedResourceResponse(BaseModel):
    """Origin document served through the stampede-protected cache."""

    key: str = Field(..., description="Cache key (resource path at the origin)")
    value: Any = Field(..., description="JSON document as returned by the origin")

