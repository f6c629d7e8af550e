from __future__ import annotations

from kvguard.api.routes.health import router as health_router
from kvguard.api.routes.resources import router as resources_router

__all__ = ["health_router", "resources_router"]
