"""API endpoints package for the edge service."""

from edge.app.api.health import router as health_router
from edge.app.api.subscribe import router as subscribe_router

__all__ = [
    "health_router",
    "subscribe_router",
]
