"""Deployment health check for uptime monitors and CI smoke tests."""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter

from edge.app.core.config import settings

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health() -> dict[str, Any]:
    return {
        "ok": True,
        "project": settings.project_name,
        "ts": datetime.now(timezone.utc).isoformat(),
        "region": settings.region,
    }
