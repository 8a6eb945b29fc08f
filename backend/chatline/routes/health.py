# backend/chatline/routes/health.py
"""Health check endpoint for monitoring and load balancer checks."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request

from ..core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    hub = request.app.state.hub
    return {
        "status": "healthy",
        "environment": settings.environment,
        "storage_backend": settings.storage_backend,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **hub.stats(),
    }
