from __future__ import annotations

from datetime import datetime, timezone
import time

from fastapi import APIRouter, Depends

from release_guard.core.config import Settings, get_settings

router = APIRouter(tags=["health"])

_STARTED_MONOTONIC = time.monotonic()


@router.get("/health")
def get_health(settings: Settings = Depends(get_settings)) -> dict[str, object]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": round(time.monotonic() - _STARTED_MONOTONIC, 3),
        "environment": settings.environment,
        "store_backend": settings.deploy_store_backend,
    }
