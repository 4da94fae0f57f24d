from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from statbatch.core.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(request: Request) -> dict[str, object]:
    settings = get_settings()
    poller = getattr(request.app.state, "poller", None)
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "poller_running": False if poller is None else poller.is_running,
        "watched_batches": 0 if poller is None else len(poller.watched_ids()),
        "timestamp": datetime.now(tz=timezone.utc),
    }
