from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from mugfunnel.api.v1.deps import get_db, get_settings_dep
from mugfunnel.core.config import Settings
from mugfunnel.core.errors import STORAGE_OUTAGE_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health(
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except STORAGE_OUTAGE_ERRORS:
        logger.exception("health_database_unreachable")
        database = "unavailable"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "funnel_store": settings.funnel_store_backend,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
