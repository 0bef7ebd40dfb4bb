from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from mugfunnel.api.v1.deps import get_db, get_settings_dep
from mugfunnel.api.v1.schemas import UsageStatsResponse
from mugfunnel.core.config import Settings
from mugfunnel.core.errors import StorageUnavailableError
from mugfunnel.core.security import authorization_header, verify_admin_token
from mugfunnel.services.usage.stats import usage_stats
from mugfunnel.workers.jobs import cleanup_data

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/usage-stats", response_model=UsageStatsResponse)
def get_usage_stats(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
    authorization: str | None = Depends(authorization_header),
) -> UsageStatsResponse:
    verify_admin_token(settings, authorization)
    try:
        stats = usage_stats(db, global_limit=settings.global_limit)
    except StorageUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return UsageStatsResponse(**stats)


@router.post("/cleanup")
def cleanup(
    settings: Settings = Depends(get_settings_dep),
    authorization: str | None = Depends(authorization_header),
) -> dict:
    verify_admin_token(settings, authorization)
    return cleanup_data()
