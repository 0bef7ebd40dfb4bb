from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from mugfunnel.core.config import Settings, get_settings
from mugfunnel.db.pg.session import SessionLocal
from mugfunnel.services.analytics.sink import AnalyticsSink
from mugfunnel.services.funnel.orchestrator import FunnelOrchestrator
from mugfunnel.services.funnel.runtime import build_orchestrator, get_analytics_sink
from mugfunnel.workers.queue import hold_lead_submission


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings_dep() -> Settings:
    return get_settings()


def get_analytics_sink_dep() -> AnalyticsSink:
    return get_analytics_sink()


def get_orchestrator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
) -> FunnelOrchestrator:
    return build_orchestrator(db, settings, hold_submission=hold_lead_submission)
