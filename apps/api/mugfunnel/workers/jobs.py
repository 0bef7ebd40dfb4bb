from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from mugfunnel.core.clock import day_key_for
from mugfunnel.core.config import get_settings
from mugfunnel.db.pg.session import SessionLocal
from mugfunnel.services.funnel.runtime import build_orchestrator
from mugfunnel.services.leads.repository import delete_leads_before
from mugfunnel.services.leads.submission import LeadSubmission
from mugfunnel.services.quota.store import QuotaStore

logger = logging.getLogger(__name__)


def cleanup_data() -> dict:
    settings = get_settings()
    if not settings.data_cleanup_enabled:
        return {"cleanup": "disabled"}

    db = SessionLocal()
    try:
        now = datetime.now(timezone.utc)
        leads_cutoff = now - timedelta(days=settings.data_retention_leads_days)
        quota_cutoff = day_key_for(now - timedelta(days=settings.data_retention_quota_days))

        leads_deleted = delete_leads_before(db, leads_cutoff)
        counters_deleted = QuotaStore(db).purge_before(quota_cutoff)
        logger.info(
            "cleanup_data_completed",
            extra={"leads_deleted": leads_deleted, "quota_counters_deleted": counters_deleted},
        )
        return {
            "leads_deleted": leads_deleted,
            "quota_counters_deleted": counters_deleted,
        }
    finally:
        db.close()


def replay_held_lead(payload: dict) -> dict:
    """Re-run lead capture for a submission held during a storage outage.

    A repeated outage raises so the queue's retry policy schedules another
    attempt instead of holding the submission a second time.
    """
    submission = LeadSubmission.from_payload(payload)
    db = SessionLocal()
    try:
        outcome = build_orchestrator(db).submit_lead(submission, allow_hold=False)
    finally:
        db.close()

    logger.info(
        "held_lead_replayed",
        extra={
            "session_id": submission.session.session_id,
            "lead_id": outcome.lead_id,
            "created": outcome.created,
            "denial_reason": outcome.denial_reason,
        },
    )
    return {
        "lead_id": outcome.lead_id,
        "created": outcome.created,
        "duplicate": outcome.duplicate,
        "denial_reason": outcome.denial_reason,
    }
