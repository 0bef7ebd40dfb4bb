from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mugfunnel.core.clock import as_utc
from mugfunnel.core.errors import STORAGE_OUTAGE_ERRORS, StorageUnavailableError
from mugfunnel.db.pg.models import Lead
from mugfunnel.services.duplicates.index import normalize_email
from mugfunnel.services.leads.submission import LeadSubmission

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_WINDOW = timedelta(hours=24)


def dedupe_bucket(now: datetime, window: timedelta) -> str | None:
    """Window-sized slot of the epoch that ``now`` falls in.

    Two inserts can only share a slot when they are less than ``window``
    apart. A zero window has no slots.
    """
    seconds = int(window.total_seconds())
    if seconds <= 0:
        return None
    return f"{seconds}:{int(as_utc(now).timestamp()) // seconds}"


def lead_dedupe_key(email: str, bucket: str | None) -> str:
    if bucket is None:
        bucket = f"unique:{uuid.uuid4()}"
    return hashlib.sha256(f"{normalize_email(email)}:{bucket}".encode("utf-8")).hexdigest()


def get_lead(db: Session, lead_id: str, *, for_update: bool = False) -> Lead | None:
    statement = select(Lead).where(Lead.id == lead_id)
    if for_update:
        statement = statement.with_for_update()
    return db.scalar(statement)


def get_lead_by_dedupe_key(db: Session, dedupe_key: str) -> Lead | None:
    return db.scalar(select(Lead).where(Lead.dedupe_key == dedupe_key))


def create_lead(
    db: Session,
    submission: LeadSubmission,
    *,
    now: datetime,
    email_window: timedelta = DEFAULT_EMAIL_WINDOW,
) -> tuple[Lead, bool]:
    """Insert a lead guarded by the ``dedupe_key`` unique constraint.

    The key is the email plus its ``email_window`` bucket, so a collision
    always means another lead for the same email landed inside the window.
    Returns ``(lead, True)`` on insert and ``(winner, False)`` when a
    concurrent submission committed first.
    """
    session = submission.session
    dedupe_key = lead_dedupe_key(submission.email, dedupe_bucket(now, email_window))
    lead = Lead(
        email=normalize_email(submission.email),
        name=submission.name.strip(),
        phone=submission.phone or None,
        project_description=submission.project_description,
        design_id=submission.design_id or None,
        source=submission.source or "direct",
        engagement_level=submission.engagement_level,
        status="new",
        session_id=session.session_id,
        user_agent=session.user_agent,
        referral_source=session.referral_source,
        device_type=session.device_type,
        browser_type=session.browser_type,
        ip_address_hash=session.ip_address_hash,
        engagement_duration=session.engagement_duration,
        dedupe_key=dedupe_key,
        created_at=now,
    )
    db.add(lead)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_lead_by_dedupe_key(db, dedupe_key)
        if winner is None:
            raise
        logger.warning("lead_insert_lost_race", extra={"existing_lead_id": winner.id, "session_id": session.session_id})
        return winner, False
    except STORAGE_OUTAGE_ERRORS as exc:
        db.rollback()
        raise StorageUnavailableError("leads", str(exc)) from exc
    db.refresh(lead)
    return lead, True


def delete_leads_before(db: Session, cutoff: datetime) -> int:
    deleted = db.execute(delete(Lead).where(Lead.created_at < cutoff)).rowcount
    db.commit()
    return int(deleted or 0)
