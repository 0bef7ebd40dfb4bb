from __future__ import annotations

from datetime import datetime, timedelta, timezone

from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from mugfunnel.core.clock import day_key_for
from mugfunnel.core.config import get_settings
from mugfunnel.db.pg.base import Base
from mugfunnel.db.pg.models import Lead
from mugfunnel.db.pg.session import SessionLocal, engine
from mugfunnel.services.funnel.runtime import reset_runtime
from mugfunnel.services.leads.repository import create_lead
from mugfunnel.services.leads.submission import LeadSubmission
from mugfunnel.services.quota.store import GLOBAL_SUBJECT_KEY, QuotaStore
from mugfunnel.services.tracking.session_data import ClientSessionData
from mugfunnel.workers import jobs
from mugfunnel.workers.queue import enqueue_job, hold_lead_submission


def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_runtime()


def _submission(email: str, session_id: str) -> LeadSubmission:
    return LeadSubmission(
        email=email,
        name="Jane Doe",
        project_description="Blue mug with a logo",
        session=ClientSessionData(
            session_id=session_id,
            user_agent="Chrome/120",
            device_type="desktop",
            browser_type="Chrome",
            ip_address_hash="iphash-1",
        ),
    )


def test_cleanup_data_removes_expired_leads_and_counters() -> None:
    reset_db()
    settings = get_settings()
    now = datetime.now(timezone.utc)
    db = SessionLocal()
    try:
        create_lead(db, _submission("old@example.com", "s-old"), now=now - timedelta(days=settings.data_retention_leads_days + 1))
        create_lead(db, _submission("new@example.com", "s-new"), now=now)
        store = QuotaStore(db)
        store.increment(GLOBAL_SUBJECT_KEY, day_key_for(now - timedelta(days=settings.data_retention_quota_days + 5)))
        store.increment(GLOBAL_SUBJECT_KEY, day_key_for(now))
    finally:
        db.close()

    result = jobs.cleanup_data()

    assert result == {"leads_deleted": 1, "quota_counters_deleted": 1}
    db = SessionLocal()
    try:
        assert db.scalar(select(func.count()).select_from(Lead)) == 1
        assert QuotaStore(db).get_count(GLOBAL_SUBJECT_KEY, day_key_for(now)) == 1
    finally:
        db.close()


def test_cleanup_data_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setattr(jobs, "get_settings", lambda: get_settings().model_copy(update={"data_cleanup_enabled": False}))

    assert jobs.cleanup_data() == {"cleanup": "disabled"}


def test_replay_held_lead_creates_the_lead() -> None:
    reset_db()

    result = jobs.replay_held_lead(_submission("held@example.com", "s-held").to_payload())

    assert result["created"] is True
    db = SessionLocal()
    try:
        lead = db.scalar(select(Lead).where(Lead.email == "held@example.com"))
        assert lead is not None
        assert lead.id == result["lead_id"]
    finally:
        db.close()


def test_replayed_duplicate_merges_into_existing_lead() -> None:
    reset_db()
    first = jobs.replay_held_lead(_submission("held@example.com", "s-1").to_payload())
    second = jobs.replay_held_lead(_submission("held@example.com", "s-2").to_payload())

    assert second["duplicate"] is True
    assert second["lead_id"] == first["lead_id"]


def test_inline_queue_runs_job_immediately(monkeypatch) -> None:
    reset_db()
    monkeypatch.setattr(
        "mugfunnel.workers.queue.get_settings",
        lambda: get_settings().model_copy(update={"queue_mode": "inline"}),
    )

    job_id = enqueue_job("replay_held_lead", _submission("inline@example.com", "s-inline").to_payload())

    assert job_id == "inline-replay_held_lead"
    db = SessionLocal()
    try:
        assert db.scalar(select(func.count()).select_from(Lead).where(Lead.email == "inline@example.com")) == 1
    finally:
        db.close()


def test_enqueue_failure_runs_job_inline(monkeypatch) -> None:
    reset_db()
    monkeypatch.setattr(
        "mugfunnel.workers.queue.get_settings",
        lambda: get_settings().model_copy(update={"queue_mode": "redis"}),
    )

    def unreachable_queue():
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr("mugfunnel.workers.queue._get_queue", unreachable_queue)

    job_id = hold_lead_submission(_submission("fallback@example.com", "s-fallback").to_payload())

    assert job_id == "fallback-inline-replay_held_lead"
    db = SessionLocal()
    try:
        assert db.scalar(select(func.count()).select_from(Lead).where(Lead.email == "fallback@example.com")) == 1
    finally:
        db.close()
