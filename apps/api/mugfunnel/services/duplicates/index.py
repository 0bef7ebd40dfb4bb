from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from mugfunnel.core.clock import Clock, SystemClock
from mugfunnel.core.errors import STORAGE_OUTAGE_ERRORS, StorageUnavailableError
from mugfunnel.core.limits import EngineLimits
from mugfunnel.db.pg.models import Lead
from mugfunnel.services.tracking.session_data import Fingerprint

logger = logging.getLogger(__name__)

STRATEGY_EMAIL = "email"
STRATEGY_SESSION = "session"
STRATEGY_FINGERPRINT = "fingerprint"


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True)
class DuplicateWindows:
    email_window: timedelta = timedelta(hours=24)
    session_window: timedelta = timedelta(minutes=30)
    allow_merge_updates: bool = True

    @classmethod
    def from_limits(cls, limits: EngineLimits) -> DuplicateWindows:
        return cls(
            email_window=limits.email_window,
            session_window=limits.session_window,
            allow_merge_updates=limits.allow_merge_updates,
        )


@dataclass(frozen=True)
class DuplicateMatch:
    matched: bool
    strategy: str | None = None
    existing_record_id: str | None = None
    mergeable: bool = False
    reason: str | None = None


NO_MATCH = DuplicateMatch(matched=False)


class DuplicateIndex:
    """Read-only recency lookups over stored leads.

    Strategies run strongest first (email, session, fingerprint) and the
    first hit wins, so two people behind one proxy are never merged on the
    fingerprint when their emails differ from a prior lead.
    """

    def __init__(self, db: Session, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    def find_duplicate(
        self,
        email: str | None,
        session_id: str | None,
        fingerprint: Fingerprint | None,
        windows: DuplicateWindows,
    ) -> DuplicateMatch:
        now = self.clock.now()
        try:
            return self._find(now, normalize_email(email), session_id, fingerprint, windows)
        except STORAGE_OUTAGE_ERRORS as exc:
            self.db.rollback()
            logger.error("duplicate_lookup_storage_unavailable", extra={"session_id": session_id})
            raise StorageUnavailableError("duplicate_index", str(exc)) from exc

    def _find(
        self,
        now: datetime,
        email: str,
        session_id: str | None,
        fingerprint: Fingerprint | None,
        windows: DuplicateWindows,
    ) -> DuplicateMatch:
        mergeable = windows.allow_merge_updates
        email_hours = int(windows.email_window.total_seconds() // 3600)
        session_minutes = int(windows.session_window.total_seconds() // 60)

        if email:
            lead_id = self._most_recent(Lead.email == email, since=now - windows.email_window)
            if lead_id:
                return DuplicateMatch(
                    matched=True,
                    strategy=STRATEGY_EMAIL,
                    existing_record_id=lead_id,
                    mergeable=mergeable,
                    reason=f"Email {email} already submitted within {email_hours} hours",
                )

        if session_id:
            lead_id = self._most_recent(Lead.session_id == session_id, since=now - windows.session_window)
            if lead_id:
                return DuplicateMatch(
                    matched=True,
                    strategy=STRATEGY_SESSION,
                    existing_record_id=lead_id,
                    mergeable=mergeable,
                    reason=f"Session {session_id} already submitted within {session_minutes} minutes",
                )

        if fingerprint is not None:
            lead_id = self._most_recent(
                Lead.ip_address_hash == fingerprint.ip_address_hash,
                Lead.user_agent == fingerprint.user_agent,
                since=now - windows.session_window,
            )
            if lead_id:
                return DuplicateMatch(
                    matched=True,
                    strategy=STRATEGY_FINGERPRINT,
                    existing_record_id=lead_id,
                    mergeable=mergeable,
                    reason=f"Browser fingerprint already submitted within {session_minutes} minutes",
                )

        return NO_MATCH

    def _most_recent(self, *criteria, since: datetime) -> str | None:
        return self.db.scalar(
            select(Lead.id)
            .where(*criteria, Lead.created_at >= since)
            .order_by(Lead.created_at.desc())
            .limit(1)
        )
