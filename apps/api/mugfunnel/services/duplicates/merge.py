from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from mugfunnel.core.clock import Clock, SystemClock
from mugfunnel.core.errors import STORAGE_OUTAGE_ERRORS, StorageUnavailableError
from mugfunnel.db.pg.models import Lead
from mugfunnel.services.leads.repository import get_lead
from mugfunnel.services.leads.submission import LeadSubmission

logger = logging.getLogger(__name__)

ADDITIONAL_SUBMISSION_MARKER = "[Additional submission]:"
_APPEND_SEPARATOR = "\n\n"

# Filled only while empty on the stored lead.
_FILL_IF_EMPTY = ("phone", "design_id", "referral_source")
# Appended with a marker when they differ.
_APPEND_TEXT = ("project_description",)
# Informational; always take the newest value.
_REFRESH = ("session_id", "user_agent", "device_type", "browser_type")


@dataclass(frozen=True)
class MergeResult:
    lead: Lead
    changed_fields: tuple[str, ...] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


def _incoming_values(incoming: LeadSubmission) -> dict[str, object]:
    session = incoming.session
    return {
        "phone": incoming.phone,
        "design_id": incoming.design_id,
        "referral_source": session.referral_source,
        "project_description": incoming.project_description,
        "session_id": session.session_id,
        "user_agent": session.user_agent,
        "device_type": session.device_type,
        "browser_type": session.browser_type,
    }


def _appended_text(existing: str, incoming: str) -> str | None:
    incoming = incoming.strip()
    if not incoming:
        return None
    existing = existing or ""
    if incoming == existing.strip():
        return None
    segments = {segment.strip() for segment in existing.split(_APPEND_SEPARATOR)}
    if incoming in segments or f"{ADDITIONAL_SUBMISSION_MARKER} {incoming}" in segments:
        return None
    if not existing.strip():
        return incoming
    return f"{existing}{_APPEND_SEPARATOR}{ADDITIONAL_SUBMISSION_MARKER} {incoming}"


def plan_merge(lead: Lead, incoming: LeadSubmission) -> dict[str, object]:
    """Field updates needed to fold ``incoming`` into ``lead``; empty means no-op."""
    values = _incoming_values(incoming)
    updates: dict[str, object] = {}

    for name in _FILL_IF_EMPTY:
        value = values[name]
        if value and not getattr(lead, name):
            updates[name] = value

    for name in _APPEND_TEXT:
        merged = _appended_text(getattr(lead, name) or "", str(values[name] or ""))
        if merged is not None:
            updates[name] = merged

    for name in _REFRESH:
        value = values[name]
        if value and value != getattr(lead, name):
            updates[name] = value

    if incoming.session.engagement_duration > (lead.engagement_duration or 0):
        updates["engagement_duration"] = incoming.session.engagement_duration

    return updates


class LeadMergeEngine:
    """Additive merge of a duplicate submission into the lead it matched.

    The stored row is read with ``SELECT .. FOR UPDATE`` so two merges into
    the same lead serialize at the database.
    """

    def __init__(self, db: Session, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    def merge(self, existing_record_id: str, incoming: LeadSubmission) -> MergeResult | None:
        try:
            lead = get_lead(self.db, existing_record_id, for_update=True)
            if lead is None:
                self.db.rollback()
                return None

            updates = plan_merge(lead, incoming)
            if not updates:
                self.db.rollback()
                return MergeResult(lead=lead)

            for name, value in updates.items():
                setattr(lead, name, value)
            lead.updated_at = self._now()
            self.db.commit()
            self.db.refresh(lead)
        except STORAGE_OUTAGE_ERRORS as exc:
            self.db.rollback()
            logger.error("lead_merge_storage_unavailable", extra={"lead_id": existing_record_id})
            raise StorageUnavailableError("leads", str(exc)) from exc

        logger.info("lead_merged", extra={"lead_id": lead.id, "changed_fields": sorted(updates)})
        return MergeResult(lead=lead, changed_fields=tuple(sorted(updates)))

    def _now(self) -> datetime:
        return self.clock.now()
