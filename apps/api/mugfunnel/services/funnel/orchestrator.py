from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from mugfunnel.core.clock import Clock, SystemClock
from mugfunnel.core.errors import StorageUnavailableError
from mugfunnel.core.limits import EngineLimits
from mugfunnel.services.analytics.sink import AnalyticsSink, funnel_step_events, lead_conversion_events
from mugfunnel.services.duplicates.index import DuplicateIndex, DuplicateWindows
from mugfunnel.services.duplicates.merge import LeadMergeEngine
from mugfunnel.services.funnel.models import LEAD_CAPTURE, FUNNEL_STEPS, FunnelSnapshot, is_funnel_step
from mugfunnel.services.funnel.store import FunnelSessionStore
from mugfunnel.services.leads.repository import create_lead
from mugfunnel.services.leads.submission import ENGAGEMENT_LEVELS, LeadSubmission
from mugfunnel.services.quota.limiter import STORAGE_UNAVAILABLE, QuotaContext, QuotaDecision, RateLimiter

logger = logging.getLogger(__name__)

MALFORMED_EVENT = "MALFORMED_EVENT"
DUPLICATE_REJECTED = "DUPLICATE_REJECTED"
HELD_FOR_REVIEW = "HELD_FOR_REVIEW"
INTERNAL_ERROR = "INTERNAL_ERROR"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class LeadOutcome:
    created: bool
    duplicate: bool
    lead_id: str | None = None
    merged_into: str | None = None
    strategy: str | None = None
    changed_fields: tuple[str, ...] = ()
    held_for_review: bool = False
    denial_reason: str | None = None
    message: str | None = None
    quota: QuotaDecision | None = None

    @property
    def accepted(self) -> bool:
        return self.lead_id is not None


@dataclass(frozen=True)
class FunnelEventResult:
    allowed: bool
    snapshot: FunnelSnapshot | None = None
    denial_reason: str | None = None
    message: str | None = None
    lead: LeadOutcome | None = None


def _malformed_lead(message: str) -> LeadOutcome:
    return LeadOutcome(created=False, duplicate=False, denial_reason=MALFORMED_EVENT, message=message)


class FunnelOrchestrator:
    """Single entry point for funnel events, quota checks and lead capture.

    Every outcome comes back as a typed result. Only faults nobody planned
    for are logged with context and flattened to ``INTERNAL_ERROR``.
    """

    def __init__(
        self,
        *,
        db: Session,
        funnel_store: FunnelSessionStore,
        rate_limiter: RateLimiter,
        duplicate_index: DuplicateIndex,
        merge_engine: LeadMergeEngine,
        analytics: AnalyticsSink,
        limits: EngineLimits,
        clock: Clock | None = None,
        hold_submission: Callable[[dict[str, Any]], str] | None = None,
    ) -> None:
        self.db = db
        self.funnel_store = funnel_store
        self.rate_limiter = rate_limiter
        self.duplicate_index = duplicate_index
        self.merge_engine = merge_engine
        self.analytics = analytics
        self.limits = limits
        self.windows = DuplicateWindows.from_limits(limits)
        self.clock = clock or SystemClock()
        self.hold_submission = hold_submission

    # -- funnel -------------------------------------------------------------

    def record_funnel_event(
        self,
        session_id: str | None,
        step: str | None,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
        lead_id: str | None = None,
        lead: LeadSubmission | None = None,
    ) -> FunnelEventResult:
        if not session_id or not str(session_id).strip():
            return FunnelEventResult(allowed=False, denial_reason=MALFORMED_EVENT, message="Missing session id")
        if not is_funnel_step(step):
            return FunnelEventResult(
                allowed=False,
                denial_reason=MALFORMED_EVENT,
                message=f"Invalid funnel step; expected one of {', '.join(FUNNEL_STEPS)}",
            )

        try:
            return self._record(session_id, step, dict(metadata or {}), user_id, lead_id, lead)
        except StorageUnavailableError as exc:
            logger.error("funnel_event_storage_unavailable", extra={"session_id": session_id, "component": exc.component})
            return FunnelEventResult(allowed=False, denial_reason=STORAGE_UNAVAILABLE, message=str(exc))
        except Exception:
            logger.exception("funnel_event_failed", extra={"session_id": session_id, "step": step})
            return FunnelEventResult(allowed=False, denial_reason=INTERNAL_ERROR, message="Internal error")

    def _record(
        self,
        session_id: str,
        step: str,
        metadata: dict[str, Any],
        user_id: str | None,
        lead_id: str | None,
        lead: LeadSubmission | None,
    ) -> FunnelEventResult:
        outcome: LeadOutcome | None = None
        if step == LEAD_CAPTURE:
            if lead is not None:
                if lead.session.session_id != session_id:
                    return FunnelEventResult(
                        allowed=False,
                        denial_reason=MALFORMED_EVENT,
                        message="Lead session does not match event session",
                    )
                outcome = self._capture(lead)
                if not outcome.accepted:
                    return FunnelEventResult(
                        allowed=False,
                        snapshot=self._snapshot_or_none(session_id),
                        denial_reason=outcome.denial_reason,
                        message=outcome.message,
                        lead=outcome,
                    )
                snapshot = self._record_capture_step(lead, outcome, metadata, user_id=user_id)
                return FunnelEventResult(allowed=True, snapshot=snapshot, lead=outcome)
            elif not lead_id:
                return FunnelEventResult(
                    allowed=False,
                    denial_reason=MALFORMED_EVENT,
                    message="lead_capture requires a lead submission or lead id",
                )

        snapshot = self.funnel_store.record_step(session_id, step, metadata, user_id=user_id, lead_id=lead_id)
        self._forward(snapshot, metadata)
        return FunnelEventResult(allowed=True, snapshot=snapshot, lead=outcome)

    def _forward(self, snapshot: FunnelSnapshot, metadata: dict[str, Any]) -> None:
        appended = snapshot.appended_step
        if appended is None:
            return
        events = funnel_step_events(snapshot, appended)
        if appended.step == LEAD_CAPTURE and snapshot.lead_id:
            events.extend(lead_conversion_events(snapshot, snapshot.lead_id, metadata))
        try:
            self.analytics.send(snapshot.session_id, events, user_id=snapshot.user_id)
        except Exception:
            logger.exception("analytics_sink_dispatch_failed", extra={"session_id": snapshot.session_id})

    def get_snapshot(self, session_id: str) -> FunnelSnapshot | None:
        return self.funnel_store.get_snapshot(session_id)

    def _snapshot_or_none(self, session_id: str) -> FunnelSnapshot | None:
        try:
            return self.funnel_store.get_snapshot(session_id)
        except StorageUnavailableError:
            logger.warning("funnel_snapshot_unavailable", extra={"session_id": session_id})
            return None

    # -- quota --------------------------------------------------------------

    def check_quota(self, context: QuotaContext) -> QuotaDecision:
        return self.rate_limiter.check(context)

    def consume_quota(self, context: QuotaContext) -> QuotaDecision:
        return self.rate_limiter.consume(context)

    # -- leads --------------------------------------------------------------

    def submit_lead(self, submission: LeadSubmission, *, allow_hold: bool = True) -> LeadOutcome:
        """Capture a lead and advance its session to ``lead_capture``.

        With ``allow_hold=False`` a duplicate-lookup outage raises
        ``StorageUnavailableError`` instead of queueing the submission.
        """
        if not allow_hold:
            outcome = self._capture(submission, allow_hold=False)
            if outcome.accepted:
                self._record_capture_step(submission, outcome, {})
            return outcome

        result = self.record_funnel_event(
            submission.session.session_id,
            LEAD_CAPTURE,
            dict(submission.metadata),
            user_id=submission.user_id,
            lead=submission,
        )
        if result.lead is not None:
            return result.lead
        return LeadOutcome(
            created=False,
            duplicate=False,
            denial_reason=result.denial_reason or INTERNAL_ERROR,
            message=result.message,
        )

    def _record_capture_step(
        self,
        submission: LeadSubmission,
        outcome: LeadOutcome,
        metadata: dict[str, Any],
        user_id: str | None = None,
    ) -> FunnelSnapshot | None:
        """Advance the session once the lead is committed.

        The lead row and its quota are already durable here, so a funnel store
        outage only costs the step; the snapshot comes back as ``None``.
        """
        session_id = submission.session.session_id
        metadata = {
            "engagement_level": submission.engagement_level,
            "design_id": submission.design_id,
            "source": submission.source,
            **submission.metadata,
            **metadata,
        }
        try:
            snapshot = self.funnel_store.record_step(
                session_id,
                LEAD_CAPTURE,
                metadata,
                user_id=user_id or submission.user_id,
                lead_id=outcome.lead_id,
            )
        except StorageUnavailableError as exc:
            logger.error(
                "lead_capture_step_not_recorded",
                extra={"session_id": session_id, "lead_id": outcome.lead_id, "component": exc.component},
            )
            return None
        self._forward(snapshot, metadata)
        return snapshot

    def _capture(self, submission: LeadSubmission, *, allow_hold: bool = True) -> LeadOutcome:
        missing = submission.missing_fields()
        if missing:
            return _malformed_lead(f"Missing required fields: {', '.join(missing)}")
        if not _EMAIL_RE.match(submission.email.strip()):
            return _malformed_lead("Invalid email format")
        if submission.engagement_level not in ENGAGEMENT_LEVELS:
            return _malformed_lead(f"Invalid engagement level: {submission.engagement_level}")

        session_id = submission.session.session_id
        try:
            match = self.duplicate_index.find_duplicate(
                submission.email,
                session_id,
                submission.fingerprint,
                self.windows,
            )
        except StorageUnavailableError:
            if not allow_hold:
                raise
            return self._hold(submission)

        if match.matched:
            logger.warning(
                "duplicate_lead_detected",
                extra={
                    "session_id": session_id,
                    "strategy": match.strategy,
                    "existing_lead_id": match.existing_record_id,
                    "reason": match.reason,
                },
            )
            if not match.mergeable:
                return LeadOutcome(
                    created=False,
                    duplicate=True,
                    strategy=match.strategy,
                    denial_reason=DUPLICATE_REJECTED,
                    message=match.reason or "Duplicate submission detected",
                )
            merged = self.merge_engine.merge(match.existing_record_id or "", submission)
            if merged is not None:
                return LeadOutcome(
                    created=False,
                    duplicate=True,
                    lead_id=merged.lead.id,
                    merged_into=merged.lead.id,
                    strategy=match.strategy,
                    changed_fields=merged.changed_fields,
                )
            logger.warning("duplicate_merge_target_missing", extra={"existing_lead_id": match.existing_record_id})

        quota = self.rate_limiter.consume(
            QuotaContext(session_id=session_id, identity_hash=submission.session.ip_address_hash)
        )
        if not quota.allowed:
            return LeadOutcome(
                created=False,
                duplicate=False,
                denial_reason=quota.denial_reason,
                message=quota.limit_message(),
                quota=quota,
            )

        lead, created = create_lead(
            self.db,
            submission,
            now=self.clock.now(),
            email_window=self.windows.email_window,
        )
        if created:
            logger.info(
                "lead_created",
                extra={
                    "lead_id": lead.id,
                    "session_id": session_id,
                    "device_type": submission.session.device_type,
                    "design_id": submission.design_id,
                },
            )
            return LeadOutcome(created=True, duplicate=False, lead_id=lead.id, quota=quota)

        # Lost the insert race to a concurrent duplicate inside the email window.
        logger.warning(
            "duplicate_lead_detected",
            extra={"session_id": session_id, "strategy": "concurrent_insert", "existing_lead_id": lead.id},
        )
        if not self.windows.allow_merge_updates:
            return LeadOutcome(
                created=False,
                duplicate=True,
                strategy="concurrent_insert",
                denial_reason=DUPLICATE_REJECTED,
                message="Duplicate submission detected",
                quota=quota,
            )
        merged = self.merge_engine.merge(lead.id, submission)
        merged_id = merged.lead.id if merged is not None else lead.id
        return LeadOutcome(
            created=False,
            duplicate=True,
            lead_id=merged_id,
            merged_into=merged_id,
            strategy="concurrent_insert",
            changed_fields=merged.changed_fields if merged is not None else (),
            quota=quota,
        )

    def _hold(self, submission: LeadSubmission) -> LeadOutcome:
        session_id = submission.session.session_id
        logger.error("duplicate_lookup_unavailable_holding_lead", extra={"session_id": session_id})
        if self.hold_submission is None:
            return LeadOutcome(
                created=False,
                duplicate=False,
                denial_reason=STORAGE_UNAVAILABLE,
                message="Lead storage is temporarily unavailable",
            )
        try:
            job_id = self.hold_submission(submission.to_payload())
        except Exception:
            logger.exception("held_lead_enqueue_failed", extra={"session_id": session_id})
            return LeadOutcome(
                created=False,
                duplicate=False,
                denial_reason=STORAGE_UNAVAILABLE,
                message="Lead storage is temporarily unavailable",
            )
        logger.warning("lead_held_for_review", extra={"session_id": session_id, "job_id": job_id})
        return LeadOutcome(
            created=False,
            duplicate=False,
            held_for_review=True,
            denial_reason=HELD_FOR_REVIEW,
            message="Submission received and queued for processing",
        )
