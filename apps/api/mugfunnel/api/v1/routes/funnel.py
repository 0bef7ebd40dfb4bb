from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from mugfunnel.api.v1.deps import get_orchestrator, get_settings_dep
from mugfunnel.api.v1.schemas import (
    FunnelEventIn,
    FunnelEventResponse,
    FunnelSnapshotOut,
    LeadIn,
    LeadResponse,
    QuotaDecisionOut,
)
from mugfunnel.core.config import Settings
from mugfunnel.core.errors import StorageUnavailableError
from mugfunnel.services.funnel.models import FunnelSnapshot
from mugfunnel.services.funnel.orchestrator import (
    DUPLICATE_REJECTED,
    HELD_FOR_REVIEW,
    INTERNAL_ERROR,
    MALFORMED_EVENT,
    FunnelOrchestrator,
    LeadOutcome,
)
from mugfunnel.services.leads.submission import LeadSubmission
from mugfunnel.services.quota.limiter import (
    GLOBAL_LIMIT_REACHED,
    IDENTITY_LIMIT_REACHED,
    SESSION_LIMIT_REACHED,
    STORAGE_UNAVAILABLE,
    QuotaDecision,
)
from mugfunnel.services.tracking.session_data import extract_session_data, merge_client_session_data

router = APIRouter(prefix="/funnel", tags=["funnel"])

DENIAL_STATUS = {
    MALFORMED_EVENT: status.HTTP_400_BAD_REQUEST,
    DUPLICATE_REJECTED: status.HTTP_409_CONFLICT,
    SESSION_LIMIT_REACHED: status.HTTP_429_TOO_MANY_REQUESTS,
    IDENTITY_LIMIT_REACHED: status.HTTP_429_TOO_MANY_REQUESTS,
    GLOBAL_LIMIT_REACHED: status.HTTP_429_TOO_MANY_REQUESTS,
    HELD_FOR_REVIEW: status.HTTP_202_ACCEPTED,
    STORAGE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for_denial(denial_reason: str | None) -> int:
    return DENIAL_STATUS.get(denial_reason or INTERNAL_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR)


def snapshot_out(snapshot: FunnelSnapshot) -> FunnelSnapshotOut:
    return FunnelSnapshotOut(
        session_id=snapshot.session_id,
        current_step=snapshot.current_step,
        completed_steps=list(snapshot.completed_steps),
        furthest_step=snapshot.furthest_step,
        progress_percentage=snapshot.progress_percentage,
        time_in_funnel_seconds=snapshot.time_in_funnel_seconds,
        step_count=snapshot.step_count,
        started_at=snapshot.started_at,
        last_activity=snapshot.last_activity,
        user_id=snapshot.user_id,
        lead_id=snapshot.lead_id,
    )


def quota_out(decision: QuotaDecision) -> QuotaDecisionOut:
    return QuotaDecisionOut(
        allowed=decision.allowed,
        day_key=decision.day_key,
        remaining_by_layer=dict(decision.remaining_by_layer),
        denial_reason=decision.denial_reason,
        denied_layer=decision.denied_layer,
        counted=decision.counted,
        retry_after=decision.retry_after,
        hours_until_reset=decision.hours_until_reset,
        message=decision.limit_message(),
    )


def lead_out(outcome: LeadOutcome) -> LeadResponse:
    return LeadResponse(
        success=outcome.accepted or outcome.held_for_review,
        lead_id=outcome.lead_id,
        created=outcome.created,
        duplicate=outcome.duplicate,
        merged_into=outcome.merged_into,
        strategy=outcome.strategy,
        changed_fields=list(outcome.changed_fields),
        held_for_review=outcome.held_for_review,
        denial_reason=outcome.denial_reason,
        message=outcome.message,
        quota=quota_out(outcome.quota) if outcome.quota is not None else None,
    )


def lead_submission(request: Request, payload: LeadIn, settings: Settings, session_id: str | None) -> LeadSubmission:
    server_session = extract_session_data(
        request.headers,
        url=str(request.url),
        salt=settings.ip_hash_salt,
        session_id=session_id,
    )
    session = merge_client_session_data(
        server_session,
        session_id=payload.session_id or session_id,
        engagement_duration=payload.engagement_duration,
    )
    return LeadSubmission(
        email=payload.email,
        name=payload.name,
        project_description=payload.project_description,
        session=session,
        phone=payload.phone,
        design_id=payload.design_id,
        source=payload.source,
        engagement_level=payload.engagement_level,
        user_id=payload.user_id,
        metadata=dict(payload.metadata),
    )


@router.post("/events", response_model=FunnelEventResponse)
def record_funnel_event(
    payload: FunnelEventIn,
    request: Request,
    response: Response,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
) -> FunnelEventResponse:
    lead = None
    if payload.lead is not None and payload.session_id:
        lead = lead_submission(request, payload.lead, settings, payload.session_id)

    result = orchestrator.record_funnel_event(
        payload.session_id,
        payload.step,
        payload.metadata,
        user_id=payload.user_id,
        lead_id=payload.lead_id,
        lead=lead,
    )
    if not result.allowed:
        response.status_code = status_for_denial(result.denial_reason)
    return FunnelEventResponse(
        allowed=result.allowed,
        snapshot=snapshot_out(result.snapshot) if result.snapshot is not None else None,
        denial_reason=result.denial_reason,
        message=result.message,
        lead=lead_out(result.lead) if result.lead is not None else None,
    )


@router.get("/sessions/{session_id}", response_model=FunnelSnapshotOut)
def get_funnel_session(
    session_id: str,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
) -> FunnelSnapshotOut:
    try:
        snapshot = orchestrator.get_snapshot(session_id)
    except StorageUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Funnel session not found")
    return snapshot_out(snapshot)
