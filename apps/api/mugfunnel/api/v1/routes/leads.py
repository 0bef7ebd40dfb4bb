from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status

from mugfunnel.api.v1.deps import get_orchestrator, get_settings_dep
from mugfunnel.api.v1.routes.funnel import lead_out, lead_submission, status_for_denial
from mugfunnel.api.v1.schemas import LeadIn, LeadResponse
from mugfunnel.core.config import Settings
from mugfunnel.services.funnel.orchestrator import FunnelOrchestrator

router = APIRouter(prefix="/leads", tags=["leads"])


@router.post("", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
def submit_lead(
    payload: LeadIn,
    request: Request,
    response: Response,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
) -> LeadResponse:
    submission = lead_submission(request, payload, settings, payload.session_id)
    outcome = orchestrator.submit_lead(submission)
    if outcome.created:
        response.status_code = status.HTTP_201_CREATED
    elif outcome.accepted:
        response.status_code = status.HTTP_200_OK
    else:
        response.status_code = status_for_denial(outcome.denial_reason)
    return lead_out(outcome)
