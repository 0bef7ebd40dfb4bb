from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from mugfunnel.api.v1.deps import get_orchestrator, get_settings_dep
from mugfunnel.api.v1.routes.funnel import quota_out, status_for_denial
from mugfunnel.api.v1.schemas import QuotaDecisionOut, QuotaRequest
from mugfunnel.core.config import Settings
from mugfunnel.services.funnel.orchestrator import FunnelOrchestrator
from mugfunnel.services.quota.limiter import STORAGE_UNAVAILABLE, QuotaContext
from mugfunnel.services.tracking.session_data import client_ip, hash_ip_address

router = APIRouter(prefix="/quota", tags=["quota"])


def _context(request: Request, payload: QuotaRequest, settings: Settings) -> QuotaContext:
    return QuotaContext(
        session_id=payload.session_id,
        identity_hash=hash_ip_address(client_ip(request.headers), settings.ip_hash_salt),
    )


@router.post("/check", response_model=QuotaDecisionOut)
def check_quota(
    payload: QuotaRequest,
    request: Request,
    response: Response,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
) -> QuotaDecisionOut:
    decision = orchestrator.check_quota(_context(request, payload, settings))
    if decision.denial_reason == STORAGE_UNAVAILABLE:
        response.status_code = status_for_denial(STORAGE_UNAVAILABLE)
    return quota_out(decision)


@router.post("/consume", response_model=QuotaDecisionOut)
def consume_quota(
    payload: QuotaRequest,
    request: Request,
    response: Response,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings_dep),
) -> QuotaDecisionOut:
    decision = orchestrator.consume_quota(_context(request, payload, settings))
    if not decision.allowed:
        response.status_code = status_for_denial(decision.denial_reason)
    return quota_out(decision)
