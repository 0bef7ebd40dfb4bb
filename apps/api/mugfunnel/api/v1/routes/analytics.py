from __future__ import annotations

import logging
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from mugfunnel.api.v1.deps import get_analytics_sink_dep
from mugfunnel.api.v1.schemas import AnalyticsBatchIn, AnalyticsBatchResponse
from mugfunnel.services.analytics.sink import AnalyticsEvent, AnalyticsSink, client_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.post("/events", response_model=AnalyticsBatchResponse)
def ingest_analytics_events(
    payload: AnalyticsBatchIn,
    request: Request,
    sink: AnalyticsSink = Depends(get_analytics_sink_dep),
) -> AnalyticsBatchResponse:
    if not payload.events:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid events array")

    valid = [
        event
        for event in payload.events
        if event.id and event.session_id and event.event_type and event.timestamp is not None
    ]
    if not valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid events found")

    user_agent = request.headers.get("user-agent")
    by_session: dict[str, list[AnalyticsEvent]] = defaultdict(list)
    user_ids: dict[str, str | None] = {}
    for event in valid:
        by_session[event.session_id].append(
            client_event(
                event.event_type,
                session_id=event.session_id,
                timestamp=event.timestamp,
                user_agent=user_agent,
                data=event.properties,
            )
        )
        user_ids.setdefault(event.session_id, event.user_id)

    for session_id, events in by_session.items():
        sink.send(session_id, events, user_id=user_ids.get(session_id))

    skipped = len(payload.events) - len(valid)
    logger.info("analytics_events_forwarded", extra={"processed": len(valid), "skipped": skipped})
    return AnalyticsBatchResponse(
        success=True,
        processed=len(valid),
        errors=[f"{skipped} events were missing required fields"] if skipped else None,
    )
