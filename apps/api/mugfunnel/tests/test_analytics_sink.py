from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx

from mugfunnel.core.config import Settings
from mugfunnel.services.analytics.sink import (
    AnalyticsEvent,
    GA4MeasurementSink,
    NullAnalyticsSink,
    build_analytics_sink,
    client_event,
    funnel_step_events,
    lead_conversion_events,
    lead_value,
)
from mugfunnel.services.funnel.models import CUSTOMIZATION, LEAD_CAPTURE, PAGE_VIEW, FunnelSession


START = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


def _session_with(*steps: str) -> FunnelSession:
    session = FunnelSession(session_id="s1", start_time=START, last_activity=START)
    for step in steps:
        session.apply(step, START, {"source": "test"}, None, None)
    return session


def test_sink_posts_measurement_protocol_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    sink = GA4MeasurementSink("G-TEST", "secret", transport=httpx.MockTransport(handler))
    try:
        future = sink.send("s1", [AnalyticsEvent("page_view", {"page": "/"})], user_id="u1")
        assert future is not None
        assert future.result(timeout=5) is True
    finally:
        sink.close()

    assert len(seen) == 1
    request = seen[0]
    assert request.url.params["measurement_id"] == "G-TEST"
    assert request.url.params["api_secret"] == "secret"
    body = json.loads(request.content)
    assert body == {"client_id": "s1", "user_id": "u1", "events": [{"name": "page_view", "params": {"page": "/"}}]}


def test_sink_failures_are_swallowed() -> None:
    sink = GA4MeasurementSink("G-TEST", "secret", transport=httpx.MockTransport(lambda _request: httpx.Response(500)))
    try:
        future = sink.send("s1", [AnalyticsEvent("page_view")])
        assert future is not None
        assert future.result(timeout=5) is False
    finally:
        sink.close()


def test_unconfigured_sink_is_a_no_op() -> None:
    sink = build_analytics_sink(Settings(ga_measurement_id="", ga_api_secret=""))
    assert isinstance(sink, NullAnalyticsSink)
    assert sink.send("s1", [AnalyticsEvent("page_view")]) is None


def test_funnel_step_event_carries_stage_and_previous_step() -> None:
    session = _session_with(PAGE_VIEW, CUSTOMIZATION)
    snapshot = session.snapshot(START)

    events = funnel_step_events(snapshot, session.steps[-1])

    assert [event.name for event in events] == ["conversion_funnel_step"]
    params = events[0].params
    assert params["funnel_step"] == CUSTOMIZATION
    assert params["funnel_stage"] == 3
    assert params["previous_step"] == PAGE_VIEW
    assert params["session_step_count"] == 2
    assert params["source"] == "test"


def test_lead_conversion_events_use_engagement_value() -> None:
    snapshot = _session_with(PAGE_VIEW, LEAD_CAPTURE).snapshot(START)

    events = lead_conversion_events(snapshot, "lead-1", {"engagement_level": "high", "design_id": "d-1"})

    assert [event.name for event in events] == ["conversion", "purchase"]
    assert events[0].params["value"] == 50.0
    assert events[0].params["transaction_id"] == "lead-1"
    assert events[1].params["items"][0]["item_id"] == "d-1"
    assert lead_value("low") == 10.0
    assert lead_value(None) == 25.0


def test_client_event_names_are_mapped() -> None:
    event = client_event("mug_rotate", session_id="s1", timestamp=START, data={"angle": 90})

    assert event.name == "3d_interaction"
    assert event.params["session_id"] == "s1"
    assert event.params["angle"] == 90
    assert client_event("mystery", session_id="s1", timestamp=START).name == "custom_event"
