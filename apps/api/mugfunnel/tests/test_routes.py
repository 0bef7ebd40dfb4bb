from __future__ import annotations

from fastapi.testclient import TestClient

from mugfunnel.api.v1.deps import get_analytics_sink_dep, get_settings_dep
from mugfunnel.core.config import Settings
from mugfunnel.db.pg.base import Base
from mugfunnel.db.pg.session import engine
from mugfunnel.main import app
from mugfunnel.services.funnel.runtime import reset_runtime


client = TestClient(app)


def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_runtime()


def _lead_payload(email: str, session_id: str) -> dict:
    return {
        "email": email,
        "name": "Jane Doe",
        "project_description": "Blue mug with a logo",
        "engagement_level": "medium",
        "session_id": session_id,
    }


def test_health_reports_database_status() -> None:
    reset_db()
    response = client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["database"] == "ok"


def test_funnel_event_and_snapshot_routes() -> None:
    reset_db()
    first = client.post("/v1/funnel/events", json={"session_id": "route-s1", "step": "page_view"})
    second = client.post("/v1/funnel/events", json={"session_id": "route-s1", "step": "3d_engagement"})

    assert first.status_code == 200
    assert second.json()["snapshot"]["progress_percentage"] == 50.0

    snapshot = client.get("/v1/funnel/sessions/route-s1")
    assert snapshot.status_code == 200
    assert snapshot.json()["completed_steps"] == ["page_view", "3d_engagement"]
    assert client.get("/v1/funnel/sessions/never-seen").status_code == 404


def test_invalid_funnel_step_is_a_bad_request() -> None:
    reset_db()
    response = client.post("/v1/funnel/events", json={"session_id": "route-s1", "step": "checkout"})

    assert response.status_code == 400
    assert response.json()["denial_reason"] == "MALFORMED_EVENT"


def test_lead_capture_through_funnel_event_route() -> None:
    reset_db()
    response = client.post(
        "/v1/funnel/events",
        json={
            "session_id": "route-s2",
            "step": "lead_capture",
            "lead": _lead_payload("funnel@example.com", "route-s2"),
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["lead"]["created"] is True
    assert body["snapshot"]["lead_id"] == body["lead"]["lead_id"]


def test_lead_route_creates_then_merges() -> None:
    reset_db()
    created = client.post("/v1/leads", json=_lead_payload("jane@example.com", "route-l1"))
    merged = client.post("/v1/leads", json=_lead_payload("jane@example.com", "route-l2"))

    assert created.status_code == 201
    assert created.json()["created"] is True
    assert merged.status_code == 200
    assert merged.json()["merged_into"] == created.json()["lead_id"]


def test_lead_route_rejects_duplicates_when_merging_disabled() -> None:
    reset_db()
    app.dependency_overrides[get_settings_dep] = lambda: Settings(allow_merge_updates=False)
    try:
        client.post("/v1/leads", json=_lead_payload("jane@example.com", "route-l1"))
        rejected = client.post("/v1/leads", json=_lead_payload("jane@example.com", "route-l2"))
    finally:
        app.dependency_overrides.clear()

    assert rejected.status_code == 409
    assert rejected.json()["denial_reason"] == "DUPLICATE_REJECTED"


def test_lead_route_validates_required_fields() -> None:
    reset_db()
    payload = _lead_payload("not-an-email", "route-l3")

    response = client.post("/v1/leads", json=payload)

    assert response.status_code == 400
    assert response.json()["denial_reason"] == "MALFORMED_EVENT"


def test_quota_consume_returns_429_with_reset_hint() -> None:
    reset_db()
    app.dependency_overrides[get_settings_dep] = lambda: Settings(session_limit=1)
    try:
        check = client.post("/v1/quota/check", json={"session_id": "route-q1"})
        allowed = client.post("/v1/quota/consume", json={"session_id": "route-q1"})
        denied = client.post("/v1/quota/consume", json={"session_id": "route-q1"})
    finally:
        app.dependency_overrides.clear()

    assert check.status_code == 200
    assert allowed.status_code == 200
    assert allowed.json()["counted"] is True
    assert denied.status_code == 429
    body = denied.json()
    assert body["denial_reason"] == "SESSION_LIMIT_REACHED"
    assert body["retry_after"].endswith("T00:00:00+00:00")
    assert 1 <= body["hours_until_reset"] <= 24


def test_analytics_batch_forwards_valid_events() -> None:
    sent: list[tuple[str, list]] = []

    class RecordingSink:
        def send(self, client_id, events, user_id=None) -> None:
            sent.append((client_id, list(events)))

    app.dependency_overrides[get_analytics_sink_dep] = lambda: RecordingSink()
    try:
        response = client.post(
            "/v1/analytics/events",
            json={
                "events": [
                    {"id": "e1", "session_id": "a1", "event_type": "page_view", "timestamp": "2025-01-06T10:00:00Z"},
                    {"id": "e2", "session_id": "a1", "event_type": "color_change", "timestamp": "2025-01-06T10:01:00Z"},
                    {"id": "e3", "event_type": "page_view"},
                ]
            },
        )
        empty = client.post("/v1/analytics/events", json={"events": []})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["processed"] == 2
    assert response.json()["errors"]
    assert [event.name for event in sent[0][1]] == ["page_view", "customization"]
    assert empty.status_code == 400


def test_admin_usage_stats_requires_bearer_token() -> None:
    reset_db()
    app.dependency_overrides[get_settings_dep] = lambda: Settings(admin_api_token="secret-token")
    try:
        client.post("/v1/quota/consume", json={"session_id": "route-admin"})
        unauthorized = client.get("/v1/admin/usage-stats")
        wrong = client.get("/v1/admin/usage-stats", headers={"Authorization": "Bearer nope"})
        ok = client.get("/v1/admin/usage-stats", headers={"Authorization": "Bearer secret-token"})
    finally:
        app.dependency_overrides.clear()

    assert unauthorized.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200
    body = ok.json()
    assert body["total_today"] == 1
    assert body["remaining"] == body["global_limit"] - 1
    assert len(body["history"]) == 1


def test_admin_routes_unavailable_without_configured_token() -> None:
    app.dependency_overrides[get_settings_dep] = lambda: Settings(admin_api_token="")
    try:
        response = client.post("/v1/admin/cleanup", headers={"Authorization": "Bearer anything"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503


def test_flags_route_reports_bucket_and_decision() -> None:
    app.dependency_overrides[get_settings_dep] = lambda: Settings(ai_mode_enabled=True, ai_mode_rollout_percent=0)
    try:
        response = client.get("/v1/flags/user-42")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["show_ai_mode"] is False
    assert 0 <= body["rollout_bucket"] <= 99
