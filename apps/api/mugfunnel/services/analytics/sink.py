from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from mugfunnel.core.config import Settings
from mugfunnel.services.funnel.models import LEAD_CAPTURE, FunnelSnapshot, FunnelStep, funnel_stage_number

logger = logging.getLogger(__name__)

LEAD_VALUES = {"high": 50.0, "medium": 25.0, "low": 10.0}


@dataclass(frozen=True)
class AnalyticsEvent:
    name: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {"name": self.name, "params": dict(self.params)}


class AnalyticsSink(Protocol):
    def send(self, client_id: str, events: list[AnalyticsEvent], user_id: str | None = None) -> Any: ...


class NullAnalyticsSink:
    def send(self, client_id: str, events: list[AnalyticsEvent], user_id: str | None = None) -> None:
        return None


class GA4MeasurementSink:
    """Fire-and-forget GA4 Measurement Protocol client.

    ``send`` only schedules the POST; delivery errors are logged on the
    worker thread and never reach the caller.
    """

    def __init__(
        self,
        measurement_id: str,
        api_secret: str,
        *,
        endpoint: str = "https://www.google-analytics.com/mp/collect",
        timeout_seconds: float = 5.0,
        max_workers: int = 4,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.measurement_id = measurement_id
        self.api_secret = api_secret
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analytics-sink")

    def send(self, client_id: str, events: list[AnalyticsEvent], user_id: str | None = None) -> Future | None:
        if not events:
            return None
        payload: dict[str, Any] = {
            "client_id": client_id,
            "events": [event.to_payload() for event in events],
        }
        if user_id:
            payload["user_id"] = user_id
        try:
            return self._executor.submit(self._deliver, payload)
        except RuntimeError:
            logger.warning("analytics_sink_closed", extra={"client_id": client_id})
            return None

    def _deliver(self, payload: dict[str, Any]) -> bool:
        params = {"measurement_id": self.measurement_id, "api_secret": self.api_secret}
        event_names = [event["name"] for event in payload["events"]]
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.post(self.endpoint, params=params, json=payload)
            response.raise_for_status()
        except Exception:
            logger.exception(
                "analytics_sink_delivery_failed",
                extra={"client_id": payload["client_id"], "events": event_names},
            )
            return False
        logger.debug("analytics_sink_delivered", extra={"client_id": payload["client_id"], "events": event_names})
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def build_analytics_sink(settings: Settings) -> AnalyticsSink:
    if not settings.ga_measurement_id or not settings.ga_api_secret:
        return NullAnalyticsSink()
    return GA4MeasurementSink(
        settings.ga_measurement_id,
        settings.ga_api_secret,
        endpoint=settings.ga_endpoint,
        timeout_seconds=settings.analytics_timeout_seconds,
        max_workers=settings.analytics_max_workers,
    )


def lead_value(engagement_level: str | None) -> float:
    return LEAD_VALUES.get(engagement_level or "medium", LEAD_VALUES["medium"])


def funnel_step_events(snapshot: FunnelSnapshot, step: FunnelStep) -> list[AnalyticsEvent]:
    params: dict[str, Any] = {
        "funnel_step": step.step,
        "funnel_stage": funnel_stage_number(step.step),
        "previous_step": step.previous_step,
        "time_since_start": int(snapshot.time_in_funnel_seconds * 1000),
        "session_step_count": snapshot.step_count,
    }
    for key, value in step.metadata.items():
        params.setdefault(key, value)
    return [AnalyticsEvent("conversion_funnel_step", params)]


def lead_conversion_events(snapshot: FunnelSnapshot, lead_id: str, metadata: dict[str, Any]) -> list[AnalyticsEvent]:
    engagement_level = metadata.get("engagement_level") or "medium"
    value = lead_value(engagement_level)
    design_id = metadata.get("design_id")
    return [
        AnalyticsEvent(
            "conversion",
            {
                "transaction_id": lead_id,
                "value": value,
                "currency": "USD",
                "item_category": LEAD_CAPTURE,
                "engagement_level": engagement_level,
                "design_id": design_id,
                "traffic_source": metadata.get("source") or "direct",
                "funnel_duration": int(snapshot.time_in_funnel_seconds * 1000),
            },
        ),
        AnalyticsEvent(
            "purchase",
            {
                "transaction_id": lead_id,
                "value": value,
                "currency": "USD",
                "items": [
                    {
                        "item_id": design_id or lead_id,
                        "item_name": "Custom Mug Lead",
                        "item_category": LEAD_CAPTURE,
                        "item_variant": engagement_level,
                        "quantity": 1,
                        "price": value,
                    }
                ],
            },
        ),
    ]


CLIENT_EVENT_NAMES = {
    "page_view": "page_view",
    "mug_rotate": "3d_interaction",
    "color_change": "customization",
    "image_upload": "customization",
    "text_add": "customization",
    "lead_capture": "conversion",
}


def client_event(
    event_type: str,
    *,
    session_id: str,
    timestamp: datetime,
    user_agent: str | None = None,
    data: dict[str, Any] | None = None,
) -> AnalyticsEvent:
    params: dict[str, Any] = {
        "session_id": session_id,
        "event_time": int(timestamp.timestamp()),
        "user_agent": user_agent,
    }
    params.update(data or {})
    return AnalyticsEvent(CLIENT_EVENT_NAMES.get(event_type, "custom_event"), params)
