from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


FunnelStepName = Literal["page_view", "3d_engagement", "customization", "lead_capture"]
EngagementLevel = Literal["low", "medium", "high"]


class LeadIn(BaseModel):
    email: str = ""
    name: str = ""
    project_description: str = ""
    phone: str | None = None
    design_id: str | None = None
    source: str = "direct"
    engagement_level: EngagementLevel = "medium"
    user_id: str | None = None
    session_id: str | None = None
    engagement_duration: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FunnelEventIn(BaseModel):
    # Step stays a plain string so unknown steps surface as MALFORMED_EVENT.
    session_id: str | None = None
    step: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    lead_id: str | None = None
    lead: LeadIn | None = None


class FunnelSnapshotOut(BaseModel):
    session_id: str
    current_step: FunnelStepName
    completed_steps: list[FunnelStepName]
    furthest_step: FunnelStepName | None = None
    progress_percentage: float
    time_in_funnel_seconds: float
    step_count: int
    started_at: datetime
    last_activity: datetime
    user_id: str | None = None
    lead_id: str | None = None


class QuotaRequest(BaseModel):
    session_id: str | None = None


class QuotaDecisionOut(BaseModel):
    allowed: bool
    day_key: str
    remaining_by_layer: dict[str, int | None] = Field(default_factory=dict)
    denial_reason: str | None = None
    denied_layer: str | None = None
    counted: bool = False
    retry_after: str | None = None
    hours_until_reset: int | None = None
    message: str | None = None


class LeadResponse(BaseModel):
    success: bool
    lead_id: str | None = None
    created: bool = False
    duplicate: bool = False
    merged_into: str | None = None
    strategy: str | None = None
    changed_fields: list[str] = Field(default_factory=list)
    held_for_review: bool = False
    denial_reason: str | None = None
    message: str | None = None
    quota: QuotaDecisionOut | None = None


class FunnelEventResponse(BaseModel):
    allowed: bool
    snapshot: FunnelSnapshotOut | None = None
    denial_reason: str | None = None
    message: str | None = None
    lead: LeadResponse | None = None


class AnalyticsEventIn(BaseModel):
    id: str | None = None
    session_id: str | None = None
    event_type: str | None = None
    timestamp: datetime | None = None
    user_id: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class AnalyticsBatchIn(BaseModel):
    events: list[AnalyticsEventIn] = Field(default_factory=list)


class AnalyticsBatchResponse(BaseModel):
    success: bool
    processed: int
    errors: list[str] | None = None


class TopIdentity(BaseModel):
    identity_hash: str
    count: int
    last_incremented_at: datetime


class UsageHistoryDay(BaseModel):
    day_key: str
    count: int
    last_incremented_at: datetime


class UsageStatsResponse(BaseModel):
    day_key: str
    total_today: int
    global_limit: int
    remaining: int
    percent_used: float
    top_identities: list[TopIdentity] = Field(default_factory=list)
    history: list[UsageHistoryDay] = Field(default_factory=list)


class FlagsResponse(BaseModel):
    user_id: str
    ai_mode_enabled: bool
    legacy_3d_mode_enabled: bool
    ai_mode_rollout_percent: int
    rollout_bucket: int
    show_ai_mode: bool
