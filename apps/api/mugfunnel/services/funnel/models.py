from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mugfunnel.core.clock import as_utc

PAGE_VIEW = "page_view"
ENGAGEMENT_3D = "3d_engagement"
CUSTOMIZATION = "customization"
LEAD_CAPTURE = "lead_capture"

FUNNEL_STEPS: tuple[str, ...] = (PAGE_VIEW, ENGAGEMENT_3D, CUSTOMIZATION, LEAD_CAPTURE)
_STEP_INDEX = {step: index for index, step in enumerate(FUNNEL_STEPS)}


def is_funnel_step(value: object) -> bool:
    return isinstance(value, str) and value in _STEP_INDEX


def funnel_stage_number(step: str) -> int:
    return _STEP_INDEX[step] + 1


@dataclass(frozen=True)
class FunnelStep:
    step: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    previous_step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
            "previous_step": self.previous_step,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FunnelStep:
        return cls(
            step=payload["step"],
            timestamp=as_utc(datetime.fromisoformat(payload["timestamp"])),
            metadata=dict(payload.get("metadata") or {}),
            previous_step=payload.get("previous_step"),
        )


@dataclass
class FunnelSession:
    session_id: str
    start_time: datetime
    last_activity: datetime
    user_id: str | None = None
    lead_id: str | None = None
    steps: list[FunnelStep] = field(default_factory=list)
    evicted: bool = field(default=False, repr=False, compare=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def last_step(self) -> FunnelStep | None:
        return self.steps[-1] if self.steps else None

    def apply(
        self,
        step: str,
        now: datetime,
        metadata: dict[str, Any] | None,
        user_id: str | None,
        lead_id: str | None,
    ) -> FunnelStep | None:
        """Fold one event in; returns the appended step, or None for a repeat."""
        # Timestamps never go backwards even if a caller's clock does.
        if now < self.last_activity:
            now = self.last_activity
        self.last_activity = now
        if user_id:
            self.user_id = user_id
        if lead_id:
            self.lead_id = lead_id

        previous = self.last_step
        if previous is not None and previous.step == step:
            return None
        appended = FunnelStep(
            step=step,
            timestamp=now,
            metadata=dict(metadata or {}),
            previous_step=previous.step if previous else None,
        )
        self.steps.append(appended)
        return appended

    def snapshot(self, now: datetime, appended: FunnelStep | None = None) -> FunnelSnapshot:
        completed: list[str] = []
        for entry in self.steps:
            if entry.step not in completed:
                completed.append(entry.step)
        furthest = max(completed, key=_STEP_INDEX.__getitem__) if completed else None
        current = self.last_step.step if self.last_step else PAGE_VIEW
        return FunnelSnapshot(
            session_id=self.session_id,
            current_step=current,
            completed_steps=tuple(completed),
            furthest_step=furthest,
            progress_percentage=len(completed) / len(FUNNEL_STEPS) * 100,
            time_in_funnel_seconds=max(0.0, (now - self.start_time).total_seconds()),
            step_count=len(self.steps),
            started_at=self.start_time,
            last_activity=self.last_activity,
            user_id=self.user_id,
            lead_id=self.lead_id,
            appended_step=appended,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start_time": self.start_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "user_id": self.user_id,
            "lead_id": self.lead_id,
            "steps": [entry.to_dict() for entry in self.steps],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FunnelSession:
        return cls(
            session_id=payload["session_id"],
            start_time=as_utc(datetime.fromisoformat(payload["start_time"])),
            last_activity=as_utc(datetime.fromisoformat(payload["last_activity"])),
            user_id=payload.get("user_id"),
            lead_id=payload.get("lead_id"),
            steps=[FunnelStep.from_dict(entry) for entry in payload.get("steps", [])],
        )


@dataclass(frozen=True)
class FunnelSnapshot:
    session_id: str
    current_step: str
    completed_steps: tuple[str, ...]
    furthest_step: str | None
    progress_percentage: float
    time_in_funnel_seconds: float
    step_count: int
    started_at: datetime
    last_activity: datetime
    user_id: str | None = None
    lead_id: str | None = None
    appended_step: FunnelStep | None = None
