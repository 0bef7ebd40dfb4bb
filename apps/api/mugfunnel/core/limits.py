from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from mugfunnel.core.config import Settings


@dataclass(frozen=True)
class EngineLimits:
    """Thresholds handed to the quota and duplicate components at construction.

    session_limit: per-session daily actions (advisory, process-local).
    identity_limit: per-identity (hashed IP) daily actions.
    global_limit: aggregate daily actions across all identities.
    email_window_hours: recency window for the identity duplicate match.
    session_window_minutes: recency window for session and fingerprint matches.
    allow_merge_updates: whether detected duplicates may update the existing lead.
    rate_limit_disabled: allow everything and count nothing.
    """

    session_limit: int = 5
    identity_limit: int = 15
    global_limit: int = 1400
    email_window_hours: int = 24
    session_window_minutes: int = 30
    allow_merge_updates: bool = True
    rate_limit_disabled: bool = False

    @property
    def email_window(self) -> timedelta:
        return timedelta(hours=self.email_window_hours)

    @property
    def session_window(self) -> timedelta:
        return timedelta(minutes=self.session_window_minutes)

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineLimits:
        return cls(
            session_limit=settings.session_limit,
            identity_limit=settings.identity_limit,
            global_limit=settings.global_limit,
            email_window_hours=settings.email_window_hours,
            session_window_minutes=settings.session_window_minutes,
            allow_merge_updates=settings.allow_merge_updates,
            rate_limit_disabled=settings.rate_limit_disabled,
        )
