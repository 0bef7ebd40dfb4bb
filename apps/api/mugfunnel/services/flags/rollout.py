from __future__ import annotations

import hashlib
from dataclasses import dataclass

from mugfunnel.core.config import Settings


@dataclass(frozen=True)
class FeatureFlags:
    ai_mode_enabled: bool
    legacy_3d_mode_enabled: bool
    ai_mode_rollout_percent: int

    @classmethod
    def from_settings(cls, settings: Settings) -> FeatureFlags:
        return cls(
            ai_mode_enabled=settings.ai_mode_enabled,
            legacy_3d_mode_enabled=settings.legacy_3d_mode_enabled,
            ai_mode_rollout_percent=settings.ai_mode_rollout_percent,
        )


def rollout_bucket(user_id: str) -> int:
    """Stable bucket in 0..99; the same user id always lands in the same bucket."""
    digest = hashlib.sha256(user_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def should_show_ai_mode(user_id: str, flags: FeatureFlags) -> bool:
    if not flags.ai_mode_enabled:
        return False
    if flags.ai_mode_rollout_percent >= 100:
        return True
    if flags.ai_mode_rollout_percent <= 0:
        return False
    return rollout_bucket(user_id) < flags.ai_mode_rollout_percent
