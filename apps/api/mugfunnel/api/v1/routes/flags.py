from __future__ import annotations

from fastapi import APIRouter, Depends

from mugfunnel.api.v1.deps import get_settings_dep
from mugfunnel.api.v1.schemas import FlagsResponse
from mugfunnel.core.config import Settings
from mugfunnel.services.flags.rollout import FeatureFlags, rollout_bucket, should_show_ai_mode

router = APIRouter(prefix="/flags", tags=["flags"])


@router.get("/{user_id}", response_model=FlagsResponse)
def get_flags(user_id: str, settings: Settings = Depends(get_settings_dep)) -> FlagsResponse:
    flags = FeatureFlags.from_settings(settings)
    return FlagsResponse(
        user_id=user_id,
        ai_mode_enabled=flags.ai_mode_enabled,
        legacy_3d_mode_enabled=flags.legacy_3d_mode_enabled,
        ai_mode_rollout_percent=flags.ai_mode_rollout_percent,
        rollout_bucket=rollout_bucket(user_id),
        show_ai_mode=should_show_ai_mode(user_id, flags),
    )
