from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from mugfunnel.core.clock import Clock, SystemClock, day_key_for, hours_until_utc_midnight, next_utc_midnight
from mugfunnel.core.errors import StorageUnavailableError
from mugfunnel.core.limits import EngineLimits
from mugfunnel.services.quota.session_counter import SessionCounterRegistry
from mugfunnel.services.quota.store import GLOBAL_SUBJECT_KEY, QuotaStore, identity_subject_key

logger = logging.getLogger(__name__)

LAYER_SESSION = "session"
LAYER_IDENTITY = "identity"
LAYER_GLOBAL = "global"
LAYERS = (LAYER_SESSION, LAYER_IDENTITY, LAYER_GLOBAL)

SESSION_LIMIT_REACHED = "SESSION_LIMIT_REACHED"
IDENTITY_LIMIT_REACHED = "IDENTITY_LIMIT_REACHED"
GLOBAL_LIMIT_REACHED = "GLOBAL_LIMIT_REACHED"
STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"

UNKNOWN_IDENTITY = "unknown"


@dataclass(frozen=True)
class QuotaContext:
    session_id: str | None = None
    identity_hash: str | None = None

    @property
    def has_identity(self) -> bool:
        return bool(self.identity_hash) and self.identity_hash != UNKNOWN_IDENTITY


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    day_key: str
    remaining_by_layer: dict[str, int | None] = field(default_factory=dict)
    denial_reason: str | None = None
    denied_layer: str | None = None
    counted: bool = False
    retry_after: str | None = None
    hours_until_reset: int | None = None

    def limit_message(self) -> str | None:
        if self.allowed:
            return None
        if self.denial_reason == SESSION_LIMIT_REACHED:
            return f"Free session limit reached. Try again in {self.hours_until_reset} hours or upload your own image."
        if self.denial_reason == IDENTITY_LIMIT_REACHED:
            return f"Daily limit reached. Try again in {self.hours_until_reset} hours or upload your own image."
        if self.denial_reason == GLOBAL_LIMIT_REACHED:
            return (
                f"Service temporarily at capacity. Try again in {self.hours_until_reset} hours "
                "or upload your own image."
            )
        return "Usage limits are temporarily unavailable. Please try again shortly."


class RateLimiter:
    """Three ordered quota layers: session (advisory), identity, global.

    ``check`` never mutates anything. ``consume`` checks each layer in
    order, stops at the first denial, and only when every applicable layer
    allows the action increments all of them using one day-key.
    """

    def __init__(
        self,
        store: QuotaStore,
        sessions: SessionCounterRegistry,
        limits: EngineLimits,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.limits = limits
        self.clock = clock or SystemClock()

    def check(self, context: QuotaContext) -> QuotaDecision:
        now = self.clock.now()
        return self._evaluate(context, now, day_key_for(now))

    def consume(self, context: QuotaContext) -> QuotaDecision:
        now = self.clock.now()
        day_key = day_key_for(now)
        decision = self._evaluate(context, now, day_key)
        if not decision.allowed or self.limits.rate_limit_disabled:
            return decision

        subject_keys: list[str] = []
        if context.has_identity:
            subject_keys.append(identity_subject_key(context.identity_hash or ""))
        subject_keys.append(GLOBAL_SUBJECT_KEY)

        try:
            counts = self.store.increment_many(subject_keys, day_key, now=now)
        except StorageUnavailableError:
            logger.error(
                "quota_consume_storage_unavailable",
                extra={"session_id": context.session_id, "day_key": day_key},
            )
            return self._denied(now, day_key, decision.remaining_by_layer, STORAGE_UNAVAILABLE, None)

        remaining = dict(decision.remaining_by_layer)
        if context.session_id:
            session_count = self.sessions.for_session(context.session_id, day_key).increment(day_key)
            remaining[LAYER_SESSION] = max(0, self.limits.session_limit - session_count)
        if context.has_identity:
            identity_count = counts[identity_subject_key(context.identity_hash or "")]
            remaining[LAYER_IDENTITY] = max(0, self.limits.identity_limit - identity_count)
        remaining[LAYER_GLOBAL] = max(0, self.limits.global_limit - counts[GLOBAL_SUBJECT_KEY])

        logger.info(
            "quota_consumed",
            extra={"session_id": context.session_id, "day_key": day_key, "remaining": remaining},
        )
        return QuotaDecision(allowed=True, day_key=day_key, remaining_by_layer=remaining, counted=True)

    def _evaluate(self, context: QuotaContext, now: datetime, day_key: str) -> QuotaDecision:
        remaining: dict[str, int | None] = {layer: None for layer in LAYERS}
        if self.limits.rate_limit_disabled:
            return QuotaDecision(allowed=True, day_key=day_key, remaining_by_layer=remaining)

        if context.session_id:
            session_count = self.sessions.for_session(context.session_id, day_key).count(day_key)
            remaining[LAYER_SESSION] = max(0, self.limits.session_limit - session_count)
            if session_count >= self.limits.session_limit:
                return self._denied(now, day_key, remaining, SESSION_LIMIT_REACHED, LAYER_SESSION)

        try:
            if context.has_identity:
                identity_count = self.store.get_count(identity_subject_key(context.identity_hash or ""), day_key)
                remaining[LAYER_IDENTITY] = max(0, self.limits.identity_limit - identity_count)
                if identity_count >= self.limits.identity_limit:
                    return self._denied(now, day_key, remaining, IDENTITY_LIMIT_REACHED, LAYER_IDENTITY)

            global_count = self.store.get_count(GLOBAL_SUBJECT_KEY, day_key)
        except StorageUnavailableError:
            logger.error(
                "quota_check_storage_unavailable",
                extra={"session_id": context.session_id, "day_key": day_key},
            )
            return self._denied(now, day_key, remaining, STORAGE_UNAVAILABLE, None)

        remaining[LAYER_GLOBAL] = max(0, self.limits.global_limit - global_count)
        if global_count >= self.limits.global_limit:
            return self._denied(now, day_key, remaining, GLOBAL_LIMIT_REACHED, LAYER_GLOBAL)

        return QuotaDecision(allowed=True, day_key=day_key, remaining_by_layer=remaining)

    def _denied(
        self,
        now: datetime,
        day_key: str,
        remaining: dict[str, int | None],
        reason: str,
        layer: str | None,
    ) -> QuotaDecision:
        if layer is not None:
            logger.info("quota_denied", extra={"layer": layer, "reason": reason, "day_key": day_key})
        return QuotaDecision(
            allowed=False,
            day_key=day_key,
            remaining_by_layer=dict(remaining),
            denial_reason=reason,
            denied_layer=layer,
            retry_after=next_utc_midnight(now).isoformat(),
            hours_until_reset=hours_until_utc_midnight(now),
        )

