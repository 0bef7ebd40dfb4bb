from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from functools import lru_cache
from typing import Any

from redis import Redis
from sqlalchemy.orm import Session

from mugfunnel.core.clock import Clock
from mugfunnel.core.config import Settings, get_settings
from mugfunnel.core.limits import EngineLimits
from mugfunnel.services.analytics.sink import AnalyticsSink, build_analytics_sink
from mugfunnel.services.duplicates.index import DuplicateIndex
from mugfunnel.services.duplicates.merge import LeadMergeEngine
from mugfunnel.services.funnel.orchestrator import FunnelOrchestrator
from mugfunnel.services.funnel.reaper import FunnelReaper
from mugfunnel.services.funnel.store import FunnelSessionStore, InMemoryFunnelSessionStore, RedisFunnelSessionStore
from mugfunnel.services.quota.limiter import RateLimiter
from mugfunnel.services.quota.session_counter import SessionCounterRegistry
from mugfunnel.services.quota.store import QuotaStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_funnel_store() -> FunnelSessionStore:
    settings = get_settings()
    idle_threshold = timedelta(seconds=settings.funnel_session_idle_seconds)
    if settings.funnel_store_backend == "redis":
        logger.info("funnel_store_backend_selected", extra={"backend": "redis"})
        return RedisFunnelSessionStore(Redis.from_url(settings.redis_url), idle_threshold=idle_threshold)
    return InMemoryFunnelSessionStore(idle_threshold=idle_threshold)


@lru_cache(maxsize=1)
def get_session_counters() -> SessionCounterRegistry:
    return SessionCounterRegistry()


@lru_cache(maxsize=1)
def get_analytics_sink() -> AnalyticsSink:
    return build_analytics_sink(get_settings())


@lru_cache(maxsize=1)
def get_reaper() -> FunnelReaper:
    settings = get_settings()
    return FunnelReaper(
        get_funnel_store(),
        settings.funnel_reaper_interval_seconds,
        session_counters=get_session_counters(),
    )


def reset_runtime() -> None:
    """Drop process-wide singletons so the next lookup rebuilds them from settings."""
    if get_reaper.cache_info().currsize:
        get_reaper().stop()
    if get_analytics_sink.cache_info().currsize:
        sink = get_analytics_sink()
        close = getattr(sink, "close", None)
        if close is not None:
            close()
    for cached in (get_reaper, get_analytics_sink, get_session_counters, get_funnel_store):
        cached.cache_clear()


def build_orchestrator(
    db: Session,
    settings: Settings | None = None,
    *,
    funnel_store: FunnelSessionStore | None = None,
    session_counters: SessionCounterRegistry | None = None,
    analytics: AnalyticsSink | None = None,
    clock: Clock | None = None,
    hold_submission: Callable[[dict[str, Any]], str] | None = None,
) -> FunnelOrchestrator:
    settings = settings or get_settings()
    limits = EngineLimits.from_settings(settings)
    return FunnelOrchestrator(
        db=db,
        funnel_store=funnel_store if funnel_store is not None else get_funnel_store(),
        rate_limiter=RateLimiter(
            QuotaStore(db),
            session_counters if session_counters is not None else get_session_counters(),
            limits,
            clock=clock,
        ),
        duplicate_index=DuplicateIndex(db, clock=clock),
        merge_engine=LeadMergeEngine(db, clock=clock),
        analytics=analytics if analytics is not None else get_analytics_sink(),
        limits=limits,
        clock=clock,
        hold_submission=hold_submission,
    )
