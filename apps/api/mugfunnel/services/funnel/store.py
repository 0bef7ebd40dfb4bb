from __future__ import annotations

import json
import logging
import threading
from datetime import timedelta
from typing import Any, Protocol

from redis import Redis
from redis.exceptions import WatchError

from mugfunnel.core.clock import Clock, SystemClock
from mugfunnel.core.errors import STORAGE_OUTAGE_ERRORS, StorageUnavailableError
from mugfunnel.services.funnel.models import FunnelSession, FunnelSnapshot

logger = logging.getLogger(__name__)

DEFAULT_IDLE_THRESHOLD = timedelta(hours=1)


class FunnelSessionStore(Protocol):
    def record_step(
        self,
        session_id: str,
        step: str,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
        lead_id: str | None = None,
    ) -> FunnelSnapshot: ...

    def get_snapshot(self, session_id: str) -> FunnelSnapshot | None: ...

    def evict_idle(self) -> int: ...


class InMemoryFunnelSessionStore:
    """Process-local session map with one lock per session.

    The registry lock only guards the dict itself; step journals are mutated
    under the owning session's lock, and eviction holds the registry lock
    for a single removal at a time.
    """

    def __init__(self, clock: Clock | None = None, idle_threshold: timedelta = DEFAULT_IDLE_THRESHOLD) -> None:
        self.clock = clock or SystemClock()
        self.idle_threshold = idle_threshold
        self._sessions: dict[str, FunnelSession] = {}
        self._registry_lock = threading.Lock()

    def _get_or_create(self, session_id: str) -> FunnelSession:
        with self._registry_lock:
            session = self._sessions.get(session_id)
            if session is None:
                now = self.clock.now()
                session = FunnelSession(session_id=session_id, start_time=now, last_activity=now)
                self._sessions[session_id] = session
                logger.debug("funnel_session_created", extra={"session_id": session_id})
            return session

    def record_step(
        self,
        session_id: str,
        step: str,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
        lead_id: str | None = None,
    ) -> FunnelSnapshot:
        while True:
            session = self._get_or_create(session_id)
            with session.lock:
                if session.evicted:
                    # Reaped between lookup and lock; start a fresh session.
                    continue
                now = self.clock.now()
                appended = session.apply(step, now, metadata, user_id, lead_id)
                return session.snapshot(session.last_activity, appended)

    def get_snapshot(self, session_id: str) -> FunnelSnapshot | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        with session.lock:
            if session.evicted:
                return None
            return session.snapshot(max(self.clock.now(), session.last_activity))

    def evict_idle(self) -> int:
        cutoff = self.clock.now() - self.idle_threshold
        with self._registry_lock:
            candidates = list(self._sessions.keys())

        evicted = 0
        for session_id in candidates:
            with self._registry_lock:
                session = self._sessions.get(session_id)
                if session is None:
                    continue
                with session.lock:
                    if session.last_activity >= cutoff:
                        continue
                    session.evicted = True
                    del self._sessions[session_id]
                    evicted += 1
        if evicted:
            logger.info("funnel_sessions_evicted", extra={"count": evicted, "remaining": len(self)})
        return evicted

    def clear(self) -> None:
        with self._registry_lock:
            for session in self._sessions.values():
                session.evicted = True
            self._sessions.clear()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._sessions)


class RedisFunnelSessionStore:
    """Shared funnel store for multi-instance deployments.

    Each session is one JSON document updated with WATCH/MULTI, so
    concurrent handlers on different hosts serialize per key. Idle sessions
    expire through the key TTL, which makes ``evict_idle`` a no-op.
    """

    key_prefix = "funnel_session:v1:"

    def __init__(
        self,
        client: Redis,
        clock: Clock | None = None,
        idle_threshold: timedelta = DEFAULT_IDLE_THRESHOLD,
        max_retries: int = 20,
    ) -> None:
        self.client = client
        self.clock = clock or SystemClock()
        self.idle_threshold = idle_threshold
        self.max_retries = max_retries

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def _ttl_seconds(self) -> int:
        return max(1, int(self.idle_threshold.total_seconds()))

    def _load(self, raw: str | bytes | None) -> FunnelSession | None:
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return FunnelSession.from_dict(json.loads(raw))

    def record_step(
        self,
        session_id: str,
        step: str,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
        lead_id: str | None = None,
    ) -> FunnelSnapshot:
        key = self._key(session_id)
        try:
            for _ in range(self.max_retries):
                with self.client.pipeline() as pipe:
                    try:
                        pipe.watch(key)
                        now = self.clock.now()
                        session = self._load(pipe.get(key))
                        if session is None:
                            session = FunnelSession(session_id=session_id, start_time=now, last_activity=now)
                        appended = session.apply(step, now, metadata, user_id, lead_id)
                        pipe.multi()
                        pipe.set(key, json.dumps(session.to_dict(), separators=(",", ":")), ex=self._ttl_seconds())
                        pipe.execute()
                        return session.snapshot(session.last_activity, appended)
                    except WatchError:
                        continue
        except STORAGE_OUTAGE_ERRORS as exc:
            logger.error("funnel_store_unavailable", extra={"session_id": session_id})
            raise StorageUnavailableError("funnel_sessions", str(exc)) from exc
        raise RuntimeError(f"funnel session {session_id} too contended to update")

    def get_snapshot(self, session_id: str) -> FunnelSnapshot | None:
        try:
            session = self._load(self.client.get(self._key(session_id)))
        except STORAGE_OUTAGE_ERRORS as exc:
            logger.error("funnel_store_unavailable", extra={"session_id": session_id})
            raise StorageUnavailableError("funnel_sessions", str(exc)) from exc
        if session is None:
            return None
        return session.snapshot(max(self.clock.now(), session.last_activity))

    def evict_idle(self) -> int:
        return 0
