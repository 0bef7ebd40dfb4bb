from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from mugfunnel.core.clock import ManualClock
from mugfunnel.core.errors import StorageUnavailableError
from mugfunnel.services.funnel.models import CUSTOMIZATION, ENGAGEMENT_3D, LEAD_CAPTURE, PAGE_VIEW
from mugfunnel.services.funnel.store import RedisFunnelSessionStore


START = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


class InterleavingClock(ManualClock):
    """Runs ``interleave`` once, on the first read, to simulate a concurrent writer."""

    def __init__(self, start: datetime, interleave) -> None:
        super().__init__(start)
        self._interleave = interleave

    def now(self) -> datetime:
        interleave, self._interleave = self._interleave, None
        if interleave is not None:
            interleave()
        return super().now()


def _store(server: fakeredis.FakeServer, clock: ManualClock) -> RedisFunnelSessionStore:
    return RedisFunnelSessionStore(fakeredis.FakeRedis(server=server), clock=clock, idle_threshold=timedelta(hours=1))


def test_repeated_step_is_stored_once() -> None:
    server = fakeredis.FakeServer()
    clock = ManualClock(START)
    store = _store(server, clock)

    store.record_step("s1", PAGE_VIEW)
    clock.advance(seconds=10)
    store.record_step("s1", ENGAGEMENT_3D)
    snapshot = store.record_step("s1", ENGAGEMENT_3D)

    assert snapshot.appended_step is None
    assert snapshot.step_count == 2
    assert snapshot.completed_steps == (PAGE_VIEW, ENGAGEMENT_3D)
    assert snapshot.progress_percentage == 50.0


def test_identifiers_survive_reload_from_another_instance() -> None:
    server = fakeredis.FakeServer()
    clock = ManualClock(START)
    first = _store(server, clock)
    second = _store(server, clock)

    first.record_step("s1", PAGE_VIEW, user_id="u-1")
    second.record_step("s1", LEAD_CAPTURE, lead_id="lead-1")
    clock.advance(seconds=30)
    snapshot = first.get_snapshot("s1")

    assert snapshot is not None
    assert snapshot.user_id == "u-1"
    assert snapshot.lead_id == "lead-1"
    assert snapshot.current_step == LEAD_CAPTURE
    assert snapshot.started_at == START
    assert snapshot.time_in_funnel_seconds == 30.0


def test_session_key_expires_after_idle_threshold() -> None:
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server)
    store = RedisFunnelSessionStore(client, clock=ManualClock(START), idle_threshold=timedelta(hours=1))

    store.record_step("s1", PAGE_VIEW)

    key = f"{RedisFunnelSessionStore.key_prefix}s1"
    assert 0 < client.ttl(key) <= 3600
    assert json.loads(client.get(key))["session_id"] == "s1"
    assert store.evict_idle() == 0
    assert store.get_snapshot("missing") is None


def test_concurrent_write_between_watch_and_exec_is_retried() -> None:
    server = fakeredis.FakeServer()
    other = _store(server, ManualClock(START))
    clock = InterleavingClock(START + timedelta(seconds=5), lambda: other.record_step("s1", PAGE_VIEW))
    store = _store(server, clock)

    snapshot = store.record_step("s1", CUSTOMIZATION)

    assert snapshot.completed_steps == (PAGE_VIEW, CUSTOMIZATION)
    assert snapshot.step_count == 2
    assert snapshot.started_at == START


def test_connection_failure_raises_storage_unavailable() -> None:
    server = fakeredis.FakeServer()
    store = _store(server, ManualClock(START))
    store.record_step("s1", PAGE_VIEW)
    server.connected = False

    with pytest.raises(StorageUnavailableError):
        store.record_step("s1", CUSTOMIZATION)
    with pytest.raises(StorageUnavailableError):
        store.get_snapshot("s1")
