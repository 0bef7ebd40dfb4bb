from __future__ import annotations

import logging
import threading

from mugfunnel.core.clock import Clock, SystemClock
from mugfunnel.services.funnel.store import FunnelSessionStore
from mugfunnel.services.quota.session_counter import SessionCounterRegistry

logger = logging.getLogger(__name__)


class FunnelReaper:
    """Background sweep that drops idle funnel sessions and stale layer-1 counters.

    Runs on its own daemon thread so request handlers never pay for it.
    """

    def __init__(
        self,
        store: FunnelSessionStore,
        interval_seconds: float,
        session_counters: SessionCounterRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.session_counters = session_counters
        self.clock = clock or SystemClock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self) -> int:
        evicted = self.store.evict_idle()
        if self.session_counters is not None:
            self.session_counters.prune(self.clock.day_key())
        return evicted

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("funnel_reaper_sweep_failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="funnel-reaper", daemon=True)
        self._thread.start()
        logger.info("funnel_reaper_started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
