"""
Background sync loop for the device.

Runs BatchSubmitter.sync_once on a daemon thread. A transport failure waits
with exponential backoff (capped at max_backoff_seconds) instead of the full
interval; errors are logged and never reach the interactive thread.
"""

import logging
import threading
from typing import Optional

from engine.config import SyncConfig
from engine.submitter import BatchSubmitter

logger = logging.getLogger(__name__)


class BackgroundSync:
    def __init__(self, submitter: BatchSubmitter, config: Optional[SyncConfig] = None) -> None:
        self.submitter = submitter
        self.config = config or submitter.config
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.failures = 0

    def next_delay(self) -> float:
        if self.failures == 0:
            return self.config.sync_interval_seconds
        backoff = self.config.initial_backoff_seconds * (2 ** (self.failures - 1))
        return min(backoff, self.config.max_backoff_seconds)

    def run_once(self) -> float:
        """One sync attempt; returns the delay before the next one."""
        try:
            report = self.submitter.sync_once()
        except Exception:
            logger.exception("Background sync failed")
            self.failures += 1
        else:
            if report.ok:
                self.failures = 0
            else:
                self.failures += 1
        return self.next_delay()

    def _loop(self) -> None:
        # Items left in flight by a previous process are resent
        recovered = self.submitter.store.recover_in_flight()
        if recovered:
            logger.info("Recovered %s in-flight items", recovered)
        while not self._stop.is_set():
            delay = self.run_once()
            self._stop.wait(delay)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="aria-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
