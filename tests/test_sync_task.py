"""
Tests for the background sync loop and device configuration.
"""

import time
from decimal import Decimal
from unittest.mock import Mock

from engine.config import SyncConfig
from engine.models import SyncReport
from engine.record_store import InMemoryRecordStore
from engine.submitter import BatchSubmitter
from engine.sync_task import BackgroundSync


def _submitter(config):
    submitter = Mock(spec=BatchSubmitter)
    submitter.config = config
    submitter.store = InMemoryRecordStore()
    return submitter


class TestBackoff:
    def test_success_waits_full_interval(self):
        config = SyncConfig(sync_interval_seconds=3600)
        submitter = _submitter(config)
        submitter.sync_once.return_value = SyncReport(batches=1, credited=3)

        assert BackgroundSync(submitter).run_once() == 3600

    def test_transport_failures_back_off_exponentially_with_cap(self):
        config = SyncConfig(initial_backoff_seconds=5, max_backoff_seconds=30)
        submitter = _submitter(config)
        submitter.sync_once.return_value = SyncReport(transport_error="timed out")
        sync = BackgroundSync(submitter)

        delays = [sync.run_once() for _ in range(5)]

        assert delays == [5, 10, 20, 30, 30]

    def test_unexpected_error_is_contained_and_backs_off(self):
        config = SyncConfig(initial_backoff_seconds=5)
        submitter = _submitter(config)
        submitter.sync_once.side_effect = [RuntimeError("boom"), SyncReport()]
        sync = BackgroundSync(submitter)

        assert sync.run_once() == 5
        assert sync.run_once() == config.sync_interval_seconds
        assert sync.failures == 0


class TestThread:
    def test_start_recovers_in_flight_items_and_stop_joins(self):
        config = SyncConfig(sync_interval_seconds=60)
        submitter = _submitter(config)
        item = submitter.store.add_item("sms", "{}", item_id="a")
        submitter.store.mark_submitted([item.id])
        submitter.sync_once.return_value = SyncReport()
        sync = BackgroundSync(submitter)

        sync.start()
        deadline = time.monotonic() + 5
        while submitter.sync_once.call_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        sync.stop(timeout=5)

        assert submitter.sync_once.call_count >= 1
        assert not sync.running
        assert [i.id for i in submitter.store.get_unsynced_items()] == ["a"]
        assert submitter.store.credited_total() == Decimal("0")


class TestSyncConfig:
    def test_from_env_overrides_and_falls_back(self, monkeypatch):
        monkeypatch.setenv("ARIA_API_URL", "https://aria.example/api/v1")
        monkeypatch.setenv("ARIA_SYNC_BATCH_SIZE", "20")
        monkeypatch.setenv("ARIA_SYNC_INTERVAL", "not-a-number")

        config = SyncConfig.from_env()

        assert config.api_base_url == "https://aria.example/api/v1"
        assert config.max_batch_size == 20
        assert config.sync_interval_seconds == 3600.0
