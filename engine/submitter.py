"""
Batch submission of collected items.

Every item in a batch is marked SUBMITTED while the request is in flight.
Acknowledged items become CREDITED with the reward the server assigned;
everything else goes back to UNSYNCED and is picked up by a later sync.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from engine.api_client import AriaApiClient
from engine.config import SyncConfig
from engine.errors import ApiError, TransientNetworkError
from engine.models import CollectedItem, ItemOutcome, SubmitOutcome, SyncReport, SyncState
from engine.record_store import RecordStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchSubmitter:
    def __init__(
        self,
        store: RecordStore,
        client: AriaApiClient,
        config: Optional[SyncConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config or SyncConfig()
        self.clock = clock

    def submit(self, items: List[CollectedItem]) -> SubmitOutcome:
        """
        Submit one batch and apply the server's acknowledgments.

        Raises:
            ValueError: batch larger than max_batch_size, or an item is not unsynced
            TransientNetworkError: the request failed; every item is unsynced again
        """
        if len(items) > self.config.max_batch_size:
            raise ValueError(
                f"Batch of {len(items)} items exceeds max_batch_size {self.config.max_batch_size}"
            )
        outcome = SubmitOutcome()
        if not items:
            return outcome

        ids = [item.id for item in items]
        self.store.mark_submitted(ids)
        try:
            acknowledged = self.client.submit_data(items)
        except BaseException:
            self.store.mark_unsynced(ids)
            raise

        credited_at = self.clock()
        requested = set(ids)
        for item_id, reward in acknowledged.items():
            if item_id not in requested:
                logger.warning("Ignoring acknowledgment for unrequested item %s", item_id)
                continue
            self.store.mark_credited(item_id, reward, credited_at)
            outcome.outcomes[item_id] = ItemOutcome.CREDITED
            outcome.rewards[item_id] = reward

        retry = [i for i in ids if i not in outcome.outcomes]
        self.store.mark_unsynced(retry)
        for item_id in retry:
            outcome.outcomes[item_id] = ItemOutcome.RETRY

        logger.info("Submitted %s items: %s credited, %s to retry",
                    len(ids), len(outcome.credited_ids), len(retry))
        return outcome

    def sync_once(self) -> SyncReport:
        """Drain unsynced items in bounded batches.

        A batch the server rejects is skipped and left unsynced; the pass stops
        at the first transport failure.
        """
        report = SyncReport()
        attempted = set()
        while True:
            batch = [
                item for item in self.store.get_unsynced_items()
                if item.id not in attempted and item.sync_state == SyncState.UNSYNCED
            ][: self.config.max_batch_size]
            if not batch:
                break
            attempted.update(item.id for item in batch)
            try:
                outcome = self.submit(batch)
            except TransientNetworkError as exc:
                logger.warning("Sync interrupted after %s batches: %s", report.batches, exc)
                report.transport_error = str(exc)
                break
            except ApiError as exc:
                logger.warning("Server rejected a batch of %s items: %s", len(batch), exc)
                report.rejected_batches += 1
                report.retry += len(batch)
                continue
            report.batches += 1
            report.credited += len(outcome.credited_ids)
            report.retry += len(outcome.retry_ids)
        return report
