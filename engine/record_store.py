"""
Local store of collected items and their sync state.

The store is the only writer of CollectedItem state. A reward is set on an
item exactly once, when the server acknowledges it; later acknowledgments
of the same id are ignored.
"""

import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol

from engine.models import CollectedItem, SyncState


class RecordStore(Protocol):
    def get_unsynced_items(self, limit: Optional[int] = None) -> List[CollectedItem]: ...

    def mark_submitted(self, item_ids: Iterable[str]) -> None: ...

    def mark_unsynced(self, item_ids: Iterable[str]) -> None: ...

    def mark_credited(self, item_id: str, reward: Decimal, credited_at: datetime) -> bool: ...

    def recover_in_flight(self) -> int: ...

    def credited_total(self) -> Decimal: ...


class InMemoryRecordStore:
    """Thread-safe RecordStore kept in process memory."""

    def __init__(self) -> None:
        self._items: Dict[str, CollectedItem] = {}
        self._lock = threading.Lock()

    def add_item(
        self,
        item_type: str,
        content: str,
        collected_at: Optional[datetime] = None,
        item_id: Optional[str] = None,
    ) -> CollectedItem:
        item = CollectedItem(
            id=item_id or uuid.uuid4().hex,
            type=item_type,
            content=content,
            collected_at=collected_at or datetime.now(timezone.utc),
        )
        with self._lock:
            if item.id in self._items:
                raise ValueError(f"Item {item.id} already exists")
            self._items[item.id] = item
        return item

    def get(self, item_id: str) -> Optional[CollectedItem]:
        with self._lock:
            return self._items.get(item_id)

    def all_items(self) -> List[CollectedItem]:
        with self._lock:
            return list(self._items.values())

    def get_unsynced_items(self, limit: Optional[int] = None) -> List[CollectedItem]:
        """Unsynced items, oldest first."""
        with self._lock:
            items = [i for i in self._items.values() if i.sync_state == SyncState.UNSYNCED]
        items.sort(key=lambda i: i.collected_at)
        return items[:limit] if limit is not None else items

    def mark_submitted(self, item_ids: Iterable[str]) -> None:
        item_ids = list(item_ids)
        with self._lock:
            for item_id in item_ids:
                item = self._items[item_id]
                if item.sync_state != SyncState.UNSYNCED:
                    raise ValueError(f"Item {item_id} is {item.sync_state.value}, not unsynced")
            for item_id in item_ids:
                self._items[item_id].sync_state = SyncState.SUBMITTED

    def mark_unsynced(self, item_ids: Iterable[str]) -> None:
        with self._lock:
            for item_id in item_ids:
                item = self._items.get(item_id)
                if item is not None and item.sync_state == SyncState.SUBMITTED:
                    item.sync_state = SyncState.UNSYNCED

    def mark_credited(self, item_id: str, reward: Decimal, credited_at: datetime) -> bool:
        """Record the server's reward. Returns False if unknown or already credited."""
        with self._lock:
            item = self._items.get(item_id)
            if item is None or item.sync_state == SyncState.CREDITED:
                return False
            item.sync_state = SyncState.CREDITED
            item.reward = reward
            item.credited_at = credited_at
            return True

    def recover_in_flight(self) -> int:
        """Return items left Submitted by an interrupted request to Unsynced."""
        with self._lock:
            stuck = [i for i in self._items.values() if i.sync_state == SyncState.SUBMITTED]
            for item in stuck:
                item.sync_state = SyncState.UNSYNCED
        return len(stuck)

    def credited_total(self) -> Decimal:
        with self._lock:
            return sum(
                (i.reward for i in self._items.values() if i.sync_state == SyncState.CREDITED),
                Decimal("0"),
            )
