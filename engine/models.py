"""
Data models for the device-side reward sync engine.
All models are dataclasses for simplicity and type safety.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


class SyncState(str, Enum):
    UNSYNCED = "unsynced"
    SUBMITTED = "submitted"  # in flight inside one submission request
    CREDITED = "credited"


class TransactionType(str, Enum):
    REWARD = "REWARD"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass
class CollectedItem:
    """
    One piece of collected data held by the record store.

    Fields:
    - id: stable client-generated identifier, the server's dedupe key
    - type: 'location' | 'contacts' | 'calendar' | 'sms' | 'other'
    - content: serialized payload
    - collected_at: when the item was collected
    - sync_state: see SyncState
    - reward: server-assigned reward, set iff sync_state is CREDITED
    - credited_at: when the credit was acknowledged
    """
    id: str
    type: str
    content: str
    collected_at: datetime
    sync_state: SyncState = SyncState.UNSYNCED
    reward: Optional[Decimal] = None
    credited_at: Optional[datetime] = None

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "timestamp": int(self.collected_at.timestamp() * 1000),
        }


@dataclass
class WalletTransactionRecord:
    """
    Local mirror of a server wallet transaction.

    id, amount and from_address are assigned by the server and never
    rewritten locally; status only moves forward out of PENDING.
    """
    id: str
    amount: Decimal
    timestamp: datetime
    type: TransactionType
    status: TransactionStatus
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    description: Optional[str] = None


class ItemOutcome(str, Enum):
    CREDITED = "credited"
    RETRY = "retry"  # not acknowledged this time; stays unsynced


@dataclass
class SubmitOutcome:
    """Per-item verdict of one batch submission, keyed by item id."""
    outcomes: Dict[str, ItemOutcome] = field(default_factory=dict)
    rewards: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def credited_ids(self) -> List[str]:
        return [i for i, o in self.outcomes.items() if o == ItemOutcome.CREDITED]

    @property
    def retry_ids(self) -> List[str]:
        return [i for i, o in self.outcomes.items() if o == ItemOutcome.RETRY]


@dataclass
class SyncReport:
    batches: int = 0
    credited: int = 0
    retry: int = 0
    # Batches the server refused outright (4xx); their items stay unsynced
    rejected_batches: int = 0
    transport_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transport_error is None


@dataclass
class RewardTotal:
    """Displayed reward total and where it came from ('remote' or 'local')."""
    amount: Decimal
    source: str
