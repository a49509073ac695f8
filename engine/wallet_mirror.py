"""
Device-side mirror of the server's wallet ledger, and the reward total shown
to the user.

The server owns every transaction: ids, amounts and sender addresses are
taken as they arrive and never rewritten here. A mirrored record may only
move out of PENDING; once it is COMPLETED or FAILED it is frozen.
"""

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from engine.api_client import AriaApiClient
from engine.errors import ApiError, TransientNetworkError, WalletNotConfigured
from engine.models import RewardTotal, TransactionStatus, TransactionType, WalletTransactionRecord
from engine.record_store import RecordStore

logger = logging.getLogger(__name__)


def _parse_timestamp(raw: Optional[str]) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    # The server reports naive UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _record_from_server(data: Dict[str, Any]) -> WalletTransactionRecord:
    return WalletTransactionRecord(
        id=str(data["id"]),
        amount=Decimal(str(data.get("amount", 0))),
        timestamp=_parse_timestamp(data.get("timestamp")),
        type=TransactionType(data.get("type") or TransactionType.REWARD.value),
        status=TransactionStatus(data.get("status") or TransactionStatus.PENDING.value),
        from_address=data.get("fromAddress"),
        to_address=data.get("toAddress"),
        description=data.get("description"),
    )


class WalletMirror:
    def __init__(self, client: AriaApiClient, wallet_address: Optional[str] = None) -> None:
        self.client = client
        self.wallet_address = wallet_address
        self._records: Dict[str, WalletTransactionRecord] = {}
        self._lock = threading.Lock()

    def _require_wallet(self) -> str:
        if not self.wallet_address:
            raise WalletNotConfigured("Create or import a wallet before requesting rewards.")
        return self.wallet_address

    def request_reward(self) -> Optional[WalletTransactionRecord]:
        """
        Ask the server to settle unsettled rewards to this device's wallet.

        Returns the new PENDING record, or None when the server had nothing
        to transfer.
        """
        address = self._require_wallet()
        try:
            body = self.client.request_reward(address)
        except ApiError as exc:
            if exc.code == "WALLET_NOT_CONFIGURED":
                raise WalletNotConfigured(exc.message) from exc
            raise

        info = body.get("transactionInfo")
        if not body.get("success") or not info:
            logger.info("Reward request not settled: %s", body.get("message"))
            return None

        record = WalletTransactionRecord(
            id=str(info["txId"]),
            amount=Decimal(str(info.get("amount", 0))),
            timestamp=_parse_timestamp(info.get("timestamp")),
            type=TransactionType.REWARD,
            status=TransactionStatus.PENDING,
            from_address=info.get("fromAddress"),
            to_address=address,
        )
        with self._lock:
            # A replayed response for a known transaction changes nothing
            self._records.setdefault(record.id, record)
            return self._records[record.id]

    def _merge(self, incoming: WalletTransactionRecord) -> None:
        existing = self._records.get(incoming.id)
        if existing is None:
            self._records[incoming.id] = incoming
            return
        if existing.status.is_terminal or incoming.status == existing.status:
            return
        existing.status = incoming.status
        if existing.description is None:
            existing.description = incoming.description

    def refresh(self, address: Optional[str] = None) -> Decimal:
        """Pull the server's view of the wallet and merge it. Returns the balance."""
        address = address or self._require_wallet()
        body = self.client.get_wallet(address)
        incoming = [_record_from_server(t) for t in body.get("transactions") or []]
        with self._lock:
            for record in incoming:
                self._merge(record)
        return Decimal(str(body.get("balance", 0)))

    def get_transaction_history(self) -> List[WalletTransactionRecord]:
        """Mirrored records, newest first."""
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.timestamp, reverse=True)


class BalanceResolver:
    """Reward total for display: the server's figure when reachable, else the local sum."""

    def __init__(self, client: AriaApiClient, store: RecordStore) -> None:
        self.client = client
        self.store = store

    def total_rewards(self) -> RewardTotal:
        try:
            stats = self.client.get_user_stats()
            return RewardTotal(Decimal(str(stats["totalRewards"])), "remote")
        except (TransientNetworkError, ApiError, KeyError) as exc:
            logger.warning("Remote reward total unavailable, using local sum: %s", exc)
            return RewardTotal(self.store.credited_total(), "local")
