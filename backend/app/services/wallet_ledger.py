"""
Wallet Ledger - durable record of transfer attempts and the reconciliation pass.

Reconciliation is the healing path after uncertainty (a crash mid-settlement,
a cancelled request, a confirmation that never arrived). It re-derives state
from the external ledger instead of trusting what was last written locally.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.reward_credit import RewardCredit
from app.models.settlement_batch import OPEN_STATES, SettlementBatch, SettlementState
from app.models.user_account import UserAccount
from app.models.wallet_transaction import WalletTransaction, WalletTransactionStatus
from app.schemas.sync_schemas import ReconcileSummary
from app.services.errors import ServiceError, TransientNetworkError
from app.services.ledger_client import ChainStatus, LedgerClient
from app.services.settlement_dispatcher import SettlementDispatcher

logger = logging.getLogger(__name__)


class WalletLedgerService:
    def __init__(
        self,
        db: Session,
        ledger: LedgerClient,
        settings: Settings,
        dispatcher: SettlementDispatcher | None = None,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.settings = settings
        self.dispatcher = dispatcher or SettlementDispatcher(db, ledger, settings)

    # ------------------------------------------------------------------
    # Read path (never mutates)
    # ------------------------------------------------------------------

    def get_transaction_history(self, user_id: int) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(WalletTransaction)
            .filter(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.timestamp.desc(), WalletTransaction.id.asc())
            .all()
        )
        return [row.to_dict() for row in rows]

    def completed_total(self, user_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(WalletTransaction.amount), 0))
            .filter(
                WalletTransaction.user_id == user_id,
                WalletTransaction.status == WalletTransactionStatus.Completed,
            )
            .scalar()
        )
        return Decimal(str(total or 0))

    def resolve_balance(self, user: UserAccount) -> tuple[Decimal, str]:
        """Balance from the chain when reachable, else the locally ledgered sum."""
        if user.wallet_address:
            try:
                return self.ledger.get_balance(user.wallet_address), "chain"
            except TransientNetworkError as exc:
                logger.warning("Chain balance unavailable for user %s, using ledger sum: %s", user.id, exc)
        return self.completed_total(user.id), "ledger"

    def get_wallet(self, wallet_address: str, user_id: int | None = None) -> Dict[str, Any]:
        user = self.db.query(UserAccount).filter(UserAccount.wallet_address == wallet_address).first()
        # Another user's wallet is reported exactly like an unknown one
        if user is None or (user_id is not None and user.id != user_id):
            raise ServiceError(404, "NOT_FOUND", "Wallet not found.", {"walletAddress": wallet_address})
        balance, source = self.resolve_balance(user)
        return {
            "balance": float(balance),
            "balanceSource": source,
            "transactions": self.get_transaction_history(user.id),
        }

    def settlement_totals(self, user_id: int) -> Dict[str, Decimal]:
        rows = (
            self.db.query(SettlementBatch.state, func.coalesce(func.sum(RewardCredit.amount), 0))
            .join(RewardCredit, RewardCredit.batch_id == SettlementBatch.id)
            .filter(RewardCredit.user_id == user_id)
            .group_by(SettlementBatch.state)
            .all()
        )
        by_state = {state: Decimal(str(amount)) for state, amount in rows}
        return {
            "settled": by_state.get(SettlementState.Confirmed, Decimal("0")),
            "in_flight": sum((by_state.get(s, Decimal("0")) for s in OPEN_STATES), Decimal("0")),
            "unsettled": self.dispatcher.unsettled_amount(user_id),
        }

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _heal_record(self, record: WalletTransaction) -> None:
        batch = self.db.get(SettlementBatch, record.batch_id) if record.batch_id else None
        if batch is not None and batch.state == SettlementState.Submitted and batch.tx_ref == record.id:
            self.dispatcher.confirm(batch)
            return

        # The owning batch has moved on; the chain alone decides this record
        status = self.ledger.get_transfer_status(record.id)
        if status == ChainStatus.Confirmed:
            record.transition(WalletTransactionStatus.Completed)
        elif status == ChainStatus.Failed:
            record.transition(WalletTransactionStatus.Failed)
        elif status == ChainStatus.NotFound and (batch is None or batch.state not in OPEN_STATES):
            # An open batch may still resubmit under the same reference and get this id back
            record.transition(WalletTransactionStatus.Failed)
        self.db.commit()

    def reconcile(self, user_id: int) -> ReconcileSummary:
        user = self.db.get(UserAccount, user_id)
        if user is None:
            raise ServiceError(404, "NOT_FOUND", "Profile not found.", {})

        released = self.dispatcher.release_stale_claims(user_id)

        cutoff = self.dispatcher.clock() - timedelta(seconds=self.settings.pending_record_timeout_seconds)
        stale = (
            self.db.query(WalletTransaction)
            .filter(
                WalletTransaction.user_id == user_id,
                WalletTransaction.status == WalletTransactionStatus.Pending,
                WalletTransaction.timestamp <= cutoff,
            )
            .order_by(WalletTransaction.timestamp.asc())
            .all()
        )
        healed: List[str] = []
        for record in stale:
            try:
                self._heal_record(record)
            except TransientNetworkError as exc:
                logger.warning("Could not re-query %s during reconciliation: %s", record.id, exc)
                continue
            self.db.refresh(record)
            if record.status != WalletTransactionStatus.Pending:
                healed.append(record.id)
                logger.info("Reconciled transaction %s to %s", record.id, record.status.value)

        balance, source = self.resolve_balance(user)
        totals = self.settlement_totals(user_id)
        total_credited = (
            self.db.query(func.coalesce(func.sum(RewardCredit.amount), 0))
            .filter(RewardCredit.user_id == user_id)
            .scalar()
        )
        return ReconcileSummary(
            user_id=user_id,
            balance=balance,
            balance_source=source,
            total_credited=Decimal(str(total_credited or 0)),
            settled_amount=totals["settled"],
            in_flight_amount=totals["in_flight"],
            unsettled_amount=totals["unsettled"],
            healed_transactions=healed,
            released_batches=released,
        )
