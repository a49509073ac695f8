"""
Settlement Dispatcher - turns unsettled credits into on-chain transfers.

Batch lifecycle:

    Pending --submit--> Submitted --confirm(confirmed)--> Confirmed
    Submitted --confirm(failed, or not found past the confirmation window)--> Pending (retry)
    Pending --rejected on every attempt--> Failed (credits released to the pool)

A credit belongs to at most one open batch: claiming is a conditional UPDATE
(``batch_id IS NULL``) executed under a per-user lock, so two dispatch cycles
for the same user can never claim overlapping credits. Confirmation is never
awaited; the transaction reference is stored at submission and polled by a
later cycle or by reconciliation.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.reward_credit import RewardCredit
from app.models.settlement_batch import OPEN_STATES, SettlementBatch, SettlementState
from app.models.user_account import UserAccount
from app.models.wallet_transaction import (
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
)
from app.services.errors import (
    ChainConfirmationTimeout,
    ChainSubmissionError,
    ExhaustedRetries,
    TransientNetworkError,
    WalletNotConfigured,
)
from app.services.ledger_client import ChainStatus, LedgerClient

logger = logging.getLogger(__name__)


def utc_now_naive() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass
class DispatchReport:
    user_id: int
    claimed_batch_id: Optional[int] = None
    submitted: List[int] = field(default_factory=list)
    confirmed: List[int] = field(default_factory=list)
    awaiting: List[int] = field(default_factory=list)
    retrying: List[int] = field(default_factory=list)
    failed: List[ExhaustedRetries] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "claimed_batch_id": self.claimed_batch_id,
            "submitted": self.submitted,
            "confirmed": self.confirmed,
            "awaiting": self.awaiting,
            "retrying": self.retrying,
            "failed": [{"batch_id": f.batch_id, "attempts": f.attempts, "error": f.last_error} for f in self.failed],
        }


class SettlementDispatcher:
    # Dispatch work for one user is serialized inside this process (re-entrant,
    # since a cycle claims and submits under the same lock); the conditional
    # UPDATEs keep claims disjoint across processes.
    _user_locks: Dict[int, "threading.RLock"] = {}
    _user_locks_guard = threading.Lock()

    def __init__(
        self,
        db: Session,
        ledger: LedgerClient,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now_naive,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.settings = settings
        self.clock = clock

    @classmethod
    def _user_lock(cls, user_id: int) -> "threading.RLock":
        with cls._user_locks_guard:
            lock = cls._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                cls._user_locks[user_id] = lock
            return lock

    def _get_user(self, user_id: int) -> UserAccount:
        user = self.db.get(UserAccount, user_id)
        if user is None:
            raise ValueError(f"Unknown user {user_id}")
        return user

    def _require_wallet(self, user_id: int) -> str:
        address = self._get_user(user_id).wallet_address
        if not address:
            raise WalletNotConfigured(user_id)
        return address

    def open_batches(self, user_id: int) -> List[SettlementBatch]:
        return (
            self.db.query(SettlementBatch)
            .filter(SettlementBatch.user_id == user_id, SettlementBatch.state.in_(OPEN_STATES))
            .order_by(SettlementBatch.id.asc())
            .all()
        )

    def unsettled_amount(self, user_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(RewardCredit.amount), 0))
            .filter(RewardCredit.user_id == user_id, RewardCredit.batch_id.is_(None))
            .scalar()
        )
        return Decimal(str(total or 0))

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim(self, user_id: int) -> Optional[SettlementBatch]:
        """Move every unclaimed credit of the user into one new Pending batch.

        Returns None (and writes nothing) when there is nothing to claim.
        """
        with self._user_lock(user_id):
            batch = SettlementBatch(
                user_id=user_id,
                total_amount=Decimal("0"),
                state=SettlementState.Pending,
                attempts=0,
                claimed_at=self.clock(),
            )
            self.db.add(batch)
            self.db.flush()

            claimed = (
                self.db.query(RewardCredit)
                .filter(RewardCredit.user_id == user_id, RewardCredit.batch_id.is_(None))
                .update({RewardCredit.batch_id: batch.id}, synchronize_session=False)
            )
            if claimed == 0:
                self.db.rollback()
                return None

            total = (
                self.db.query(func.sum(RewardCredit.amount))
                .filter(RewardCredit.batch_id == batch.id)
                .scalar()
            )
            batch.total_amount = Decimal(str(total))
            self.db.commit()
            self.db.refresh(batch)

        logger.info("Claimed %s credits (%s) into batch %s for user %s", claimed, batch.total_amount, batch.id, user_id)
        return batch

    def release_stale_claims(self, user_id: int) -> List[int]:
        """Return credits of never-submitted batches left behind by a crash."""
        cutoff = self.clock() - timedelta(seconds=self.settings.claim_ttl_seconds)
        released: List[int] = []
        with self._user_lock(user_id):
            stale = (
                self.db.query(SettlementBatch)
                .filter(
                    SettlementBatch.user_id == user_id,
                    SettlementBatch.state == SettlementState.Pending,
                    SettlementBatch.attempts == 0,
                    SettlementBatch.claimed_at <= cutoff,
                )
                .all()
            )
            for batch in stale:
                self._release_credits(batch)
                released.append(batch.id)
                self.db.delete(batch)
            if released:
                self.db.commit()
        for batch_id in released:
            logger.warning("Released stale claim of batch %s for user %s", batch_id, user_id)
        return released

    def _release_credits(self, batch: SettlementBatch) -> int:
        return (
            self.db.query(RewardCredit)
            .filter(RewardCredit.batch_id == batch.id)
            .update({RewardCredit.batch_id: None}, synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Submit / confirm / fail
    # ------------------------------------------------------------------

    def submit(self, batch: SettlementBatch) -> SettlementBatch:
        """Hand a Pending batch to the ledger service.

        Only a definitive rejection counts towards failing the batch. When the
        outcome is unknown (timeout, lost connection) the transfer may exist,
        so the batch stays Pending and the next attempt reuses its reference.
        """
        if batch.state != SettlementState.Pending:
            raise ValueError(f"batch {batch.id} is {batch.state.value}, expected pending")
        address = self._require_wallet(batch.user_id)

        with self._user_lock(batch.user_id):
            bumped = (
                self.db.query(SettlementBatch)
                .filter(SettlementBatch.id == batch.id, SettlementBatch.state == SettlementState.Pending)
                .update({SettlementBatch.attempts: SettlementBatch.attempts + 1}, synchronize_session=False)
            )
            self.db.commit()
            self.db.refresh(batch)
            if not bumped:
                return batch

            try:
                tx_ref = self.ledger.submit_transfer(address, Decimal(batch.total_amount), batch.reference)
            except ChainSubmissionError as exc:
                batch.last_error = str(exc)
                logger.warning(
                    "Submission of batch %s rejected (attempt %s/%s): %s",
                    batch.id, batch.attempts, self.settings.max_attempts, exc,
                )
                if batch.attempts >= self.settings.max_attempts:
                    return self._fail_unless_live(batch, address)
                self.db.commit()
                return batch
            except TransientNetworkError as exc:
                batch.last_error = str(exc)
                logger.warning("Outcome of submitting batch %s unknown (attempt %s): %s", batch.id, batch.attempts, exc)
                return self._adopt_live_transfer(batch, address)

            return self._mark_submitted(batch, tx_ref, address)

    def _lookup_live_transfer(self, batch: SettlementBatch) -> tuple[bool, Optional[str]]:
        """(answered, tx_ref) for the ledger's transfer under the batch reference."""
        try:
            return True, self.ledger.find_transfer(batch.reference)
        except TransientNetworkError as exc:
            logger.warning("Could not look up %s: %s", batch.reference, exc)
            return False, None

    def _adopt_live_transfer(self, batch: SettlementBatch, address: str) -> SettlementBatch:
        _, tx_ref = self._lookup_live_transfer(batch)
        if tx_ref:
            logger.info("Batch %s adopts transfer %s found under %s", batch.id, tx_ref, batch.reference)
            return self._mark_submitted(batch, tx_ref, address)
        self.db.commit()
        return batch

    def _fail_unless_live(self, batch: SettlementBatch, address: str) -> SettlementBatch:
        """Fail an exhausted batch, unless the ledger holds a live transfer for it."""
        answered, tx_ref = self._lookup_live_transfer(batch)
        if tx_ref:
            logger.info("Batch %s adopts transfer %s found under %s", batch.id, tx_ref, batch.reference)
            return self._mark_submitted(batch, tx_ref, address)
        if not answered:
            self.db.commit()
            return batch
        return self.fail(batch)

    def _mark_submitted(self, batch: SettlementBatch, tx_ref: str, address: str) -> SettlementBatch:
        record = self.db.get(WalletTransaction, tx_ref)
        if record is not None and record.status != WalletTransactionStatus.Pending:
            # A fresh or resubmitted transfer only ever matches a pending record
            batch.last_error = f"ledger returned {tx_ref}, already recorded as {record.status.value}"
            self.db.commit()
            logger.error("Batch %s: %s; leaving it pending", batch.id, batch.last_error)
            return batch

        now = self.clock()
        batch.state = SettlementState.Submitted
        batch.tx_ref = tx_ref
        batch.submitted_at = now
        batch.last_error = None

        if record is None:
            self.db.add(
                WalletTransaction(
                    id=tx_ref,
                    user_id=batch.user_id,
                    batch_id=batch.id,
                    amount=batch.total_amount,
                    timestamp=now,
                    type=WalletTransactionType.Reward,
                    status=WalletTransactionStatus.Pending,
                    from_address=self.ledger.treasury_address,
                    to_address=address,
                    description=self.settings.reward_description,
                )
            )
        self.db.commit()
        logger.info("Submitted batch %s (%s) to %s as %s", batch.id, batch.total_amount, address, tx_ref)
        return batch

    def confirm(self, batch: SettlementBatch) -> SettlementBatch:
        if batch.state != SettlementState.Submitted or not batch.tx_ref:
            return batch
        try:
            status = self.ledger.get_transfer_status(batch.tx_ref)
        except TransientNetworkError as exc:
            logger.warning("Could not query status of %s for batch %s: %s", batch.tx_ref, batch.id, exc)
            return batch

        record = self.db.get(WalletTransaction, batch.tx_ref)
        now = self.clock()
        waited = (now - batch.submitted_at).total_seconds() if batch.submitted_at else 0.0

        if status == ChainStatus.Confirmed:
            batch.state = SettlementState.Confirmed
            batch.settled_at = now
            if record is not None:
                record.transition(WalletTransactionStatus.Completed)
            self.db.commit()
            logger.info("Batch %s confirmed on chain (%s)", batch.id, batch.tx_ref)
            return batch

        if status == ChainStatus.NotFound and waited <= self.settings.confirmation_timeout_seconds:
            # Freshly submitted transfers may not be visible yet
            logger.debug("Transaction %s of batch %s not visible yet", batch.tx_ref, batch.id)
            return batch

        if status in (ChainStatus.Failed, ChainStatus.NotFound):
            if status == ChainStatus.Failed and record is not None:
                record.transition(WalletTransactionStatus.Failed)
            batch.last_error = f"transaction {batch.tx_ref} {status.value}"
            batch.tx_ref = None
            batch.submitted_at = None
            batch.state = SettlementState.Pending
            logger.warning("Batch %s: %s", batch.id, batch.last_error)
            if batch.attempts >= self.settings.max_attempts:
                return self._fail_unless_live(batch, self._require_wallet(batch.user_id))
            self.db.commit()
            return batch

        if waited > self.settings.confirmation_timeout_seconds:
            # Not assumed failed; reconciliation keeps polling this reference
            logger.warning("Batch %s still unconfirmed: %s", batch.id, ChainConfirmationTimeout(batch.tx_ref, waited))
        return batch

    def fail(self, batch: SettlementBatch) -> SettlementBatch:
        """Terminal failure: record it and hand the credits back to the pool."""
        failure = ExhaustedRetries(batch.id, batch.attempts, batch.last_error)
        batch.state = SettlementState.Failed
        batch.settled_at = self.clock()
        batch.last_error = str(failure)
        released = self._release_credits(batch)

        records = self.db.query(WalletTransaction).filter(WalletTransaction.batch_id == batch.id).all()
        for record in records:
            record.transition(WalletTransactionStatus.Failed)
        if not records:
            user = self._get_user(batch.user_id)
            self.db.add(
                WalletTransaction(
                    id=batch.reference,
                    user_id=batch.user_id,
                    batch_id=batch.id,
                    amount=batch.total_amount,
                    timestamp=batch.settled_at,
                    type=WalletTransactionType.Reward,
                    status=WalletTransactionStatus.Failed,
                    from_address=self.ledger.treasury_address,
                    to_address=user.wallet_address,
                    description=self.settings.reward_description,
                )
            )
        self.db.commit()
        logger.error("%s; released %s credits for re-dispatch", failure, released)
        return batch

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def run_cycle(self, user_id: int) -> DispatchReport:
        """Advance every open batch of the user, then settle newly accrued credits.

        Credits released by a batch that failed during this cycle are left in
        the pool until the next cycle. Cycles for one user never overlap
        inside this process.
        """
        with self._user_lock(user_id):
            self._require_wallet(user_id)
            report = DispatchReport(user_id=user_id)

            for batch in self.open_batches(user_id):
                before = batch.state
                if before == SettlementState.Submitted:
                    self.confirm(batch)
                else:
                    self.submit(batch)
                self._record_outcome(report, batch, before)

            if not report.failed:
                batch = self.claim(user_id)
                if batch is not None:
                    report.claimed_batch_id = batch.id
                    self.submit(batch)
                    self._record_outcome(report, batch, SettlementState.Pending)
            return report

    def _record_outcome(self, report: DispatchReport, batch: SettlementBatch, before: SettlementState) -> None:
        if batch.state == SettlementState.Confirmed:
            report.confirmed.append(batch.id)
        elif batch.state == SettlementState.Submitted:
            if before == SettlementState.Pending:
                report.submitted.append(batch.id)
            else:
                report.awaiting.append(batch.id)
        elif batch.state == SettlementState.Pending:
            report.retrying.append(batch.id)
        elif batch.state == SettlementState.Failed:
            report.failed.append(ExhaustedRetries(batch.id, batch.attempts, batch.last_error))

    def users_with_work(self) -> List[int]:
        unclaimed = self.db.query(RewardCredit.user_id).filter(RewardCredit.batch_id.is_(None))
        open_batches = self.db.query(SettlementBatch.user_id).filter(SettlementBatch.state.in_(OPEN_STATES))
        rows = (
            self.db.query(UserAccount.id)
            .filter(
                UserAccount.wallet_address.isnot(None),
                or_(UserAccount.id.in_(unclaimed), UserAccount.id.in_(open_batches)),
            )
            .order_by(UserAccount.id.asc())
            .all()
        )
        return [row[0] for row in rows]

    def run_all(self) -> List[DispatchReport]:
        """One cycle for every user with open work. A failing user never stops the rest."""
        reports: List[DispatchReport] = []
        for user_id in self.users_with_work():
            try:
                reports.append(self.run_cycle(user_id))
            except Exception:
                logger.exception("Dispatch cycle failed for user %s", user_id)
                self.db.rollback()
        return reports
