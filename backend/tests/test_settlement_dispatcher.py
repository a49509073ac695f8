import threading
import time
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db.db import Base
from app.models.reward_credit import RewardCredit
from app.models.settlement_batch import SettlementBatch, SettlementState
from app.models.user_account import UserAccount
from app.models.wallet_transaction import WalletTransaction, WalletTransactionStatus
from app.services.errors import TransientNetworkError, WalletNotConfigured
from app.services.ledger_client import ChainStatus, InMemoryLedger
from app.services.reward_ledger import RewardLedger
from app.services.settlement_dispatcher import SettlementDispatcher

from factories import WALLET, amount, make_item


def _credit(db_session, settings, user_id, *items):
    RewardLedger(db_session, settings).credit_many(user_id, list(items))


def _assert_no_stranded_credit(db_session):
    for credit in db_session.query(RewardCredit).all():
        if credit.batch_id is None:
            continue
        batch = db_session.get(SettlementBatch, credit.batch_id)
        assert batch is not None
        assert batch.state != SettlementState.Failed


class LaggingLedger(InMemoryLedger):
    """Reports every transaction as not found the first time it is queried."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.queried = set()

    def get_transfer_status(self, tx_ref):
        if tx_ref not in self.queried:
            self.queried.add(tx_ref)
            return ChainStatus.NotFound
        return super().get_transfer_status(tx_ref)


class SlowLedger(InMemoryLedger):
    def submit_transfer(self, to_address, amount, reference):
        time.sleep(0.2)
        return super().submit_transfer(to_address, amount, reference)


@pytest.fixture()
def dispatcher(db_session, ledger, settings, clock):
    return SettlementDispatcher(db_session, ledger, settings, clock=clock)


def test_claim_moves_all_unsettled_credits_into_one_batch(db_session, settings, user, dispatcher):
    _credit(db_session, settings, user.id, make_item("a"), make_item("b", "sms"))

    batch = dispatcher.claim(user.id)

    assert batch.state == SettlementState.Pending
    assert batch.total_amount == amount("0.6")
    assert dispatcher.unsettled_amount(user.id) == 0
    assert dispatcher.claim(user.id) is None
    assert db_session.query(SettlementBatch).count() == 1


def test_claim_with_nothing_unsettled_writes_nothing(db_session, user, dispatcher):
    assert dispatcher.claim(user.id) is None
    assert db_session.query(SettlementBatch).count() == 0


def test_cycle_submits_then_confirms(db_session, settings, user, ledger, dispatcher):
    _credit(db_session, settings, user.id, make_item("a"))

    first = dispatcher.run_cycle(user.id)
    batch = db_session.get(SettlementBatch, first.claimed_batch_id)

    assert first.submitted == [batch.id]
    assert batch.state == SettlementState.Submitted
    record = db_session.get(WalletTransaction, batch.tx_ref)
    assert record.status == WalletTransactionStatus.Pending
    assert record.from_address == "AriaTreasury"
    assert record.to_address == WALLET
    assert ledger.submissions[0]["reference"] == f"settlement-{batch.id}"

    ledger.finalize(batch.tx_ref)
    second = dispatcher.run_cycle(user.id)

    assert second.confirmed == [batch.id]
    assert batch.state == SettlementState.Confirmed
    assert record.status == WalletTransactionStatus.Completed
    assert ledger.confirmed_total(WALLET) == amount("0.2")


def test_three_failed_submissions_fail_batch_and_resettle_same_amount(db_session, settings, user, ledger, dispatcher):
    _credit(
        db_session, settings, user.id,
        make_item("a", "contacts"), make_item("b", "contacts"), make_item("c", "contacts"),
    )
    ledger.fail_next_submissions(3)

    first = dispatcher.run_cycle(user.id)
    batch_id = first.claimed_batch_id
    assert first.retrying == [batch_id]
    assert dispatcher.run_cycle(user.id).retrying == [batch_id]

    third = dispatcher.run_cycle(user.id)
    assert [f.batch_id for f in third.failed] == [batch_id]
    assert third.claimed_batch_id is None

    failed = db_session.get(SettlementBatch, batch_id)
    assert failed.state == SettlementState.Failed
    assert failed.attempts == 3
    assert dispatcher.unsettled_amount(user.id) == amount("1.5")
    record = db_session.get(WalletTransaction, f"settlement-{batch_id}")
    assert record.status == WalletTransactionStatus.Failed
    _assert_no_stranded_credit(db_session)

    fourth = dispatcher.run_cycle(user.id)
    retry_batch = db_session.get(SettlementBatch, fourth.claimed_batch_id)
    assert fourth.submitted == [retry_batch.id]
    assert retry_batch.total_amount == amount("1.5")

    ledger.finalize_all()
    dispatcher.run_cycle(user.id)
    assert retry_batch.state == SettlementState.Confirmed
    assert ledger.confirmed_total(WALLET) == amount("1.5")
    _assert_no_stranded_credit(db_session)


def test_chain_failure_after_submission_returns_batch_to_pending(db_session, settings, user, ledger, dispatcher):
    _credit(db_session, settings, user.id, make_item("a"))
    report = dispatcher.run_cycle(user.id)
    batch = db_session.get(SettlementBatch, report.claimed_batch_id)
    first_tx = batch.tx_ref

    ledger.finalize(first_tx, success=False)
    retry = dispatcher.run_cycle(user.id)

    assert retry.retrying == [batch.id]
    assert batch.state == SettlementState.Pending
    assert batch.tx_ref is None
    assert db_session.get(WalletTransaction, first_tx).status == WalletTransactionStatus.Failed

    resubmit = dispatcher.run_cycle(user.id)
    assert resubmit.submitted == [batch.id]
    assert batch.tx_ref != first_tx
    assert batch.attempts == 2
    # The failed record is terminal and keeps its status
    assert db_session.get(WalletTransaction, first_tx).status == WalletTransactionStatus.Failed


def test_dropped_transaction_is_retried_after_confirmation_window(
    db_session, settings, user, ledger, dispatcher, clock
):
    _credit(db_session, settings, user.id, make_item("a"))
    report = dispatcher.run_cycle(user.id)
    batch = db_session.get(SettlementBatch, report.claimed_batch_id)
    dropped = batch.tx_ref

    ledger.drop(dropped)
    assert dispatcher.run_cycle(user.id).awaiting == [batch.id]

    clock.advance(settings.confirmation_timeout_seconds + 1)
    dispatcher.run_cycle(user.id)

    assert batch.state == SettlementState.Pending
    assert "not_found" in batch.last_error
    # Not written off; only a definitive chain failure or exhausted batch does that
    assert db_session.get(WalletTransaction, dropped).status == WalletTransactionStatus.Pending


def test_lagging_status_does_not_fail_a_paid_transfer(db_session, settings, user, dispatcher):
    ledger = LaggingLedger(treasury_address="AriaTreasury")
    dispatcher.ledger = ledger
    _credit(db_session, settings, user.id, make_item("a"))
    batch = db_session.get(SettlementBatch, dispatcher.run_cycle(user.id).claimed_batch_id)

    assert dispatcher.run_cycle(user.id).awaiting == [batch.id]
    ledger.finalize_all()
    dispatcher.run_cycle(user.id)

    assert batch.state == SettlementState.Confirmed
    assert db_session.get(WalletTransaction, batch.tx_ref).status == WalletTransactionStatus.Completed


def test_resubmission_after_lag_reuses_pending_record(db_session, settings, user, dispatcher, clock):
    ledger = LaggingLedger(treasury_address="AriaTreasury")
    dispatcher.ledger = ledger
    _credit(db_session, settings, user.id, make_item("a"))
    batch = db_session.get(SettlementBatch, dispatcher.run_cycle(user.id).claimed_batch_id)
    first_tx = batch.tx_ref

    clock.advance(settings.confirmation_timeout_seconds + 1)
    dispatcher.run_cycle(user.id)
    assert batch.state == SettlementState.Pending

    resubmit = dispatcher.run_cycle(user.id)
    assert resubmit.submitted == [batch.id]
    assert batch.tx_ref == first_tx
    assert len(ledger.submissions) == 1

    ledger.finalize_all()
    dispatcher.run_cycle(user.id)

    assert batch.state == SettlementState.Confirmed
    assert db_session.get(WalletTransaction, first_tx).status == WalletTransactionStatus.Completed
    assert db_session.query(WalletTransaction).count() == 1


def test_lost_submission_response_is_adopted_by_reference(db_session, settings, user, ledger, dispatcher):
    _credit(db_session, settings, user.id, make_item("a"), make_item("b"), make_item("c"))
    ledger.lose_next_responses(3)

    reports = [dispatcher.run_cycle(user.id) for _ in range(4)]

    assert all(not r.failed for r in reports)
    assert len(ledger.submissions) == 1
    ledger.finalize_all()
    dispatcher.run_cycle(user.id)
    assert ledger.confirmed_total(WALLET) == amount("0.6")


def test_unknown_submission_outcome_never_fails_batch(db_session, settings, user, ledger, dispatcher):
    """Timeouts with the reference lookup also down: retried, never failed, paid once."""
    _credit(db_session, settings, user.id, make_item("a"), make_item("b"), make_item("c"))
    ledger.lose_next_responses(settings.max_attempts)

    with patch.object(ledger, "find_transfer", side_effect=TransientNetworkError("lookup timed out")):
        reports = [dispatcher.run_cycle(user.id) for _ in range(settings.max_attempts)]
    batch = db_session.get(SettlementBatch, reports[0].claimed_batch_id)

    assert all(not r.failed for r in reports)
    assert batch.state == SettlementState.Pending
    assert batch.attempts == settings.max_attempts
    assert dispatcher.unsettled_amount(user.id) == 0

    dispatcher.run_cycle(user.id)
    ledger.finalize_all()
    dispatcher.run_cycle(user.id)

    assert batch.state == SettlementState.Confirmed
    assert len(ledger.submissions) == 1
    assert ledger.confirmed_total(WALLET) == amount("0.6")
    _assert_no_stranded_credit(db_session)


def test_unconfirmed_transaction_is_not_assumed_failed(db_session, settings, user, dispatcher, clock):
    _credit(db_session, settings, user.id, make_item("a"))
    report = dispatcher.run_cycle(user.id)
    batch = db_session.get(SettlementBatch, report.claimed_batch_id)

    clock.advance(settings.confirmation_timeout_seconds + 60)
    later = dispatcher.run_cycle(user.id)

    assert later.awaiting == [batch.id]
    assert batch.state == SettlementState.Submitted


def test_ledger_outage_keeps_batch_pending(db_session, settings, user, ledger, dispatcher):
    _credit(db_session, settings, user.id, make_item("a"))
    ledger.offline = True

    reports = [dispatcher.run_cycle(user.id) for _ in range(settings.max_attempts + 1)]
    batch = db_session.get(SettlementBatch, reports[0].claimed_batch_id)

    assert all(r.retrying == [batch.id] for r in reports)
    assert batch.state == SettlementState.Pending
    assert "unreachable" in batch.last_error


def test_abandoned_claim_is_resubmitted_by_next_cycle(db_session, settings, user, dispatcher):
    _credit(db_session, settings, user.id, make_item("a"), make_item("b"))
    batch = dispatcher.claim(user.id)  # crash before submit

    report = dispatcher.run_cycle(user.id)

    assert report.submitted == [batch.id]
    assert report.claimed_batch_id is None
    _assert_no_stranded_credit(db_session)


def test_release_stale_claims_only_after_ttl(db_session, settings, user, dispatcher, clock):
    _credit(db_session, settings, user.id, make_item("a"))
    batch = dispatcher.claim(user.id)
    batch_id = batch.id

    assert dispatcher.release_stale_claims(user.id) == []

    clock.advance(settings.claim_ttl_seconds + 1)
    assert dispatcher.release_stale_claims(user.id) == [batch_id]
    assert db_session.get(SettlementBatch, batch_id) is None
    assert dispatcher.unsettled_amount(user.id) == amount("0.2")


def test_submitted_batches_are_never_released_as_stale(db_session, settings, user, dispatcher, clock):
    _credit(db_session, settings, user.id, make_item("a"))
    report = dispatcher.run_cycle(user.id)

    clock.advance(settings.claim_ttl_seconds * 10)

    assert dispatcher.release_stale_claims(user.id) == []
    assert db_session.get(SettlementBatch, report.claimed_batch_id).state == SettlementState.Submitted


def test_cycle_requires_wallet(db_session, settings, dispatcher):
    db_session.add(UserAccount(id=5, username="u_005"))
    db_session.commit()

    with pytest.raises(WalletNotConfigured):
        dispatcher.run_cycle(5)


def test_run_all_skips_users_without_work_or_wallet(db_session, settings, user, dispatcher):
    db_session.add(UserAccount(id=2, username="u_002"))
    db_session.add(UserAccount(id=3, username="u_003", wallet_address="OtherWallet"))
    db_session.commit()
    _credit(db_session, settings, user.id, make_item("a"))
    _credit(db_session, settings, 2, make_item("b"))

    reports = dispatcher.run_all()

    assert [r.user_id for r in reports] == [user.id]
    assert reports[0].submitted


def test_concurrent_claims_are_disjoint(tmp_path, settings, ledger):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with Session() as setup:
        setup.add(UserAccount(id=7, username="u_007", wallet_address=WALLET))
        setup.commit()
        _credit(setup, settings, 7, make_item("A"), make_item("B"), make_item("C"))

    barrier = threading.Barrier(2)
    results = []
    errors = []

    def claim():
        with Session() as db:
            try:
                barrier.wait()
                batch = SettlementDispatcher(db, ledger, settings).claim(7)
                results.append(batch.id if batch else None)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

    threads = [threading.Thread(target=claim) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    claimed = [r for r in results if r is not None]
    assert len(claimed) == 1
    assert results.count(None) == 1

    with Session() as check:
        item_ids = [c.item_id for c in check.query(RewardCredit).filter(RewardCredit.batch_id == claimed[0])]
        assert sorted(item_ids) == ["A", "B", "C"]
        assert check.query(SettlementBatch).count() == 1
    engine.dispose()


def test_concurrent_cycles_submit_a_pending_batch_once(tmp_path, settings):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'cycles.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    ledger = SlowLedger(treasury_address="AriaTreasury")

    with Session() as setup:
        setup.add(UserAccount(id=8, username="u_008", wallet_address=WALLET))
        setup.commit()
        _credit(setup, settings, 8, make_item("A"), make_item("B"))
        batch_id = SettlementDispatcher(setup, ledger, settings).claim(8).id

    barrier = threading.Barrier(2)
    errors = []

    def cycle():
        with Session() as db:
            try:
                barrier.wait()
                SettlementDispatcher(db, ledger, settings).run_cycle(8)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

    threads = [threading.Thread(target=cycle) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(ledger.submissions) == 1
    with Session() as check:
        batch = check.get(SettlementBatch, batch_id)
        assert batch.state == SettlementState.Submitted
        assert batch.attempts == 1
        assert check.query(WalletTransaction).count() == 1
    engine.dispose()


def test_transfer_id_of_a_closed_record_is_not_reused(db_session, settings, user, ledger, dispatcher, clock):
    db_session.add(
        WalletTransaction(
            id="tx-old",
            user_id=user.id,
            amount=amount("0.2"),
            timestamp=clock(),
            status=WalletTransactionStatus.Failed,
        )
    )
    db_session.commit()
    _credit(db_session, settings, user.id, make_item("a"))

    with patch.object(ledger, "submit_transfer", return_value="tx-old"):
        report = dispatcher.run_cycle(user.id)
    batch = db_session.get(SettlementBatch, report.claimed_batch_id)

    assert report.retrying == [batch.id]
    assert batch.state == SettlementState.Pending
    assert batch.tx_ref is None
    assert "tx-old" in batch.last_error
    assert db_session.get(WalletTransaction, "tx-old").status == WalletTransactionStatus.Failed
