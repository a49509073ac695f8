import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from app.config import Settings
from app.services.ledger_client import LedgerClient
from app.services.settlement_dispatcher import SettlementDispatcher

log = logging.getLogger(__name__)


def run_dispatch_pass(session_factory: Callable[[], Session], ledger: LedgerClient, settings: Settings) -> int:
    """One scheduled pass over every user with unsettled credits or open batches."""
    with session_factory() as db:
        reports = SettlementDispatcher(db, ledger, settings).run_all()
    failed = sum(len(r.failed) for r in reports)
    log.info("[SETTLEMENT] Dispatch pass finished: %s users, %s failed batches", len(reports), failed)
    return len(reports)


def start_settlement_scheduler(
    session_factory: Callable[[], Session],
    ledger: LedgerClient,
    settings: Settings,
    scheduler: Optional[BackgroundScheduler] = None,
) -> BackgroundScheduler:
    scheduler = scheduler or BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_dispatch_pass,
        "interval",
        seconds=settings.settlement_interval_seconds,
        args=[session_factory, ledger, settings],
        id="settlement_dispatch",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if not scheduler.running:
        scheduler.start()
    log.info("[SETTLEMENT] Scheduler started, interval %ss", settings.settlement_interval_seconds)
    return scheduler
