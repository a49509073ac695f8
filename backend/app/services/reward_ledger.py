"""
Reward Ledger - the dedupe-and-credit authority.

A credit is issued at most once per (user_id, item_id), no matter how many
times a device resubmits the item. The unique constraint on reward_credits is
the only mutual-exclusion point: a concurrent insert that loses the race sees
an IntegrityError, rolls back and returns the winner's row.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.reward_credit import RewardCredit
from app.schemas.sync_schemas import SubmittedItem
from app.services.errors import DuplicateCreditAttempt, PolicyError
from app.services.reward_policy import RewardPolicy, TypeWeightedRewardPolicy

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.000001")


@dataclass
class CreditResult:
    """Outcome of crediting one submission."""

    credits: List[RewardCredit] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


class RewardLedger:
    def __init__(self, db: Session, settings: Settings, policy: Optional[RewardPolicy] = None) -> None:
        self.db = db
        self.settings = settings
        self.policy = policy or TypeWeightedRewardPolicy()

    def _find(self, user_id: int, item_id: str) -> Optional[RewardCredit]:
        return (
            self.db.query(RewardCredit)
            .filter(RewardCredit.user_id == user_id, RewardCredit.item_id == item_id)
            .first()
        )

    def _evaluate(self, item: SubmittedItem) -> Decimal:
        try:
            raw = self.policy(item.type, item.content_text())
            amount = Decimal(str(raw))
        except PolicyError:
            raise
        except Exception as exc:
            # The policy is external code; any failure leaves the item uncredited
            raise PolicyError(f"reward policy failed for item {item.id}: {exc}") from exc
        if not amount.is_finite():
            raise PolicyError(f"reward policy returned non-finite amount {raw!r} for item {item.id}")

        low, high = self.settings.reward_min_amount, self.settings.reward_max_amount
        clamped = min(max(amount, low), high)
        return clamped.quantize(AMOUNT_QUANTUM)

    def _insert(self, user_id: int, item: SubmittedItem, amount: Decimal) -> RewardCredit:
        credit = RewardCredit(
            user_id=user_id,
            item_id=item.id,
            item_type=item.type,
            amount=amount,
        )
        self.db.add(credit)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find(user_id, item.id)
            if existing is None:
                raise
            raise DuplicateCreditAttempt(user_id, item.id, existing)
        self.db.refresh(credit)
        return credit

    def credit(self, user_id: int, item: SubmittedItem) -> RewardCredit:
        """Issue the credit for ``item`` or return the one already issued.

        Raises:
            PolicyError: the amount could not be computed; nothing is written.
        """
        existing = self._find(user_id, item.id)
        if existing is not None:
            logger.debug("Item %s already credited for user %s", item.id, user_id)
            return existing

        amount = self._evaluate(item)
        try:
            credit = self._insert(user_id, item, amount)
        except DuplicateCreditAttempt as dup:
            logger.info("Concurrent credit for user %s item %s resolved to existing row", user_id, item.id)
            return dup.existing

        logger.info("Credited %s to user %s for item %s (%s)", credit.amount, user_id, item.id, item.type)
        return credit

    def credit_many(self, user_id: int, items: Iterable[Any]) -> CreditResult:
        """Credit a device submission item by item.

        ``items`` may hold raw JSON objects; each is validated on its own.
        Malformed items and items whose policy evaluation fails are left out
        of the result so the device keeps them unsynced and resends them later.
        """
        result = CreditResult()
        seen = set()
        for raw in items:
            try:
                item = SubmittedItem.model_validate(raw)
            except ValidationError as exc:
                item_id = raw.get("id") if isinstance(raw, dict) else None
                logger.warning("Leaving malformed item %r uncredited: %s", item_id, exc.errors(include_url=False))
                result.rejected.append("" if item_id is None else str(item_id))
                continue
            if item.id in seen:
                continue
            seen.add(item.id)
            try:
                result.credits.append(self.credit(user_id, item))
            except PolicyError as exc:
                logger.warning("Leaving item %s uncredited: %s", item.id, exc)
                result.rejected.append(item.id)
        return result

    def total_credited_for_user(self, user_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(RewardCredit.amount), 0))
            .filter(RewardCredit.user_id == user_id)
            .scalar()
        )
        return Decimal(str(total or 0))

    def count_for_user(self, user_id: int) -> int:
        return self.db.query(RewardCredit).filter(RewardCredit.user_id == user_id).count()
