from decimal import Decimal
from typing import Callable, Dict

# (item_type, content) -> amount. Any callable with this shape can be plugged
# into the RewardLedger; raising or returning a non-finite value is a PolicyError.
RewardPolicy = Callable[[str, str], Decimal]


DEFAULT_TYPE_WEIGHTS: Dict[str, Decimal] = {
    "location": Decimal("0.2"),
    "calendar": Decimal("0.3"),
    "sms": Decimal("0.4"),
    "contacts": Decimal("0.5"),
    "other": Decimal("0.1"),
}


class TypeWeightedRewardPolicy:
    """Base reward per item type plus a small bonus for larger payloads.

    Every full kilobyte of content adds ``bonus_per_kb`` up to ``max_bonus``.
    Unknown types earn the ``other`` weight.
    """

    def __init__(
        self,
        weights: Dict[str, Decimal] | None = None,
        bonus_per_kb: Decimal = Decimal("0.1"),
        max_bonus: Decimal = Decimal("1.0"),
    ) -> None:
        self.weights = dict(weights or DEFAULT_TYPE_WEIGHTS)
        self.bonus_per_kb = bonus_per_kb
        self.max_bonus = max_bonus

    def __call__(self, item_type: str, content: str) -> Decimal:
        base = self.weights.get(item_type, self.weights["other"])
        size_kb = len(content.encode("utf-8")) // 1024
        bonus = min(self.bonus_per_kb * size_kb, self.max_bonus)
        return base + bonus
