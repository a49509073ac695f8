import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r; falling back to default %s", name, raw, default)
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(raw)
    except (InvalidOperation, ValueError):
        logger.warning("Invalid %s value %r; falling back to default %s", name, raw, default)
        return Decimal(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Runtime settings for the rewards backend, overridable from the environment."""

    reward_min_amount: Decimal = Decimal("0.1")
    reward_max_amount: Decimal = Decimal("5.0")
    max_submit_items: int = 100

    max_attempts: int = 3
    confirmation_timeout_seconds: int = 120
    claim_ttl_seconds: int = 300
    pending_record_timeout_seconds: int = 600

    ledger_service_url: Optional[str] = None
    ledger_timeout_seconds: int = 10
    treasury_address: str = "AriaTreasury1111111111111111111111111111111"

    scheduler_enabled: bool = False
    settlement_interval_seconds: int = 3600

    reward_description: str = field(default="Data collection reward")


def load_settings() -> Settings:
    settings = Settings(
        reward_min_amount=_env_decimal("REWARD_MIN_AMOUNT", "0.1"),
        reward_max_amount=_env_decimal("REWARD_MAX_AMOUNT", "5.0"),
        max_submit_items=_env_int("MAX_SUBMIT_ITEMS", 100),
        max_attempts=_env_int("SETTLEMENT_MAX_ATTEMPTS", 3),
        confirmation_timeout_seconds=_env_int("SETTLEMENT_CONFIRMATION_TIMEOUT", 120),
        claim_ttl_seconds=_env_int("SETTLEMENT_CLAIM_TTL", 300),
        pending_record_timeout_seconds=_env_int("WALLET_PENDING_TIMEOUT", 600),
        ledger_service_url=os.getenv("LEDGER_SERVICE_URL") or None,
        ledger_timeout_seconds=_env_int("LEDGER_TIMEOUT", 10),
        treasury_address=os.getenv("TREASURY_ADDRESS", Settings.treasury_address),
        scheduler_enabled=_env_bool("SETTLEMENT_SCHEDULER_ENABLED", False),
        settlement_interval_seconds=_env_int("SETTLEMENT_INTERVAL", 3600),
    )
    # Credits must be strictly positive
    if settings.reward_min_amount <= 0:
        logger.warning("REWARD_MIN_AMOUNT must be > 0, got %s; using defaults", settings.reward_min_amount)
        settings.reward_min_amount = Decimal("0.1")
        settings.reward_max_amount = max(settings.reward_max_amount, Decimal("0.1"))
    if settings.reward_min_amount > settings.reward_max_amount:
        logger.warning(
            "REWARD_MIN_AMOUNT %s exceeds REWARD_MAX_AMOUNT %s; using defaults",
            settings.reward_min_amount,
            settings.reward_max_amount,
        )
        settings.reward_min_amount = Decimal("0.1")
        settings.reward_max_amount = Decimal("5.0")
    if settings.max_attempts < 1:
        logger.warning("SETTLEMENT_MAX_ATTEMPTS must be >= 1; using 1")
        settings.max_attempts = 1
    return settings
