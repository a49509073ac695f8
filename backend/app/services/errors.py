from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ServiceError(Exception):
    """Consistent service-layer exception with HTTP-friendly metadata."""

    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    def __str__(self) -> str:  # pragma: no cover - convenience for logging
        return f"{self.status_code} {self.code}: {self.message} | {self.details}"


class WalletNotConfigured(ServiceError):
    """The user has no settlement destination; they must supply a wallet address."""

    def __init__(self, user_id: int) -> None:
        super().__init__(
            400,
            "WALLET_NOT_CONFIGURED",
            "No wallet address is configured for this user.",
            {"user_id": user_id},
        )


class TransientNetworkError(Exception):
    """A call to an external service failed in a way that is safe to retry."""


class PolicyError(Exception):
    """Reward amount could not be computed; the item stays uncredited."""


@dataclass
class DuplicateCreditAttempt(Exception):
    """Raised internally when a credit already exists for (user_id, item_id).

    Never surfaced to callers: the ledger resolves it by returning ``existing``.
    """

    user_id: int
    item_id: str
    existing: Optional[Any] = field(default=None, repr=False)


class ChainSubmissionError(Exception):
    """The ledger service refused or could not accept a transfer."""


@dataclass
class ChainConfirmationTimeout(Exception):
    """A submitted transfer has not reached finality within the configured window."""

    tx_ref: str
    waited_seconds: float

    def __str__(self) -> str:
        return f"transaction {self.tx_ref} unconfirmed after {self.waited_seconds:.0f}s"


@dataclass
class ExhaustedRetries(Exception):
    """A settlement batch used all of its submission attempts."""

    batch_id: int
    attempts: int
    last_error: Optional[str] = None

    def __str__(self) -> str:
        return f"batch {self.batch_id} failed after {self.attempts} attempts: {self.last_error}"
