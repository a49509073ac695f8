"""
Ledger Service Client - boundary to the external token-transfer service.

The settlement engine never talks to a chain node directly. It asks an
external ledger service to move tokens from the treasury and later asks for
the status of the resulting transaction. Two implementations are provided:

- HttpLedgerClient: JSON over HTTP via ``requests`` (production)
- InMemoryLedger: deterministic process-local ledger (development and tests)

Transfers carry a ``reference`` (the settlement batch reference). The ledger
service treats it as an idempotency key: resubmitting a reference whose
transfer is still pending or already confirmed returns the same transaction
id instead of paying twice.
"""

import logging
import threading
import uuid
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol

import requests

from app.services.errors import ChainSubmissionError, TransientNetworkError

logger = logging.getLogger(__name__)


class ChainStatus(str, Enum):
    Pending = "pending"
    Confirmed = "confirmed"
    Failed = "failed"
    NotFound = "not_found"


class LedgerClient(Protocol):
    treasury_address: str

    def submit_transfer(self, to_address: str, amount: Decimal, reference: str) -> str:
        ...

    def find_transfer(self, reference: str) -> Optional[str]:
        ...

    def get_transfer_status(self, tx_ref: str) -> ChainStatus:
        ...

    def get_balance(self, address: str) -> Decimal:
        ...


class HttpLedgerClient:
    """Ledger service reached over HTTP.

    Network faults (timeouts, refused connections, 5xx) become
    ``TransientNetworkError``; a 4xx on submission becomes
    ``ChainSubmissionError`` since resending the same request will not help.
    """

    def __init__(
        self,
        base_url: str,
        treasury_address: str,
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.treasury_address = treasury_address
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientNetworkError(f"{method} {path}: {exc}") from exc
        if response.status_code >= 500:
            raise TransientNetworkError(f"{method} {path}: ledger service returned {response.status_code}")
        return response

    def submit_transfer(self, to_address: str, amount: Decimal, reference: str) -> str:
        response = self._request(
            "POST",
            "/transfers",
            json={
                "from": self.treasury_address,
                "to": to_address,
                "amount": str(amount),
                "reference": reference,
            },
        )
        if response.status_code >= 400:
            raise ChainSubmissionError(
                f"transfer {reference} rejected ({response.status_code}): {response.text[:200]}"
            )
        tx_id = (response.json() or {}).get("txId")
        if not tx_id:
            raise ChainSubmissionError(f"transfer {reference} accepted without a transaction id")
        return str(tx_id)

    def find_transfer(self, reference: str) -> Optional[str]:
        """Transaction id of a live (not failed) transfer made under ``reference``, if any."""
        response = self._request("GET", "/transfers", params={"reference": reference})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransientNetworkError(f"lookup of {reference} returned {response.status_code}")
        body = response.json() or {}
        if str(body.get("status", "")).lower() == ChainStatus.Failed.value:
            return None
        tx_id = body.get("txId")
        return str(tx_id) if tx_id else None

    def get_transfer_status(self, tx_ref: str) -> ChainStatus:
        response = self._request("GET", f"/transfers/{tx_ref}")
        if response.status_code == 404:
            return ChainStatus.NotFound
        if response.status_code >= 400:
            raise TransientNetworkError(f"status lookup for {tx_ref} returned {response.status_code}")
        raw = str((response.json() or {}).get("status", "")).lower()
        try:
            return ChainStatus(raw)
        except ValueError:
            logger.warning("Unknown chain status %r for %s; treating as pending", raw, tx_ref)
            return ChainStatus.Pending

    def get_balance(self, address: str) -> Decimal:
        response = self._request("GET", f"/balances/{address}")
        if response.status_code >= 400:
            raise TransientNetworkError(f"balance lookup for {address} returned {response.status_code}")
        return Decimal(str((response.json() or {}).get("balance", "0")))


class InMemoryLedger:
    """Process-local ledger with scriptable failures.

    Transfers are accepted as ``pending`` and become ``confirmed`` when
    ``finalize`` is called, or immediately when ``auto_confirm`` is set.
    ``fail_next_submissions``, ``lose_next_responses`` and ``offline``
    inject the failure modes the dispatcher has to survive.
    """

    def __init__(self, treasury_address: str = "AriaTreasury", auto_confirm: bool = False) -> None:
        self.treasury_address = treasury_address
        self.auto_confirm = auto_confirm
        self.offline = False
        self._fail_next_submissions = 0
        self._lose_next_responses = 0
        self._lock = threading.Lock()
        self._transfers: Dict[str, Dict] = {}
        self._by_reference: Dict[str, str] = {}
        self._balances: Dict[str, Decimal] = {}
        self.submissions: List[Dict] = []

    def fail_next_submissions(self, count: int) -> None:
        with self._lock:
            self._fail_next_submissions = count

    def lose_next_responses(self, count: int) -> None:
        """Accept the next ``count`` transfers but time out before answering."""
        with self._lock:
            self._lose_next_responses = count

    def submit_transfer(self, to_address: str, amount: Decimal, reference: str) -> str:
        with self._lock:
            if self.offline:
                raise TransientNetworkError("ledger service unreachable")
            if self._fail_next_submissions > 0:
                self._fail_next_submissions -= 1
                raise ChainSubmissionError(f"transfer {reference} rejected")

            tx_id = self._live_transfer(reference) or self._record(to_address, amount, reference)
            if self._lose_next_responses > 0:
                self._lose_next_responses -= 1
                raise TransientNetworkError(f"transfer {reference}: read timed out")
            return tx_id

    def _live_transfer(self, reference: str) -> Optional[str]:
        existing = self._by_reference.get(reference)
        if existing and self._transfers[existing]["status"] != ChainStatus.Failed:
            return existing
        return None

    def _record(self, to_address: str, amount: Decimal, reference: str) -> str:
        tx_id = uuid.uuid4().hex
        self._transfers[tx_id] = {
            "to": to_address,
            "amount": Decimal(amount),
            "reference": reference,
            "status": ChainStatus.Pending,
        }
        self._by_reference[reference] = tx_id
        self.submissions.append({"tx_id": tx_id, "to": to_address, "amount": Decimal(amount), "reference": reference})
        if self.auto_confirm:
            self._apply(tx_id)
        return tx_id

    def find_transfer(self, reference: str) -> Optional[str]:
        with self._lock:
            if self.offline:
                raise TransientNetworkError("ledger service unreachable")
            return self._live_transfer(reference)

    def _apply(self, tx_id: str) -> None:
        transfer = self._transfers[tx_id]
        transfer["status"] = ChainStatus.Confirmed
        self._balances[transfer["to"]] = self._balances.get(transfer["to"], Decimal("0")) + transfer["amount"]

    def finalize(self, tx_id: str, success: bool = True) -> None:
        with self._lock:
            transfer = self._transfers[tx_id]
            if transfer["status"] != ChainStatus.Pending:
                return
            if success:
                self._apply(tx_id)
            else:
                transfer["status"] = ChainStatus.Failed

    def finalize_all(self, success: bool = True) -> None:
        for tx_id in list(self._transfers):
            self.finalize(tx_id, success=success)

    def drop(self, tx_id: str) -> None:
        """Forget a transaction, as if it never reached the chain."""
        with self._lock:
            transfer = self._transfers.pop(tx_id)
            self._by_reference.pop(transfer["reference"], None)

    def get_transfer_status(self, tx_ref: str) -> ChainStatus:
        with self._lock:
            if self.offline:
                raise TransientNetworkError("ledger service unreachable")
            transfer = self._transfers.get(tx_ref)
            return transfer["status"] if transfer else ChainStatus.NotFound

    def get_balance(self, address: str) -> Decimal:
        with self._lock:
            if self.offline:
                raise TransientNetworkError("ledger service unreachable")
            return self._balances.get(address, Decimal("0"))

    def confirmed_total(self, address: str) -> Decimal:
        return self._balances.get(address, Decimal("0"))


def build_ledger_client(settings) -> LedgerClient:
    if settings.ledger_service_url:
        logger.info("Using ledger service at %s", settings.ledger_service_url)
        return HttpLedgerClient(
            settings.ledger_service_url,
            settings.treasury_address,
            timeout_seconds=float(settings.ledger_timeout_seconds),
        )
    logger.warning(
        "LEDGER_SERVICE_URL not set. Settlement will use an in-memory ledger; "
        "transfers are not sent to any chain."
    )
    return InMemoryLedger(treasury_address=settings.treasury_address, auto_confirm=True)
