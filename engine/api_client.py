"""
HTTP client for the ARIA rewards API as used by the device.

Network faults (timeouts, refused connections, 5xx) become
TransientNetworkError: the request may or may not have been applied, and
resending it is safe because the server dedupes by item id. Any other error
response becomes ApiError.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import requests

from engine.errors import ApiError, TransientNetworkError
from engine.models import CollectedItem


class AriaApiClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"x-user-id": self.user_id, "Accept": "application/json"}
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.timeout_seconds, **kwargs
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientNetworkError(f"{method} {path}: {exc}") from exc

        if response.status_code >= 500:
            raise TransientNetworkError(f"{method} {path}: server returned {response.status_code}")
        if response.status_code >= 400:
            try:
                error = (response.json() or {}).get("error") or {}
            except ValueError:
                error = {}
            raise ApiError(
                response.status_code,
                error.get("code", "HTTP_ERROR"),
                error.get("message", response.text[:200]),
            )
        try:
            return response.json() or {}
        except ValueError as exc:
            # A truncated body leaves the outcome unknown
            raise TransientNetworkError(f"{method} {path}: unreadable response body") from exc

    def submit_data(self, items: Iterable[CollectedItem]) -> Dict[str, Decimal]:
        """POST /data/submit. Returns {item_id: reward} for acknowledged items."""
        payload = {"items": [item.to_payload() for item in items]}
        body = self._request("POST", "/data/submit", json=payload)
        acknowledged: Dict[str, Decimal] = {}
        for entry in body.get("syncedData") or []:
            if entry.get("id") is None or entry.get("reward") is None:
                continue
            acknowledged[str(entry["id"])] = Decimal(str(entry["reward"]))
        return acknowledged

    def get_user_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/user/stats")

    def request_reward(self, wallet_address: str) -> Dict[str, Any]:
        return self._request("POST", "/wallet/reward", json={"walletAddress": wallet_address})

    def get_wallet(self, wallet_address: str) -> Dict[str, Any]:
        return self._request("GET", f"/wallet/{wallet_address}")
