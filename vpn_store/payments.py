"""Client for the Pakasir payment gateway.

Pakasir issues a QRIS code per order and later calls our webhook when the
order is paid. The bot also polls the transaction detail endpoint when a
user presses "check status".
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests
from requests.exceptions import ConnectionError, Timeout

LOGGER = logging.getLogger(__name__)

PAKASIR_API_URL = "https://app.pakasir.com/api"

MAX_RETRIES = 3
RETRY_BACKOFF = 1.0  # seconds

# Gateway status -> deposit status
STATUS_MAP = {
    "completed": "paid",
    "expired": "expired",
    "cancelled": "failed",
    "failed": "failed",
}


class PakasirError(RuntimeError):
    """Raised when the gateway rejects a request or answers with garbage."""


class PakasirConnectionError(PakasirError):
    """Raised when the gateway cannot be reached."""


class PakasirClient:
    def __init__(self, project: str, api_key: str, *, base_url: str = PAKASIR_API_URL, timeout: int = 15) -> None:
        self.project = project
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    @property
    def configured(self) -> bool:
        return bool(self.project and self.api_key)

    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        last_exc: Optional[Exception] = None
        for attempt in range(MAX_RETRIES):
            try:
                response = self.session.request(method, url, params=params, json=json_body, timeout=self.timeout)
                response.raise_for_status()
                try:
                    return response.json()
                except ValueError as exc:
                    preview = response.text[:200] if response.text else "empty"
                    raise PakasirError(f"Invalid JSON response from gateway: {preview}") from exc
            except (ConnectionError, Timeout) as exc:
                last_exc = exc
                LOGGER.warning("gateway request attempt %d/%d failed: %s", attempt + 1, MAX_RETRIES, exc)
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_BACKOFF * (attempt + 1))
            except requests.exceptions.HTTPError as exc:
                raise PakasirError(f"Gateway returned {exc.response.status_code if exc.response is not None else '?'}") from exc
        raise PakasirConnectionError(f"Failed to reach payment gateway: {last_exc}")

    def create_qris(self, order_id: str, amount: int) -> Dict[str, Any]:
        """Create a QRIS transaction and return the payment block."""

        payload = self._request(
            "POST",
            "transactioncreate/qris",
            json_body={"project": self.project, "order_id": order_id, "amount": amount, "api_key": self.api_key},
        )
        payment = payload.get("payment")
        if not isinstance(payment, dict):
            raise PakasirError(str(payload.get("error") or "Failed to create payment"))
        LOGGER.info("gateway payment created for %s", order_id)
        return payment

    def transaction_status(self, order_id: str, amount: int) -> str:
        """Return ``pending``, ``paid``, ``expired`` or ``failed``."""

        payload = self._request(
            "GET",
            "transactiondetail",
            params={"project": self.project, "order_id": order_id, "amount": amount, "api_key": self.api_key},
        )
        transaction = payload.get("transaction")
        if not isinstance(transaction, dict):
            return "pending"
        return STATUS_MAP.get(str(transaction.get("status")), "pending")
