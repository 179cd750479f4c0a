"""Paystack REST client (transaction verify and initialize)"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from paysync.core.config import Settings
from paysync.core.exceptions import (
    PaymentVerificationError,
    ProviderAuthError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)


class PaystackClient:
    """Thin wrapper around the Paystack API.

    Constructed once per process and injected where needed. Every call has a
    bounded timeout; transport failures surface as ProviderUnavailableError so
    callers can answer "retry" without touching the store.
    """

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co",
                 timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaystackClient":
        return cls(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PAYSTACK_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"Paystack timeout on {path}") from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"Paystack request failed on {path}: {e}") from e

        if response.status_code in (401, 403):
            raise ProviderAuthError(f"Paystack rejected credentials (HTTP {response.status_code})")
        if response.status_code >= 500:
            raise ProviderUnavailableError(f"Paystack returned HTTP {response.status_code} on {path}")

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"Paystack returned a non-JSON body on {path}") from e

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            raise PaymentVerificationError(f"Paystack {path} failed", details=message)

        return body.get("data") or {}

    def verify(self, reference: str) -> Dict[str, Any]:
        """Return the transaction object for ``reference``.

        The caller decides whether ``data["status"]`` counts as success.

        Raises:
            PaymentVerificationError: Paystack does not know the reference
            ProviderAuthError: secret key rejected
            ProviderUnavailableError: timeout, 5xx or transport failure
        """
        data = self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")
        logger.info(f"Paystack verify {reference}: status={data.get('status')}")
        return data

    def initialize_transaction(self, email: str, amount_minor: int, currency: str,
                               metadata: Dict[str, Any], reference: Optional[str] = None) -> Dict[str, Any]:
        """Create a checkout; returns ``authorization_url``, ``access_code`` and ``reference``"""
        payload = {
            "email": email,
            "amount": amount_minor,
            "currency": currency,
            "metadata": metadata,
        }
        if reference:
            payload["reference"] = reference
        data = self._request("POST", "/transaction/initialize", json=payload)
        logger.info(f"Paystack checkout initialized: reference={data.get('reference')}")
        return data
