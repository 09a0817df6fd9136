import hashlib
import hmac
import logging
from typing import Optional

import requests

from order_engine.config import get_settings
from order_engine.errors import UpstreamFailure

logger = logging.getLogger(__name__)


class PaystackClient:
    """Thin client for the processor's transaction API.

    Every call has a bounded timeout and any transport or API failure is
    raised as ``UpstreamFailure``; nothing is retried here.
    """

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co", timeout: float = 30,
                 http=None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings=None) -> "PaystackClient":
        settings = settings or get_settings()
        return cls(settings.paystack_secret_key, settings.paystack_base_url, settings.processor_timeout)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Processor call %s %s failed: %s", method, path, exc)
            raise UpstreamFailure(f"Payment processor unavailable: {exc}") from exc

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error("Processor rejected %s %s: %s", method, path, message)
            raise UpstreamFailure(f"Payment processor error: {message}")
        return body.get("data") or {}

    def initialize_transaction(self, email: str, amount: int, reference: str, currency: str = "GHS",
                               callback_url: Optional[str] = None, metadata: Optional[dict] = None,
                               subaccount: Optional[str] = None, transaction_charge: int = 0,
                               bearer: str = "account") -> dict:
        """Open a transaction; ``amount`` is in minor units (pesewas)."""
        payload = {
            "email": email,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
            "subaccount": subaccount,
            "transaction_charge": transaction_charge,
            "bearer": bearer,
        }
        payload = {k: v for k, v in payload.items() if v is not None}
        return self._call("POST", "/transaction/initialize", json=payload)

    def verify_transaction(self, reference: str) -> dict:
        return self._call("GET", f"/transaction/verify/{reference}")

    def verify_webhook_signature(self, signature: Optional[str], raw_body: bytes) -> bool:
        """HMAC-SHA-512 over the exact raw body, hex encoded."""
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
