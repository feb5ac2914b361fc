import logging
from typing import Any

import requests

from app import config
from app.exceptions import PaymentGatewayError, PaymentGatewayUnavailable

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Thin wrapper over the Razorpay REST API.

    Built once at application startup and handed to the checkout and webhook
    code; nothing here is module-global. Network failures and timeouts raise
    ``PaymentGatewayUnavailable`` so callers fail closed without marking the
    payment failed.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_base: str = config.RAZORPAY_API_BASE,
        timeout: float = config.RAZORPAY_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.key_id = (key_id or "").strip()
        self.key_secret = (key_secret or "").strip()
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "RazorpayClient":
        return cls(key_id=config.RAZORPAY_KEY_ID, key_secret=config.RAZORPAY_KEY_SECRET)

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, json_payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_configured:
            raise PaymentGatewayUnavailable("Payment gateway is not configured.")

        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                auth=(self.key_id, self.key_secret),
                json=json_payload,
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("Razorpay request timed out method=%s path=%s", method, path)
            raise PaymentGatewayUnavailable("Payment gateway timed out. Please try again.")
        except requests.RequestException as exc:
            logger.warning("Failed to contact Razorpay method=%s path=%s error=%s", method, path, exc)
            raise PaymentGatewayUnavailable("Failed to contact payment gateway. Please try again.")

        if response.status_code >= 500:
            logger.warning("Razorpay returned status=%s for %s %s", response.status_code, method, path)
            raise PaymentGatewayUnavailable("Payment gateway is unavailable right now.")

        try:
            payload = response.json()
        except ValueError:
            raise PaymentGatewayError("Invalid response received from payment gateway.")

        if response.status_code >= 400:
            error = (payload or {}).get("error") if isinstance(payload, dict) else None
            description = str((error or {}).get("description") or "request rejected")
            logger.warning(
                "Razorpay rejected request status=%s path=%s description=%s",
                response.status_code,
                path,
                description,
            )
            raise PaymentGatewayError(f"Payment gateway error: {description}")

        if not isinstance(payload, dict):
            raise PaymentGatewayError("Unexpected response format from payment gateway.")
        return payload

    def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/orders",
            json_payload={
                "amount": int(amount_paise),
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": notes or {},
            },
        )

    def fetch_order(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}")

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("GET", f"/payments/{payment_id}")

    def refund_payment(
        self,
        payment_id: str,
        amount_paise: int,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            json_payload={"amount": int(amount_paise), "notes": notes or {}},
        )

    def verify_credentials(self) -> bool:
        """Cheap authenticated call used at startup to catch bad keys early."""
        try:
            self._request("GET", "/orders?count=1")
        except (PaymentGatewayError, PaymentGatewayUnavailable) as exc:
            logger.error("Razorpay credential check failed: %s", exc)
            return False
        return True
