import hashlib
import hmac
from typing import Dict, Mapping

import requests

from errors import UpstreamServiceError


class RazorpayGateway:
    provider = "razorpay"

    def __init__(self, key_id: str, key_secret: str, base_url: str, timeout: float, logger):
        self.key_id = (key_id or "").strip()
        self.key_secret = (key_secret or "").strip()
        self.base_url = (base_url or "https://api.razorpay.com").rstrip("/")
        self.timeout = timeout
        self.logger = logger

    @classmethod
    def from_config(cls, config: Mapping, logger) -> "RazorpayGateway":
        return cls(
            key_id=config.get("RAZORPAY_KEY_ID", ""),
            key_secret=config.get("RAZORPAY_KEY_SECRET", ""),
            base_url=config.get("RAZORPAY_API_BASE", "https://api.razorpay.com"),
            timeout=config.get("RAZORPAY_TIMEOUT_SECONDS", 10),
            logger=logger,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount_minor: int, currency: str, receipt: str) -> Dict:
        if not self.is_configured:
            self.logger.error("Razorpay credentials are not configured")
            raise UpstreamServiceError()

        payload = {"amount": int(amount_minor), "currency": currency, "receipt": receipt}
        try:
            response = requests.post(
                f"{self.base_url}/v1/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error(f"Razorpay order request failed for {receipt}: {exc}")
            raise UpstreamServiceError()

        if response.status_code not in (200, 201):
            self.logger.error(
                f"Razorpay order creation failed ({response.status_code}): {response.text}"
            )
            raise UpstreamServiceError()

        try:
            gateway_order = response.json()
        except ValueError:
            gateway_order = {}
        if not isinstance(gateway_order, dict) or not gateway_order.get("id"):
            self.logger.error(f"Razorpay returned no order id for {receipt}")
            raise UpstreamServiceError()
        return gateway_order

    def expected_signature(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
        return hmac.new(self.key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify_signature(
        self, gateway_order_id: str, gateway_payment_id: str, signature: str
    ) -> bool:
        if not self.key_secret:
            return False
        expected = self.expected_signature(gateway_order_id, gateway_payment_id)
        return hmac.compare_digest(
            expected.encode("utf-8"), str(signature or "").encode("utf-8")
        )
