"""
Paystack payment gateway: transaction initialize and verify, plus webhook authentication.

Amounts cross this boundary as Decimal GHS and are converted to pesewas here and
nowhere else. Secret key is never exposed; only backend code uses this.
"""
import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from urllib.parse import quote

import requests

from billing import config
from billing.gateways.base import (
    GatewayError,
    PaymentEvent,
    PaymentGateway,
    PaymentInitResult,
    PaymentVerification,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "HTTP_X_PAYSTACK_SIGNATURE"

EVENT_KINDS = {
    "charge.success": "success",
    "charge.failed": "failure",
}


def to_minor_units(amount: Decimal) -> int:
    """GHS -> pesewas."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount) -> Decimal:
    """pesewas -> GHS (2dp)."""
    return (Decimal(int(amount)) / Decimal(100)).quantize(Decimal("0.01"))


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def signature_matches(secret: str, raw_body: bytes, signature: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, raw_body), signature)


def verification_from_data(data: dict) -> PaymentVerification:
    """Build a PaymentVerification from a Paystack transaction object (verify response or event data)."""
    amount = data.get("amount")
    return PaymentVerification(
        reference=str(data.get("reference") or ""),
        status=str(data.get("status") or "").lower(),
        channel=str(data.get("channel") or ""),
        amount=from_minor_units(amount) if amount is not None else None,
        currency=str(data.get("currency") or ""),
        metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
        raw=data,
    )


def parse_paystack_event(payload: dict) -> PaymentEvent:
    event_type = str(payload.get("event") or "")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    kind = EVENT_KINDS.get(event_type)
    verification = None
    if kind:
        verification = verification_from_data(data)
        if kind == "failure" and not verification.failed:
            # charge.failed always means a failed payment regardless of data.status
            verification.status = "failed"
    return PaymentEvent(
        event_type=event_type,
        kind=kind,
        reference=str(data.get("reference") or ""),
        verification=verification,
    )


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(self, secret_key: str, webhook_secret: str, base_url: str = "https://api.paystack.co",
                 timeout: float = 30, session: requests.Session = None):
        if not secret_key:
            raise GatewayError("Paystack is not configured: PAYSTACK_SECRET_KEY is missing or empty.")
        self.webhook_secret = webhook_secret or secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    @classmethod
    def from_settings(cls, settings):
        return cls(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            webhook_secret=settings.PAYSTACK_WEBHOOK_SECRET,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("paystack: %s %s transport error %s", method, path, e)
            raise GatewayError(f"Paystack unreachable: {e}") from e
        try:
            body = response.json()
        except ValueError:
            logger.warning("paystack: %s %s non-JSON response status=%s", method, path, response.status_code)
            raise GatewayError(f"Paystack returned a non-JSON response (HTTP {response.status_code}).")
        if not isinstance(body, dict):
            logger.warning("paystack: %s %s unexpected body type %s", method, path, type(body).__name__)
            raise GatewayError(f"Paystack returned an unexpected response (HTTP {response.status_code}).", raw=body)
        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.warning("paystack: %s %s rejected status=%s message=%s", method, path, response.status_code, message)
            raise GatewayError(message, raw=body)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise GatewayError("Paystack response data is not an object.", raw=body)
        return data

    def initialize(self, *, email, amount, reference, callback_url, channels, metadata) -> PaymentInitResult:
        data = self._request("POST", "/transaction/initialize", json={
            "email": email,
            "amount": to_minor_units(amount),
            "currency": config.CURRENCY,
            "reference": reference,
            "callback_url": callback_url,
            "channels": channels,
            "metadata": metadata,
        })
        authorization_url = data.get("authorization_url")
        if not authorization_url:
            raise GatewayError("Paystack initialize response has no authorization_url.", raw=data)
        return PaymentInitResult(
            authorization_url=authorization_url,
            gateway_reference=data.get("reference") or reference,
            access_code=data.get("access_code") or "",
            raw=data,
        )

    def verify(self, reference: str) -> PaymentVerification:
        data = self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")
        return verification_from_data(data)

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        return signature_matches(self.webhook_secret, raw_body, signature)

    def parse_event(self, payload: dict) -> PaymentEvent:
        return parse_paystack_event(payload)
