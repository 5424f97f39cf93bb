"""
Provider gateway seam. Concrete payment and delivery providers implement these
interfaces and return only the normalized result types below; nothing above this
package sees provider-specific field names.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Provider call failed (transport, HTTP or business failure). message is for logs, not users."""

    def __init__(self, message: str, raw: Any = None):
        self.message = message
        self.raw = raw
        super().__init__(message)


@dataclass
class PaymentInitResult:
    authorization_url: str
    gateway_reference: str
    access_code: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class PaymentVerification:
    """Gateway view of one payment. status is the provider's word ("success", "failed", "abandoned", ...)."""

    reference: str
    status: str
    channel: str = ""
    amount: Optional[Decimal] = None
    currency: str = ""
    metadata: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "abandoned", "reversed")


@dataclass
class PaymentEvent:
    """Normalized webhook event. kind is "success", "failure" or None for event types we do not handle."""

    event_type: str
    kind: Optional[str]
    reference: str
    verification: Optional[PaymentVerification] = None


@dataclass
class DeliveryResult:
    success: bool
    provider_transaction_id: str = ""
    message: str = ""
    raw: Any = None


@dataclass
class ProviderBalance:
    balance: Decimal
    currency: str = "GHS"


class PaymentGateway:
    name = "base"

    def initialize(
        self,
        *,
        email: str,
        amount: Decimal,
        reference: str,
        callback_url: str,
        channels: list,
        metadata: dict,
    ) -> PaymentInitResult:
        """Start a payment. Raises GatewayError."""
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerification:
        """Ask the gateway for the current state of a payment. Raises GatewayError."""
        raise NotImplementedError

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        raise NotImplementedError

    def parse_event(self, payload: dict) -> PaymentEvent:
        raise NotImplementedError


class DeliveryGateway:
    """
    VTU delivery provider. purchase_data and query_status never raise: every failure,
    including timeouts and connection errors, comes back as DeliveryResult(success=False).
    """

    name = "base"
    # Our network tag -> provider network code
    network_codes: dict = {}

    def network_code(self, network: str) -> str:
        return self.network_codes.get(network.upper(), network.lower())

    def purchase_data(self, *, network: str, phone: str, plan_code: str, reference: str) -> DeliveryResult:
        try:
            return self._purchase(network=network, phone=phone, plan_code=plan_code, reference=reference)
        except Exception as e:
            logger.warning("vtu: %s purchase failed ref=%s error=%s", self.name, reference, e)
            return DeliveryResult(success=False, message=_failure_message(e), raw=_error_payload(e))

    def query_status(self, reference: str) -> DeliveryResult:
        try:
            return self._query(reference)
        except Exception as e:
            logger.warning("vtu: %s query failed ref=%s error=%s", self.name, reference, e)
            return DeliveryResult(success=False, message=_failure_message(e), raw=_error_payload(e))

    def check_balance(self) -> ProviderBalance:
        """Raises GatewayError when the provider cannot be reached or answers badly."""
        try:
            return self._balance()
        except GatewayError:
            raise
        except Exception as e:
            logger.warning("vtu: %s balance check failed error=%s", self.name, e)
            raise GatewayError(f"Balance check failed: {e}") from e

    def _purchase(self, *, network, phone, plan_code, reference) -> DeliveryResult:
        raise NotImplementedError

    def _query(self, reference) -> DeliveryResult:
        raise NotImplementedError

    def _balance(self) -> ProviderBalance:
        raise NotImplementedError


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, requests.Timeout):
        return "Delivery provider timed out."
    if isinstance(exc, requests.ConnectionError):
        return "Delivery provider is unreachable."
    if isinstance(exc, requests.HTTPError):
        return "Delivery provider rejected the request."
    return "Delivery provider error."


def _error_payload(exc: Exception) -> dict:
    payload = {"error": type(exc).__name__, "detail": str(exc)}
    response = getattr(exc, "response", None)
    if response is not None:
        payload["status_code"] = response.status_code
        try:
            payload["body"] = response.json()
        except ValueError:
            payload["body"] = response.text[:500]
    return payload
