"""
In-process gateways for development without provider credentials, and for the
settlement scenarios and tests. Deterministic; record every call they receive.
"""
import logging
from decimal import Decimal

from django.conf import settings

from billing import config
from billing.gateways.base import (
    DeliveryGateway,
    DeliveryResult,
    GatewayError,
    PaymentGateway,
    PaymentInitResult,
    PaymentVerification,
    ProviderBalance,
)
from billing.gateways.paystack import parse_paystack_event, signature_matches

logger = logging.getLogger(__name__)


class SandboxPaymentGateway(PaymentGateway):
    """
    Pretends every initialized payment was paid. Set outcomes[reference] to a
    gateway status ("failed", "abandoned", "ongoing", ...) to change that.
    Webhooks use the Paystack body format and signature scheme.
    """

    name = "sandbox"

    def __init__(self, webhook_secret: str = "", callback_base_url: str = "http://localhost:3000"):
        self.webhook_secret = webhook_secret
        self.callback_base_url = callback_base_url.rstrip("/")
        self.outcomes = {}
        self.amounts = {}
        self.fail_initialize = False
        self.fail_verify = False
        self.initialize_calls = []
        self.verify_calls = []

    @classmethod
    def from_settings(cls, settings):
        return cls(webhook_secret=settings.PAYSTACK_WEBHOOK_SECRET, callback_base_url=settings.FRONTEND_URL)

    def initialize(self, *, email, amount, reference, callback_url, channels, metadata):
        self.initialize_calls.append(reference)
        if self.fail_initialize:
            raise GatewayError("Sandbox initialize failure.")
        self.amounts[reference] = Decimal(amount)
        return PaymentInitResult(
            authorization_url=f"{self.callback_base_url}/sandbox/pay/{reference}",
            gateway_reference=reference,
            access_code=f"sandbox-{reference.lower()}",
            raw={"channels": channels, "metadata": metadata},
        )

    def verify(self, reference):
        self.verify_calls.append(reference)
        if self.fail_verify:
            raise GatewayError("Sandbox verify failure.")
        status = self.outcomes.get(reference, "success")
        return PaymentVerification(
            reference=reference,
            status=status,
            channel="card",
            amount=self.amounts.get(reference),
            currency=config.CURRENCY,
            raw={"reference": reference, "status": status},
        )

    def verify_webhook_signature(self, raw_body, signature):
        return signature_matches(self.webhook_secret, raw_body, signature)

    def parse_event(self, payload):
        return parse_paystack_event(payload)


class SandboxDeliveryGateway(DeliveryGateway):
    """
    Delivers everything unless told otherwise. fail_all, fail_references and
    raise_on_purchase let tests script provider failures.
    """

    name = "sandbox"

    def __init__(self, balance: Decimal = Decimal("1000.00")):
        self.balance = balance
        self.fail_all = False
        self.fail_references = set()
        # Simulates a transport exception inside the provider client
        self.raise_on_purchase = None
        self.calls = []
        self.delivered = {}

    @classmethod
    def from_settings(cls, settings):
        return cls()

    def _purchase(self, *, network, phone, plan_code, reference):
        self.calls.append({"network": network, "phone": phone, "plan_code": plan_code, "reference": reference})
        if self.raise_on_purchase is not None:
            raise self.raise_on_purchase
        if self.fail_all or reference in self.fail_references:
            return DeliveryResult(success=False, message="Sandbox delivery failed", raw={"status": "failed"})
        transaction_id = f"SBX-{reference}"
        self.delivered[reference] = transaction_id
        return DeliveryResult(
            success=True,
            provider_transaction_id=transaction_id,
            message="Data bundle sent successfully",
            raw={"status": "success", "transaction_id": transaction_id},
        )

    def _query(self, reference):
        transaction_id = self.delivered.get(reference, "")
        return DeliveryResult(
            success=bool(transaction_id),
            provider_transaction_id=transaction_id,
            message="delivered" if transaction_id else "not found",
            raw={"reference": reference},
        )

    def _balance(self):
        return ProviderBalance(balance=self.balance, currency=config.CURRENCY)

    @property
    def call_count(self) -> int:
        return len(self.calls)


def build_sandbox_pair():
    """Fresh sandbox gateways wired from current settings."""
    return SandboxPaymentGateway.from_settings(settings), SandboxDeliveryGateway.from_settings(settings)
