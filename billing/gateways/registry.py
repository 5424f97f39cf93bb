"""
Provider selection. Names map to classes through a closed table; the configured
gateway is built once per process.
"""
from functools import lru_cache

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from billing.gateways.base import GatewayError
from billing.gateways.paystack import PaystackGateway
from billing.gateways.sandbox import SandboxDeliveryGateway, SandboxPaymentGateway
from billing.gateways.vtu import ClubKonnectGateway, HubnetGateway, VTPassGateway

PAYMENT_GATEWAYS = {
    "paystack": PaystackGateway,
    "sandbox": SandboxPaymentGateway,
}

DELIVERY_GATEWAYS = {
    "hubnet": HubnetGateway,
    "vtpass": VTPassGateway,
    "clubkonnect": ClubKonnectGateway,
    "sandbox": SandboxDeliveryGateway,
}


def _build(table: dict, name: str, setting_name: str):
    gateway_class = table.get((name or "").lower())
    if gateway_class is None:
        raise ImproperlyConfigured(
            f"{setting_name}={name!r} is not supported. Choose one of: {', '.join(sorted(table))}."
        )
    if gateway_class.name == "sandbox" and not settings.ALLOW_SANDBOX_GATEWAYS:
        raise ImproperlyConfigured(
            f"{setting_name}=sandbox settles payments without a provider and is disabled here "
            "(set ALLOW_SANDBOX_GATEWAYS only for development)."
        )
    try:
        return gateway_class.from_settings(settings)
    except GatewayError as e:
        raise ImproperlyConfigured(e.message) from e


@lru_cache(maxsize=None)
def get_payment_gateway():
    return _build(PAYMENT_GATEWAYS, settings.PAYMENT_PROVIDER, "PAYMENT_PROVIDER")


@lru_cache(maxsize=None)
def get_delivery_gateway():
    return _build(DELIVERY_GATEWAYS, settings.VTU_PROVIDER, "VTU_PROVIDER")


def reset_gateways():
    """Drop cached gateways (tests and settings overrides)."""
    get_payment_gateway.cache_clear()
    get_delivery_gateway.cache_clear()
