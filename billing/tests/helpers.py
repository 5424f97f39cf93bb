from decimal import Decimal

from django.contrib.auth import get_user_model

from billing.gateways.sandbox import SandboxDeliveryGateway, SandboxPaymentGateway
from billing.services.settlement_service import SettlementPipeline
from catalog.models import Bundle, Network

WEBHOOK_SECRET = "test-webhook-secret"
MTN_PHONE = "0241234567"
TELECEL_PHONE = "0201234567"


def make_user(email="buyer@example.com", balance="0.00", **extra):
    user = get_user_model().objects.create_user(email=email, password="pass12345", **extra)
    if Decimal(balance):
        get_user_model().objects.filter(pk=user.pk).update(wallet_balance=Decimal(balance))
        user.refresh_from_db()
    return user


def make_bundle(network=Network.MTN, price="18.00", is_active=True, **extra):
    defaults = {
        "name": f"{network} 5GB",
        "data_amount": "5GB",
        "data_amount_mb": 5120,
        "validity": "30 days",
        "cost_price": Decimal(price) - Decimal("1.00"),
        "retail_price": Decimal(price),
        "vtu_code": f"{network.lower()}-5gb",
        "is_active": is_active,
    }
    defaults.update(extra)
    return Bundle.objects.create(network=network, **defaults)


def make_pipeline(notifier=None):
    payment = SandboxPaymentGateway(webhook_secret=WEBHOOK_SECRET)
    delivery = SandboxDeliveryGateway()
    return SettlementPipeline(payment, delivery, notifier=notifier), payment, delivery
