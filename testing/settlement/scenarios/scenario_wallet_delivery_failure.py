from decimal import Decimal

from billing.exceptions import ProviderError
from billing.models import Order, WalletLedgerEntry
from testing.settlement.base import (
    SCENARIO_PHONES,
    build_pipeline,
    cleanup_scenario_data,
    ensure_bundle,
    ensure_test_user,
)


def run():
    print("Running: scenario_wallet_delivery_failure")
    cleanup_scenario_data("scenario_wallet_delivery_failure")
    user = ensure_test_user(balance=Decimal("20.00"))
    bundle = ensure_bundle("scenario_wallet_delivery_failure", price=Decimal("18.00"))
    pipeline, _, delivery = build_pipeline()
    delivery.fail_all = True

    try:
        pipeline.purchase_with_wallet(user, bundle.pk, SCENARIO_PHONES[bundle.network])
    except ProviderError as e:
        if e.phase != "delivery":
            raise Exception(f"Expected a delivery-phase error, got phase {e.phase}.")
    else:
        raise Exception("Expected wallet purchase with failed delivery to raise ProviderError.")

    user.refresh_from_db()
    order = Order.objects.get(bundle=bundle)
    if user.wallet_balance != Decimal("20.00"):
        raise Exception(f"Expected balance restored to 20.00, got {user.wallet_balance}.")
    if order.status != Order.Status.FAILED or order.retry_count != 0:
        raise Exception(f"Expected failed order with retry_count 0, got {order.status}/{order.retry_count}.")
    reversals = WalletLedgerEntry.objects.filter(order=order, category=WalletLedgerEntry.Category.REFUND)
    if reversals.count() != 1 or reversals.get().amount != order.amount:
        raise Exception("Expected exactly one compensating credit equal to the order amount.")
    print("✓ Passed")
