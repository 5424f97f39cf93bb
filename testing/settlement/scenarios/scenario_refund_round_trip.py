from decimal import Decimal

from billing.exceptions import PurchaseValidationError
from billing.models import Order, WalletLedgerEntry
from testing.settlement.base import (
    SCENARIO_PHONES,
    build_pipeline,
    cleanup_scenario_data,
    ensure_bundle,
    ensure_test_user,
)


def run():
    print("Running: scenario_refund_round_trip")
    cleanup_scenario_data("scenario_refund_round_trip")
    user = ensure_test_user(balance=Decimal("0.00"))
    bundle = ensure_bundle("scenario_refund_round_trip", price=Decimal("12.50"))
    pipeline, _, _ = build_pipeline()

    order, _ = pipeline.initialize_purchase(user, bundle.pk, SCENARIO_PHONES[bundle.network], "card")
    pipeline.verify_payment(order.reference)
    outcome = pipeline.refund_order(order.pk, reason="Customer did not receive data")

    user.refresh_from_db()
    if outcome.order.status != Order.Status.REFUNDED:
        raise Exception(f"Expected refunded order, got {outcome.order.status}.")
    if user.wallet_balance != Decimal("12.50"):
        raise Exception(f"Expected wallet credited 12.50, got {user.wallet_balance}.")
    if WalletLedgerEntry.objects.filter(order=order).count() != 1:
        raise Exception("Expected exactly one ledger entry for the refunded order.")
    try:
        pipeline.refund_order(order.pk, reason="again")
    except PurchaseValidationError:
        pass
    else:
        raise Exception("Expected second refund to be rejected.")
    print("✓ Passed")
