import requests

from billing.models import Order
from testing.settlement.base import (
    SCENARIO_PHONES,
    build_pipeline,
    cleanup_scenario_data,
    ensure_bundle,
    ensure_test_user,
)


def run():
    print("Running: scenario_card_delivery_retry")
    cleanup_scenario_data("scenario_card_delivery_retry")
    user = ensure_test_user()
    bundle = ensure_bundle("scenario_card_delivery_retry")
    pipeline, _, delivery = build_pipeline()

    order, _ = pipeline.initialize_purchase(user, bundle.pk, SCENARIO_PHONES[bundle.network], "card")
    delivery.raise_on_purchase = requests.Timeout("read timed out")
    outcome = pipeline.verify_payment(order.reference)
    order = outcome.order
    if order.payment_status != Order.PaymentStatus.SUCCESS:
        raise Exception(f"Expected payment success, got {order.payment_status}.")
    if order.status != Order.Status.PROCESSING or order.delivery_status != Order.DeliveryStatus.FAILED:
        raise Exception(f"Expected processing/failed after timeout, got {order.status}/{order.delivery_status}.")

    delivery.raise_on_purchase = None
    outcome = pipeline.retry_delivery(order.pk)
    order = outcome.order
    if order.status != Order.Status.COMPLETED or order.retry_count != 1:
        raise Exception(f"Expected completed with retry_count 1, got {order.status}/{order.retry_count}.")
    if delivery.calls[-1]["reference"] != f"{order.reference}-R1":
        raise Exception("Expected the retry to use its own idempotency reference.")
    print("✓ Passed")
