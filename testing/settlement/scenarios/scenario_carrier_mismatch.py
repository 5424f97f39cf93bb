from billing.exceptions import PurchaseValidationError
from billing.models import Order
from catalog.models import Network
from testing.settlement.base import (
    SCENARIO_PHONES,
    build_pipeline,
    cleanup_scenario_data,
    ensure_bundle,
    ensure_test_user,
)


def run():
    print("Running: scenario_carrier_mismatch")
    cleanup_scenario_data("scenario_carrier_mismatch")
    user = ensure_test_user()
    bundle = ensure_bundle("scenario_carrier_mismatch", network=Network.MTN)
    pipeline, payment, _ = build_pipeline()

    try:
        pipeline.initialize_purchase(user, bundle.pk, SCENARIO_PHONES[Network.TELECEL], "card")
    except PurchaseValidationError:
        pass
    else:
        raise Exception("Expected a Telecel number to be rejected for an MTN bundle.")
    if Order.objects.filter(bundle=bundle).exists():
        raise Exception("Expected no order to be created.")
    if payment.initialize_calls:
        raise Exception("Expected no payment to be initialized.")
    print("✓ Passed")
