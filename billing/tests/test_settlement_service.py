from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import requests
from django.db.models import F
from django.test import TestCase
from django.utils import timezone

from billing.exceptions import InsufficientFunds, NotFound, ProviderError, PurchaseValidationError
from billing.gateways.base import PaymentVerification
from billing.gateways.paystack import PaystackGateway
from billing.models import Order, WalletLedgerEntry
from billing.services import wallet_service
from billing.services.settlement_service import SettlementPipeline
from billing.tests.helpers import MTN_PHONE, TELECEL_PHONE, make_bundle, make_pipeline, make_user


class InitializePurchaseTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.bundle = make_bundle()
        self.pipeline, self.payment, self.delivery = make_pipeline()

    def test_creates_pending_order_with_bundle_snapshot(self):
        order, init = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(order.amount, Decimal("18.00"))
        self.assertEqual(order.carrier_plan_code, "mtn-5gb")
        self.assertEqual(order.recipient_phone, "233241234567")
        self.assertTrue(order.reference.startswith("OE-"))
        self.assertEqual(init.gateway_reference, order.reference)

    def test_carrier_mismatch_creates_no_order(self):
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.initialize_purchase(self.user, self.bundle.pk, TELECEL_PHONE, "card")
        self.assertFalse(Order.objects.exists())
        self.assertEqual(self.payment.initialize_calls, [])

    def test_unknown_and_inactive_bundles(self):
        with self.assertRaises(NotFound):
            self.pipeline.initialize_purchase(self.user, 9999, MTN_PHONE, "card")
        inactive = make_bundle(is_active=False, name="old")
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.initialize_purchase(self.user, inactive.pk, MTN_PHONE, "card")

    def test_invalid_payment_method(self):
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "wallet")

    def test_gateway_failure_marks_order_failed(self):
        self.payment.fail_initialize = True
        with self.assertRaises(ProviderError) as ctx:
            self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        self.assertEqual(ctx.exception.phase, "payment")
        order = Order.objects.get()
        self.assertEqual((order.status, order.payment_status), ("failed", "failed"))

    def test_unexpected_paystack_body_marks_order_failed(self):
        session = Mock()
        session.headers = {}
        session.request.return_value.status_code = 502
        session.request.return_value.json.return_value = ["bad gateway"]
        paystack = PaystackGateway(secret_key="sk_test_x", webhook_secret="whsec", session=session)
        pipeline = SettlementPipeline(paystack, self.delivery)
        with self.assertRaises(ProviderError):
            pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        order = Order.objects.get()
        self.assertEqual((order.status, order.payment_status), ("failed", "failed"))


class VerifyPaymentTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.bundle = make_bundle()
        self.notifier = Mock()
        self.pipeline, self.payment, self.delivery = make_pipeline(notifier=self.notifier)
        self.order, _ = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "mobile_money")

    def test_success_delivers_once_and_repeat_is_noop(self):
        first = self.pipeline.verify_payment(self.order.reference)
        second = self.pipeline.verify_payment(self.order.reference)

        self.assertTrue(first.success)
        self.assertEqual(first.order.status, Order.Status.COMPLETED)
        self.assertEqual(first.order.delivery_status, Order.DeliveryStatus.DELIVERED)
        self.assertEqual(self.delivery.call_count, 1)
        self.assertEqual(self.delivery.calls[0]["reference"], self.order.reference)
        self.assertEqual(len(self.payment.verify_calls), 1)
        self.assertEqual(
            (first.success, first.message, first.order.status, first.order.version),
            (second.success, second.message, second.order.status, second.order.version),
        )
        self.notifier.order_event.assert_called_once()

    def test_gateway_failure_status(self):
        self.payment.outcomes[self.order.reference] = "abandoned"
        outcome = self.pipeline.verify_payment(self.order.reference)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.phase, "payment")
        self.assertEqual((outcome.order.status, outcome.order.payment_status), ("failed", "failed"))
        self.assertEqual(self.delivery.call_count, 0)

    def test_still_processing_leaves_order_pending(self):
        self.payment.outcomes[self.order.reference] = "ongoing"
        outcome = self.pipeline.verify_payment(self.order.reference)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.order.status, Order.Status.PENDING)
        self.assertEqual(self.delivery.call_count, 0)

    def test_amount_mismatch_is_payment_failure(self):
        self.payment.amounts[self.order.reference] = Decimal("1.00")
        outcome = self.pipeline.verify_payment(self.order.reference)
        self.assertEqual(outcome.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.delivery.call_count, 0)

    def test_verify_transport_failure_keeps_order_pending(self):
        self.payment.fail_verify = True
        with self.assertRaises(ProviderError):
            self.pipeline.verify_payment(self.order.reference)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertTrue(self.order.error_message)

    def test_delivery_timeout_leaves_paid_order_for_retry(self):
        self.delivery.raise_on_purchase = requests.Timeout("read timed out")
        outcome = self.pipeline.verify_payment(self.order.reference)
        order = outcome.order
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.phase, "delivery")
        self.assertEqual(order.payment_status, Order.PaymentStatus.SUCCESS)
        self.assertEqual(order.status, Order.Status.PROCESSING)
        self.assertEqual(order.delivery_status, Order.DeliveryStatus.FAILED)
        self.assertEqual(order.retry_count, 0)

        # Polling again does not retry delivery
        self.delivery.raise_on_purchase = None
        self.pipeline.verify_payment(self.order.reference)
        self.assertEqual(self.delivery.call_count, 1)

    def test_unknown_reference(self):
        with self.assertRaises(NotFound):
            self.pipeline.verify_payment("OE-NOPE")

    def test_webhook_path_uses_event_verification(self):
        verification = PaymentVerification(
            reference=self.order.reference, status="success", amount=Decimal("18.00"), currency="GHS"
        )
        self.pipeline.handle_payment_event(self.order.reference, verification)
        outcome = self.pipeline.handle_payment_event(self.order.reference, verification)
        self.assertEqual(outcome.order.status, Order.Status.COMPLETED)
        self.assertEqual(self.delivery.call_count, 1)
        self.assertEqual(self.payment.verify_calls, [])

    def test_lost_claim_does_not_call_provider(self):
        # Another caller confirmed payment and claimed delivery after we read the order
        Order.objects.filter(pk=self.order.pk).update(
            payment_status=Order.PaymentStatus.SUCCESS,
            status=Order.Status.PROCESSING,
            delivery_status=Order.DeliveryStatus.PROCESSING,
            delivery_claimed_at=timezone.now(),
            version=self.order.version + 1,
        )
        verification = PaymentVerification(reference=self.order.reference, status="success", amount=Decimal("18.00"))
        outcome = self.pipeline._apply_payment(self.order, verification)
        self.assertEqual(self.delivery.call_count, 0)
        self.assertEqual(outcome.order.delivery_status, Order.DeliveryStatus.PROCESSING)


class RetryDeliveryTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.bundle = make_bundle()
        self.pipeline, self.payment, self.delivery = make_pipeline()
        order, _ = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        self.delivery.raise_on_purchase = requests.Timeout("read timed out")
        self.order = self.pipeline.verify_payment(order.reference).order
        self.delivery.raise_on_purchase = None

    def test_retry_success_completes_order(self):
        outcome = self.pipeline.retry_delivery(self.order.pk)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.order.status, Order.Status.COMPLETED)
        self.assertEqual(outcome.order.retry_count, 1)
        self.assertEqual(self.delivery.calls[-1]["reference"], f"{self.order.reference}-R1")
        self.assertEqual(self.payment.verify_calls, [self.order.reference])

    def test_retry_failure_only_bumps_retry_count(self):
        self.delivery.fail_all = True
        outcome = self.pipeline.retry_delivery(self.order.pk)
        order = outcome.order
        self.assertFalse(outcome.success)
        self.assertEqual((order.status, order.delivery_status), ("processing", "failed"))
        self.assertEqual(order.retry_count, 1)
        self.pipeline.retry_delivery(self.order.pk)
        self.assertEqual(Order.objects.get(pk=self.order.pk).retry_count, 2)

    def test_retry_on_delivered_order_is_noop(self):
        self.pipeline.retry_delivery(self.order.pk)
        outcome = self.pipeline.retry_delivery(self.order.pk)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.order.retry_count, 1)
        self.assertEqual(self.delivery.call_count, 2)

    def test_retry_requires_paid_order(self):
        pending, _ = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.retry_delivery(pending.pk)

    def test_fresh_claim_is_not_taken_over(self):
        Order.objects.filter(pk=self.order.pk).update(
            delivery_status=Order.DeliveryStatus.PROCESSING, delivery_claimed_at=timezone.now()
        )
        outcome = self.pipeline.retry_delivery(self.order.pk)
        self.assertFalse(outcome.success)
        self.assertEqual(self.delivery.call_count, 1)

    def test_stale_claim_is_taken_over(self):
        Order.objects.filter(pk=self.order.pk).update(
            delivery_status=Order.DeliveryStatus.PROCESSING,
            delivery_claimed_at=timezone.now() - timedelta(hours=1),
        )
        outcome = self.pipeline.retry_delivery(self.order.pk)
        self.assertTrue(outcome.success)
        self.assertEqual(self.delivery.call_count, 2)


class WalletPurchaseTests(TestCase):
    def setUp(self):
        self.user = make_user(balance="20.00")
        self.bundle = make_bundle(price="18.00")
        self.pipeline, self.payment, self.delivery = make_pipeline()

    def test_lost_success_write_reports_current_state(self):
        notifier = Mock()
        pipeline, _, delivery = make_pipeline(notifier=notifier)
        deliver = delivery.purchase_data

        def concurrent_write(**kwargs):
            Order.objects.filter(reference=kwargs["reference"]).update(version=F("version") + 1)
            return deliver(**kwargs)

        delivery.purchase_data = concurrent_write
        outcome = pipeline.purchase_with_wallet(self.user, self.bundle.pk, MTN_PHONE)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.order.delivery_status, Order.DeliveryStatus.PROCESSING)
        self.assertEqual(outcome.new_balance, Decimal("2.00"))
        notifier.order_event.assert_not_called()

    def test_successful_purchase_debits_wallet(self):
        outcome = self.pipeline.purchase_with_wallet(self.user, self.bundle.pk, MTN_PHONE)
        order = outcome.order
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.new_balance, Decimal("2.00"))
        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(order.payment_method, Order.PaymentMethod.WALLET)
        entries = WalletLedgerEntry.objects.filter(order=order)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().direction, WalletLedgerEntry.Direction.DEBIT)
        self.assertEqual(self.payment.initialize_calls, [])

    def test_failed_delivery_reverses_debit(self):
        self.delivery.fail_all = True
        with self.assertRaises(ProviderError) as ctx:
            self.pipeline.purchase_with_wallet(self.user, self.bundle.pk, MTN_PHONE)
        self.assertEqual(ctx.exception.phase, "delivery")
        order = Order.objects.get()
        self.assertEqual((order.status, order.delivery_status), ("failed", "failed"))
        self.assertEqual(order.retry_count, 0)
        self.assertEqual(wallet_service.balance_of(self.user), Decimal("20.00"))
        reversal = WalletLedgerEntry.objects.get(order=order, direction=WalletLedgerEntry.Direction.CREDIT)
        self.assertEqual(reversal.reference, f"REF-{order.reference}")
        self.assertEqual(reversal.amount, order.amount)

    def test_compensated_order_cannot_be_retried_or_refunded(self):
        self.delivery.fail_all = True
        with self.assertRaises(ProviderError):
            self.pipeline.purchase_with_wallet(self.user, self.bundle.pk, MTN_PHONE)
        order = Order.objects.get()
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.retry_delivery(order.pk)
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.refund_order(order.pk, "dup")
        self.assertEqual(wallet_service.balance_of(self.user), Decimal("20.00"))

    def test_insufficient_funds_creates_no_order(self):
        expensive = make_bundle(price="25.00", name="big")
        with self.assertRaises(InsufficientFunds):
            self.pipeline.purchase_with_wallet(self.user, expensive.pk, MTN_PHONE)
        self.assertFalse(Order.objects.exists())
        self.assertEqual(self.delivery.call_count, 0)

    def test_carrier_mismatch_rejected_before_debit(self):
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.purchase_with_wallet(self.user, self.bundle.pk, TELECEL_PHONE)
        self.assertEqual(wallet_service.balance_of(self.user), Decimal("20.00"))


class RefundTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.bundle = make_bundle(price="12.50")
        self.pipeline, self.payment, self.delivery = make_pipeline()
        order, _ = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        self.order = self.pipeline.verify_payment(order.reference).order

    def test_refund_round_trip(self):
        outcome = self.pipeline.refund_order(self.order.pk, "Customer complaint: no data")
        self.assertEqual(outcome.order.status, Order.Status.REFUNDED)
        self.assertEqual(outcome.order.refund_reason, "Customer complaint: no data")
        self.assertIsNotNone(outcome.order.refunded_at)
        self.assertEqual(outcome.new_balance, Decimal("12.50"))
        entries = WalletLedgerEntry.objects.filter(order=self.order)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().reference, f"REFUND-{self.order.reference}")

        with self.assertRaises(PurchaseValidationError):
            self.pipeline.refund_order(self.order.pk, "again")
        self.assertEqual(wallet_service.balance_of(self.user), Decimal("12.50"))

    def test_guest_order_cannot_be_refunded(self):
        Order.objects.filter(pk=self.order.pk).update(user=None)
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.refund_order(self.order.pk, "guest")

    def test_unpaid_order_cannot_be_refunded(self):
        pending, _ = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")
        with self.assertRaises(PurchaseValidationError):
            self.pipeline.refund_order(pending.pk, "nope")

    def test_query_delivery(self):
        result = self.pipeline.query_delivery(self.order.pk)
        self.assertTrue(result.success)
        self.assertEqual(result.provider_transaction_id, f"SBX-{self.order.reference}")
