import json
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase

from billing.exceptions import PurchaseValidationError, WebhookAuthenticationError
from billing.gateways.paystack import compute_signature, to_minor_units
from billing.models import Order, WalletLedgerEntry, WebhookEvent
from billing.services import wallet_service, webhook_service
from billing.tests.helpers import MTN_PHONE, WEBHOOK_SECRET, make_bundle, make_pipeline, make_user


def charge_event(event_type, reference, amount, **data):
    body = json.dumps({
        "event": event_type,
        "data": {
            "reference": reference,
            "status": "success" if event_type == "charge.success" else "failed",
            "amount": to_minor_units(amount),
            "currency": "GHS",
            "channel": "mobile_money",
            **data,
        },
    }).encode("utf-8")
    return body, compute_signature(WEBHOOK_SECRET, body)


class WebhookReceiveTests(TestCase):
    def setUp(self):
        self.pipeline, self.payment, self.delivery = make_pipeline()

    def test_bad_signature_rejected_without_state_change(self):
        body, _ = charge_event("charge.success", "OE-1", Decimal("5.00"))
        with self.assertRaises(WebhookAuthenticationError):
            webhook_service.receive(body, "deadbeef", gateway=self.payment)
        with self.assertRaises(WebhookAuthenticationError):
            webhook_service.receive(body, "", gateway=self.payment)
        self.assertFalse(WebhookEvent.objects.exists())

    def test_signature_checked_on_raw_bytes(self):
        body, signature = charge_event("charge.success", "OE-1", Decimal("5.00"))
        reserialized = json.dumps(json.loads(body), indent=2).encode("utf-8")
        with self.assertRaises(WebhookAuthenticationError):
            webhook_service.receive(reserialized, signature, gateway=self.payment)

    def test_malformed_json_after_valid_signature(self):
        body = b"not json"
        with self.assertRaises(PurchaseValidationError):
            webhook_service.receive(body, compute_signature(WEBHOOK_SECRET, body), gateway=self.payment)

    def test_duplicate_body_stored_once_and_enqueued_once(self):
        body, signature = charge_event("charge.success", "OE-1", Decimal("5.00"))
        with patch("billing.services.webhook_service.enqueue") as enqueue:
            with self.captureOnCommitCallbacks(execute=True):
                event, created = webhook_service.receive(body, signature, gateway=self.payment)
            with self.captureOnCommitCallbacks(execute=True):
                again, created_again = webhook_service.receive(body, signature, gateway=self.payment)
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(event.pk, again.pk)
        enqueue.assert_called_once_with(event.pk)

    def test_enqueue_failure_leaves_event_for_replay(self):
        body, signature = charge_event("charge.success", "OE-1", Decimal("5.00"))
        with patch("billing.tasks.process_webhook_event.delay", side_effect=ConnectionError("broker down")):
            with self.captureOnCommitCallbacks(execute=True):
                event, _ = webhook_service.receive(body, signature, gateway=self.payment)
        event.refresh_from_db()
        self.assertEqual(event.status, WebhookEvent.Status.RECEIVED)
        self.assertIn(event, webhook_service.pending_events())


class WebhookProcessingTests(TestCase):
    def setUp(self):
        self.user = make_user()
        self.bundle = make_bundle()
        self.pipeline, self.payment, self.delivery = make_pipeline()
        self.order, _ = self.pipeline.initialize_purchase(self.user, self.bundle.pk, MTN_PHONE, "card")

    def _deliver(self, body, signature):
        event, _ = webhook_service.receive(body, signature, gateway=self.payment, dispatch=False)
        return event, webhook_service.process_event(event.pk, pipeline=self.pipeline)

    def test_duplicate_webhook_delivers_once(self):
        body, signature = charge_event("charge.success", self.order.reference, self.order.amount)
        event, status = self._deliver(body, signature)
        _, status_again = self._deliver(body, signature)
        self.assertEqual(status, WebhookEvent.Status.PROCESSED)
        self.assertEqual(status_again, WebhookEvent.Status.PROCESSED)
        self.assertEqual(self.delivery.call_count, 1)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.COMPLETED)
        self.assertEqual(self.order.payment_channel, "mobile_money")

    def test_redelivered_with_different_bytes_is_still_idempotent(self):
        body, signature = charge_event("charge.success", self.order.reference, self.order.amount)
        other, other_signature = charge_event("charge.success", self.order.reference, self.order.amount, id=2)
        self._deliver(body, signature)
        self._deliver(other, other_signature)
        self.assertEqual(WebhookEvent.objects.count(), 2)
        self.assertEqual(self.delivery.call_count, 1)

    def test_charge_failed_marks_payment_failed(self):
        body, signature = charge_event("charge.failed", self.order.reference, self.order.amount)
        self._deliver(body, signature)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.delivery.call_count, 0)

    def test_unknown_event_type_ignored(self):
        body, signature = charge_event("transfer.success", self.order.reference, self.order.amount)
        event, status = self._deliver(body, signature)
        self.assertEqual(status, WebhookEvent.Status.IGNORED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_unknown_reference_ignored(self):
        body, signature = charge_event("charge.success", "OE-UNKNOWN", Decimal("5.00"))
        _, status = self._deliver(body, signature)
        self.assertEqual(status, WebhookEvent.Status.IGNORED)

    def test_topup_event_credits_wallet_once(self):
        entry, _ = wallet_service.start_topup(self.user, "40.00", self.payment)
        body, signature = charge_event("charge.success", entry.reference, Decimal("40.00"))
        self._deliver(body, signature)
        self._deliver(body, signature)
        entry.refresh_from_db()
        self.assertEqual(entry.status, WalletLedgerEntry.Status.COMPLETED)
        self.assertEqual(wallet_service.balance_of(self.user), Decimal("40.00"))
        self.assertEqual(self.delivery.call_count, 0)

    def test_process_is_skipped_for_finished_events(self):
        body, signature = charge_event("charge.success", self.order.reference, self.order.amount)
        event, _ = self._deliver(body, signature)
        webhook_service.process_event(event.pk, pipeline=self.pipeline)
        event.refresh_from_db()
        self.assertEqual(event.attempts, 1)
