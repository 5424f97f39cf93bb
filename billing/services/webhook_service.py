"""
Webhook ingress. The signature is checked over the raw body before anything is parsed;
accepted events are stored (de-duplicated by body fingerprint) and processed by a
Celery task after commit, so the gateway gets its 200 as soon as the row is durable.
"""
import hashlib
import json
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from billing.exceptions import BillingError, NotFound, PurchaseValidationError, WebhookAuthenticationError
from billing.models import WebhookEvent
from billing.services import wallet_service

logger = logging.getLogger(__name__)

TOPUP_TRANSACTION_TYPE = "wallet_topup"


def fingerprint(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def receive(raw_body: bytes, signature: str, gateway=None, dispatch=True):
    """
    Authenticate and store one webhook delivery. Returns (event, created); created is
    False for a byte-identical redelivery, which is acknowledged but not processed again.
    With dispatch=False the caller is responsible for calling process_event.
    """
    if gateway is None:
        from billing.gateways.registry import get_payment_gateway

        gateway = get_payment_gateway()

    if not signature or not gateway.verify_webhook_signature(raw_body, signature):
        logger.warning("webhook: signature verification failed")
        raise WebhookAuthenticationError()

    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("webhook: malformed JSON body")
        raise PurchaseValidationError("Malformed webhook body.")
    if not isinstance(payload, dict):
        raise PurchaseValidationError("Malformed webhook body.")

    parsed = gateway.parse_event(payload)
    with transaction.atomic():
        event, created = WebhookEvent.objects.get_or_create(
            fingerprint=fingerprint(raw_body),
            defaults={
                "event_type": parsed.event_type[:100],
                "reference": parsed.reference[:100],
                "payload": payload,
            },
        )
        if created and dispatch:
            event_id = event.pk
            transaction.on_commit(lambda: enqueue(event_id))

    if created:
        logger.info("webhook: received %s ref=%s id=%s", event.event_type, event.reference, event.pk)
    else:
        logger.info("webhook: duplicate %s ref=%s id=%s", event.event_type, event.reference, event.pk)
    return event, created


def enqueue(event_id) -> bool:
    """Hand an event to the worker. A broker outage leaves it in received for replay."""
    from billing.tasks import process_webhook_event

    try:
        process_webhook_event.delay(event_id)
    except Exception as e:
        logger.warning("webhook: enqueue failed id=%s error=%s", event_id, e)
        return False
    return True


def _finish(event, status, error_message=""):
    WebhookEvent.objects.filter(pk=event.pk).update(
        status=status, error_message=error_message, processed_at=timezone.now()
    )
    event.status = status
    event.error_message = error_message


def process_event(event_id, pipeline=None) -> str:
    """
    Route one stored event: charge events go to the settlement pipeline, or to the
    wallet for top-up references. Returns the event's final status.
    """
    event = WebhookEvent.objects.get(pk=event_id)
    if event.status in (WebhookEvent.Status.PROCESSED, WebhookEvent.Status.IGNORED):
        return event.status
    WebhookEvent.objects.filter(pk=event.pk).update(attempts=F("attempts") + 1)

    if pipeline is None:
        from billing.services.settlement_service import get_pipeline

        pipeline = get_pipeline()

    parsed = pipeline.payment_gateway.parse_event(event.payload)
    if parsed.kind is None:
        logger.info("webhook: ignoring event type %s id=%s", parsed.event_type, event.pk)
        _finish(event, WebhookEvent.Status.IGNORED, f"Unhandled event type {parsed.event_type!r}.")
        return event.status
    if not parsed.reference:
        logger.warning("webhook: %s without reference id=%s", parsed.event_type, event.pk)
        _finish(event, WebhookEvent.Status.IGNORED, "Event has no reference.")
        return event.status

    metadata = parsed.verification.metadata if parsed.verification else {}
    try:
        if wallet_service.is_topup_reference(parsed.reference) or metadata.get("transactionType") == TOPUP_TRANSACTION_TYPE:
            entry = wallet_service.complete_topup(parsed.reference, parsed.verification)
            logger.info("webhook: topup ref=%s status=%s", parsed.reference, entry.status)
        else:
            outcome = pipeline.handle_payment_event(parsed.reference, parsed.verification)
            logger.info(
                "webhook: order ref=%s status=%s delivery=%s",
                parsed.reference, outcome.order.status, outcome.order.delivery_status,
            )
    except NotFound:
        logger.warning("webhook: unknown reference %s id=%s", parsed.reference, event.pk)
        _finish(event, WebhookEvent.Status.IGNORED, "Unknown reference.")
        return event.status
    except BillingError as e:
        logger.warning("webhook: processing failed ref=%s error=%s", parsed.reference, e.message)
        _finish(event, WebhookEvent.Status.FAILED, e.message)
        return event.status
    except Exception as e:
        logger.exception("webhook: unexpected error ref=%s id=%s", parsed.reference, event.pk)
        _finish(event, WebhookEvent.Status.FAILED, str(e)[:1000])
        raise

    _finish(event, WebhookEvent.Status.PROCESSED)
    return event.status


def pending_events(include_failed=True):
    statuses = [WebhookEvent.Status.RECEIVED]
    if include_failed:
        statuses.append(WebhookEvent.Status.FAILED)
    return WebhookEvent.objects.filter(status__in=statuses).order_by("created_at", "id")
