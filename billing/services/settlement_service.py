"""
Settlement pipeline: drives an Order from payment confirmation through delivery,
and compensates wallet-funded orders whose delivery fails.

Per-order serialization uses the Order.version column. Every state change is a
conditional UPDATE on (pk, version[, expected statuses]); the row that wins moves the
order and bumps version, losers reload and recompute. Delivery is claimed by moving
delivery_status to processing, so only one caller ever talks to the provider for a
given attempt, and no database lock is held while it does.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from billing import config
from billing.exceptions import (
    ConcurrencyConflict,
    InsufficientFunds,
    NotFound,
    ProviderError,
    PurchaseValidationError,
)
from billing.gateways.base import DeliveryResult, GatewayError
from billing.models import Order, WalletLedgerEntry, generate_reference
from billing.services import network_service, wallet_service
from catalog.services import get_bundle

logger = logging.getLogger(__name__)

Status = Order.Status
PaymentStatus = Order.PaymentStatus
DeliveryStatus = Order.DeliveryStatus
PaymentMethod = Order.PaymentMethod

PHASE_PAYMENT = "payment"
PHASE_DELIVERY = "delivery"
PHASE_REFUND = "refund"


@dataclass
class SettlementOutcome:
    order: Order
    success: bool
    phase: Optional[str] = None
    message: str = ""
    new_balance: Optional[Decimal] = None


def wallet_reversal_reference(order) -> str:
    return f"{config.WALLET_REVERSAL_PREFIX}-{order.reference}"


def admin_refund_reference(order) -> str:
    return f"{config.ADMIN_REFUND_PREFIX}-{order.reference}"


def retry_reference(order, attempt: int) -> str:
    """Idempotency reference sent to the provider for the nth operator retry."""
    return f"{order.reference}-R{attempt}"


class SettlementPipeline:
    """
    Entry points: initialize_purchase, verify_payment (client poll), handle_payment_event
    (webhook), retry_delivery (operator), purchase_with_wallet, refund_order (operator),
    query_delivery (read-only).
    """

    def __init__(self, payment_gateway, delivery_gateway, notifier=None):
        self.payment_gateway = payment_gateway
        self.delivery_gateway = delivery_gateway
        self.notifier = notifier

    # --- Order state helpers ---------------------------------------------------

    def _transition(self, order, filters=None, **changes) -> bool:
        """Conditional write against the version we read. True if we won."""
        updated = Order.objects.filter(pk=order.pk, version=order.version, **(filters or {})).update(
            version=F("version") + 1,
            updated_at=timezone.now(),
            **changes,
        )
        order.refresh_from_db()
        return updated == 1

    def _load(self, **lookup) -> Order:
        try:
            return Order.objects.select_related("bundle", "user").get(**lookup)
        except Order.DoesNotExist:
            raise NotFound("Order not found.", context={k: str(v) for k, v in lookup.items()})

    def _load_by_reference(self, reference) -> Order:
        """Our reference or the gateway's."""
        order = (
            Order.objects.select_related("bundle", "user")
            .filter(Q(reference=reference) | Q(gateway_reference=reference))
            .first()
        )
        if order is None:
            raise NotFound("Order not found.", context={"reference": str(reference)})
        return order

    def _notify(self, order, event: str):
        if self.notifier is not None:
            self.notifier.order_event(order, event)

    def _projection(self, order, message="") -> SettlementOutcome:
        """Current-state answer for calls that find nothing left to do."""
        if order.status == Status.REFUNDED:
            return SettlementOutcome(order, success=False, phase=PHASE_REFUND, message=message or "Order was refunded.")
        if order.payment_status == PaymentStatus.FAILED:
            return SettlementOutcome(order, success=False, phase=PHASE_PAYMENT, message=message or "Payment failed.")
        if order.delivery_status == DeliveryStatus.DELIVERED:
            return SettlementOutcome(order, success=True, message=message or "Data bundle delivered.")
        if order.is_wallet_funded and order.status == Status.FAILED:
            return SettlementOutcome(
                order, success=False, phase=PHASE_DELIVERY, message=message or "Delivery failed. Your wallet was refunded."
            )
        if order.delivery_status == DeliveryStatus.FAILED:
            return SettlementOutcome(
                order,
                success=False,
                phase=PHASE_DELIVERY,
                message=message or "Payment received but delivery failed. Our team will retry it.",
            )
        if order.delivery_status == DeliveryStatus.PROCESSING:
            return SettlementOutcome(order, success=False, message=message or "Delivery is in progress.")
        return SettlementOutcome(order, success=False, message=message or "Payment is still pending.")

    # --- Purchase via payment gateway -------------------------------------------

    def initialize_purchase(self, user, bundle_id, recipient_phone, payment_method, email=None, callback_url=""):
        """
        Validate, create a pending order and open a gateway payment for it.
        Returns (order, PaymentInitResult).
        """
        if payment_method not in config.PAYMENT_METHODS:
            raise PurchaseValidationError(
                "Choose a valid payment method.",
                context={"allowed": list(config.PAYMENT_METHODS)},
            )
        if not recipient_phone:
            raise PurchaseValidationError("Recipient phone is required.")
        email = (email or getattr(user, "email", "") or "").strip().lower()
        if not email:
            raise PurchaseValidationError("An email address is required for card and mobile money payments.")

        bundle = self._active_bundle(bundle_id)
        phone = network_service.ensure_network_matches(recipient_phone, bundle.network)

        order = Order.objects.create(
            reference=generate_reference(),
            user=user if getattr(user, "is_authenticated", False) else None,
            buyer_email=email,
            recipient_phone=phone,
            network=bundle.network,
            bundle=bundle,
            data_amount=bundle.data_amount,
            carrier_plan_code=bundle.vtu_code,
            amount=bundle.retail_price,
            payment_method=payment_method,
        )
        try:
            init = self.payment_gateway.initialize(
                email=email,
                amount=order.amount,
                reference=order.reference,
                callback_url=callback_url,
                channels=config.PAYMENT_CHANNELS[payment_method],
                metadata={
                    "orderId": order.pk,
                    "bundleId": bundle.pk,
                    "recipientPhone": phone,
                    "network": bundle.network,
                    "transactionType": "bundle_purchase",
                },
            )
        except GatewayError as e:
            logger.warning("settlement: initialize failed ref=%s error=%s", order.reference, e.message)
            self._transition(
                order,
                status=Status.FAILED,
                payment_status=PaymentStatus.FAILED,
                error_message=e.message,
                payment_response=_jsonable(e.raw),
            )
            raise ProviderError("Payment could not be started. Please try again.", phase=PHASE_PAYMENT)

        Order.objects.filter(pk=order.pk).update(gateway_reference=init.gateway_reference)
        order.gateway_reference = init.gateway_reference
        logger.info("settlement: initialized ref=%s amount=%s method=%s", order.reference, order.amount, payment_method)
        return order, init

    def _active_bundle(self, bundle_id):
        bundle = get_bundle(bundle_id)
        if bundle is None:
            raise NotFound("Bundle not found.", context={"bundle_id": str(bundle_id)})
        if not bundle.is_active:
            raise PurchaseValidationError("This bundle is not available.", context={"bundle_id": str(bundle_id)})
        return bundle

    def verify_payment(self, reference) -> SettlementOutcome:
        """Client poll after returning from the payment page. Safe to call repeatedly."""
        order = self._load_by_reference(reference)
        if order.payment_status != PaymentStatus.PENDING:
            return self._apply_payment(order, None)

        try:
            verification = self.payment_gateway.verify(order.gateway_reference or order.reference)
        except GatewayError as e:
            logger.warning("settlement: verify failed ref=%s error=%s", order.reference, e.message)
            Order.objects.filter(pk=order.pk, payment_status=PaymentStatus.PENDING).update(
                error_message=e.message, updated_at=timezone.now()
            )
            raise ProviderError("Could not confirm your payment yet. Please try again shortly.", phase=PHASE_PAYMENT)
        return self._apply_payment(order, verification)

    def handle_payment_event(self, reference, verification) -> SettlementOutcome:
        """Webhook path. verification is built from the authenticated event body."""
        order = self._load_by_reference(reference)
        return self._apply_payment(order, verification)

    def _apply_payment(self, order, verification) -> SettlementOutcome:
        for _ in range(config.SETTLEMENT_MAX_CONFLICT_RETRIES):
            if order.payment_status != PaymentStatus.PENDING:
                # Paid orders whose delivery never started (no claim yet) are picked up here
                if (
                    order.payment_status == PaymentStatus.SUCCESS
                    and order.delivery_status == DeliveryStatus.PENDING
                    and order.status == Status.PROCESSING
                ):
                    if self._claim(order, [DeliveryStatus.PENDING]):
                        return self._deliver(order, order.reference)
                    continue
                return self._projection(order)

            if verification is None:
                return self._projection(order)

            if verification.succeeded and not self._mismatch(order, verification):
                won = self._transition(
                    order,
                    filters={"payment_status": PaymentStatus.PENDING},
                    payment_status=PaymentStatus.SUCCESS,
                    status=Status.PROCESSING,
                    payment_channel=verification.channel[:50],
                    payment_response=_jsonable(verification.raw),
                    delivery_status=DeliveryStatus.PROCESSING,
                    delivery_claimed_at=timezone.now(),
                    error_message="",
                )
                if won:
                    logger.info("settlement: payment confirmed ref=%s channel=%s", order.reference, verification.channel)
                    return self._deliver(order, order.reference)
                continue

            if verification.failed or self._mismatch(order, verification):
                reason = "Payment amount or currency mismatch." if verification.succeeded else (
                    f"Payment {verification.status}."
                )
                won = self._transition(
                    order,
                    filters={"payment_status": PaymentStatus.PENDING},
                    payment_status=PaymentStatus.FAILED,
                    status=Status.FAILED,
                    payment_channel=verification.channel[:50],
                    payment_response=_jsonable(verification.raw),
                    error_message=reason,
                )
                if won:
                    logger.info("settlement: payment failed ref=%s reason=%s", order.reference, reason)
                    self._notify(order, "payment_failed")
                    return SettlementOutcome(order, success=False, phase=PHASE_PAYMENT, message="Payment failed.")
                continue

            # Gateway still processing (ongoing, queued, ...)
            return self._projection(order)

        raise ConcurrencyConflict()

    def _mismatch(self, order, verification) -> bool:
        if verification.amount is not None and verification.amount != order.amount:
            logger.warning(
                "settlement: amount mismatch ref=%s expected=%s got=%s",
                order.reference, order.amount, verification.amount,
            )
            return True
        if verification.currency and verification.currency.upper() != config.CURRENCY:
            logger.warning("settlement: currency mismatch ref=%s got=%s", order.reference, verification.currency)
            return True
        return False

    # --- Delivery ----------------------------------------------------------------

    def _claim(self, order, from_statuses, stale_before=None, **changes) -> bool:
        filters = {"delivery_status__in": from_statuses}
        if stale_before is not None:
            filters["delivery_claimed_at__lt"] = stale_before
        return self._transition(
            order,
            filters=filters,
            delivery_status=DeliveryStatus.PROCESSING,
            delivery_claimed_at=timezone.now(),
            **changes,
        )

    def _call_provider(self, order, idempotency_reference) -> DeliveryResult:
        logger.info(
            "settlement: delivering ref=%s provider=%s network=%s plan=%s",
            idempotency_reference, self.delivery_gateway.name, order.network, order.carrier_plan_code,
        )
        return self.delivery_gateway.purchase_data(
            network=order.network,
            phone=order.recipient_phone,
            plan_code=order.carrier_plan_code,
            reference=idempotency_reference,
        )

    def _deliver(self, order, idempotency_reference, on_failure=None) -> SettlementOutcome:
        """
        Call the provider for an order we hold the delivery claim on, then record the
        result. on_failure overrides the fields written when delivery fails.
        """
        result = self._call_provider(order, idempotency_reference)

        if result.success:
            won = self._transition(
                order,
                filters={"delivery_status": DeliveryStatus.PROCESSING},
                status=Status.COMPLETED,
                delivery_status=DeliveryStatus.DELIVERED,
                delivered_at=timezone.now(),
                provider_transaction_id=(result.provider_transaction_id or "")[:100],
                provider_response=_jsonable(result.raw),
                error_message="",
            )
            if not won:
                logger.error(
                    "settlement: delivered but claim lost ref=%s provider_txn=%s",
                    order.reference, result.provider_transaction_id,
                )
                return self._projection(order)
            logger.info("settlement: delivered ref=%s provider_txn=%s", order.reference, result.provider_transaction_id)
            self._notify(order, "delivered")
            return SettlementOutcome(order, success=True, message="Data bundle delivered.")

        changes = on_failure or {"status": Status.PROCESSING}
        won = self._transition(
            order,
            filters={"delivery_status": DeliveryStatus.PROCESSING},
            delivery_status=DeliveryStatus.FAILED,
            provider_response=_jsonable(result.raw),
            error_message=result.message or "Delivery failed.",
            **changes,
        )
        if not won:
            logger.error("settlement: delivery failure not recorded, claim lost ref=%s", order.reference)
            return self._projection(order)
        logger.warning("settlement: delivery failed ref=%s message=%s", order.reference, result.message)
        self._notify(order, "delivery_failed")
        return SettlementOutcome(
            order,
            success=False,
            phase=PHASE_DELIVERY,
            message="Payment received but delivery failed. Our team will retry it.",
        )

    def retry_delivery(self, order_id) -> SettlementOutcome:
        """
        Operator retry of a paid, undelivered order. Never re-verifies payment. A claim
        older than DELIVERY_CLAIM_TIMEOUT_SECONDS is treated as abandoned and taken over.
        """
        order = self._load(pk=order_id)
        for _ in range(config.SETTLEMENT_MAX_CONFLICT_RETRIES):
            if order.delivery_status == DeliveryStatus.DELIVERED:
                return self._projection(order, message="Order was already delivered.")
            if order.payment_status != PaymentStatus.SUCCESS:
                raise PurchaseValidationError(
                    "Only paid orders can be retried.", context={"payment_status": order.payment_status}
                )
            if order.status == Status.REFUNDED or (order.is_wallet_funded and order.status == Status.FAILED):
                raise PurchaseValidationError(
                    "This order was refunded and cannot be retried.", context={"status": order.status}
                )

            attempt = order.retry_count + 1
            if order.delivery_status == DeliveryStatus.PROCESSING:
                stale_before = timezone.now() - timedelta(seconds=config.DELIVERY_CLAIM_TIMEOUT_SECONDS)
                if order.delivery_claimed_at and order.delivery_claimed_at >= stale_before:
                    return self._projection(order, message="Delivery is already in progress.")
                claimed = self._claim(
                    order, [DeliveryStatus.PROCESSING], stale_before=stale_before, retry_count=attempt
                )
            else:
                claimed = self._claim(order, [DeliveryStatus.FAILED, DeliveryStatus.PENDING], retry_count=attempt)

            if claimed:
                logger.info("settlement: retry #%s ref=%s", attempt, order.reference)
                return self._deliver(order, retry_reference(order, attempt))

        raise ConcurrencyConflict()

    def query_delivery(self, order_id) -> DeliveryResult:
        """Ask the provider what happened to the latest delivery attempt. Changes nothing."""
        order = self._load(pk=order_id)
        reference = retry_reference(order, order.retry_count) if order.retry_count else order.reference
        return self.delivery_gateway.query_status(reference)

    def provider_balance(self):
        try:
            return self.delivery_gateway.check_balance()
        except GatewayError as e:
            raise ProviderError("Could not fetch the provider balance.", phase=PHASE_DELIVERY, context={"detail": e.message})

    # --- Wallet-funded purchase -------------------------------------------------

    def purchase_with_wallet(self, user, bundle_id, recipient_phone) -> SettlementOutcome:
        """
        Debit, then deliver. The debit and the order are written together; a failed
        delivery is reversed with a compensating credit and the order is marked failed.
        """
        if not getattr(user, "is_authenticated", False):
            raise PurchaseValidationError("Sign in to pay from your wallet.")
        if not recipient_phone:
            raise PurchaseValidationError("Recipient phone is required.")
        bundle = self._active_bundle(bundle_id)
        phone = network_service.ensure_network_matches(recipient_phone, bundle.network)

        with transaction.atomic():
            locked = wallet_service.lock_user(user)
            if locked.wallet_balance < bundle.retail_price:
                raise InsufficientFunds(required=bundle.retail_price, available=locked.wallet_balance)
            order = Order.objects.create(
                reference=generate_reference(),
                user=user,
                buyer_email=user.email,
                recipient_phone=phone,
                network=bundle.network,
                bundle=bundle,
                data_amount=bundle.data_amount,
                carrier_plan_code=bundle.vtu_code,
                amount=bundle.retail_price,
                payment_method=PaymentMethod.WALLET,
                payment_channel="wallet",
                status=Status.PROCESSING,
                payment_status=PaymentStatus.SUCCESS,
                delivery_status=DeliveryStatus.PROCESSING,
                delivery_claimed_at=timezone.now(),
            )
            wallet_service.debit(
                user,
                order.amount,
                WalletLedgerEntry.Category.PURCHASE,
                reference=order.reference,
                order=order,
                description=f"{order.data_amount} {order.network} to {order.recipient_phone}",
            )
        logger.info("settlement: wallet purchase ref=%s user=%s amount=%s", order.reference, user.pk, order.amount)

        result = self._call_provider(order, order.reference)
        if result.success:
            won = self._transition(
                order,
                filters={"delivery_status": DeliveryStatus.PROCESSING},
                status=Status.COMPLETED,
                delivery_status=DeliveryStatus.DELIVERED,
                delivered_at=timezone.now(),
                provider_transaction_id=(result.provider_transaction_id or "")[:100],
                provider_response=_jsonable(result.raw),
            )
            if not won:
                logger.error("settlement: wallet delivery recorded late ref=%s", order.reference)
                outcome = self._projection(order)
                outcome.new_balance = wallet_service.balance_of(user)
                return outcome
            self._notify(order, "delivered")
            return SettlementOutcome(
                order, success=True, message="Data bundle delivered.", new_balance=wallet_service.balance_of(user)
            )

        self._compensate_wallet_order(order, result)
        self._notify(order, "delivery_failed")
        raise ProviderError(
            "Delivery failed. Your wallet has been refunded.",
            phase=PHASE_DELIVERY,
            context={
                "reference": order.reference,
                "refunded": str(order.amount),
                "new_balance": str(wallet_service.balance_of(user)),
            },
        )

    @transaction.atomic()
    def _compensate_wallet_order(self, order, result):
        won = self._transition(
            order,
            filters={"delivery_status": DeliveryStatus.PROCESSING},
            status=Status.FAILED,
            delivery_status=DeliveryStatus.FAILED,
            provider_response=_jsonable(result.raw),
            error_message=result.message or "Delivery failed.",
        )
        if not won:
            # Nobody else may claim an in-flight wallet order; refuse to double-credit
            raise ConcurrencyConflict()
        wallet_service.credit(
            order.user,
            order.amount,
            WalletLedgerEntry.Category.REFUND,
            reference=wallet_reversal_reference(order),
            order=order,
            description=f"Reversal for failed delivery {order.reference}",
        )
        logger.warning("settlement: wallet delivery failed, reversed ref=%s", order.reference)

    # --- Operator refund ----------------------------------------------------------

    def refund_order(self, order_id, reason="") -> SettlementOutcome:
        """Credit the order amount back to the buyer's wallet and mark the order refunded."""
        order = self._load(pk=order_id)
        if order.status == Status.REFUNDED:
            raise PurchaseValidationError("This order was already refunded.", context={"status": order.status})
        if order.payment_status != PaymentStatus.SUCCESS:
            raise PurchaseValidationError("Only paid orders can be refunded.", context={"payment_status": order.payment_status})
        if order.is_wallet_funded and order.status == Status.FAILED:
            raise PurchaseValidationError("This order's wallet payment was already reversed.")
        if order.user is None:
            raise PurchaseValidationError("Guest orders have no wallet to refund into.")
        if order.delivery_status == DeliveryStatus.PROCESSING:
            raise PurchaseValidationError("Delivery is in progress. Try again once it settles.")

        with transaction.atomic():
            won = self._transition(
                order,
                filters={
                    "status__in": [Status.COMPLETED, Status.FAILED, Status.PROCESSING],
                    "delivery_status__in": [DeliveryStatus.DELIVERED, DeliveryStatus.FAILED],
                },
                status=Status.REFUNDED,
                refunded_at=timezone.now(),
                refund_reason=reason or "",
            )
            if not won:
                if order.status == Status.REFUNDED:
                    raise PurchaseValidationError("This order was already refunded.")
                raise ConcurrencyConflict()
            wallet_service.credit(
                order.user,
                order.amount,
                WalletLedgerEntry.Category.REFUND,
                reference=admin_refund_reference(order),
                order=order,
                description=f"Refund for {order.reference}",
            )
        logger.info("settlement: refunded ref=%s amount=%s", order.reference, order.amount)
        self._notify(order, "refunded")
        return SettlementOutcome(
            order,
            success=True,
            phase=PHASE_REFUND,
            message="Order refunded to wallet.",
            new_balance=wallet_service.balance_of(order.user),
        )


def _jsonable(raw):
    """Provider payloads go into JSONFields; anything else is stored as text."""
    if raw is None or isinstance(raw, (dict, list, str, int, float, bool)):
        return raw
    return str(raw)


def get_pipeline() -> SettlementPipeline:
    from billing.gateways.registry import get_delivery_gateway, get_payment_gateway
    from billing.services.notification_service import OrderNotifier

    return SettlementPipeline(get_payment_gateway(), get_delivery_gateway(), OrderNotifier())
