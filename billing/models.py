"""
Billing models. Order is the purchase audit trail (never deleted, only transitioned).
WalletLedgerEntry is the append-only wallet log; wallet_service is the only writer.
WebhookEvent is the durable record of an authenticated payment notification.
"""
import secrets
import time

from django.conf import settings
from django.db import models

from billing import config

BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_reference(prefix: str = config.ORDER_REFERENCE_PREFIX) -> str:
    """prefix + base36 millisecond timestamp + 6 base36 random chars, upper-cased."""
    timestamp = to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(BASE36) for _ in range(6))
    return f"{prefix}-{timestamp}-{random_part}".upper()


class Order(models.Model):
    """One purchase attempt. status, payment_status and delivery_status move independently."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        SUCCESS = "success", "Success"
        FAILED = "failed", "Failed"

    class DeliveryStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"  # delivery call in flight (claimed)
        DELIVERED = "delivered", "Delivered"
        FAILED = "failed", "Failed"

    class PaymentMethod(models.TextChoices):
        CARD = "card", "Card"
        MOBILE_MONEY = "mobile_money", "Mobile money"
        WALLET = "wallet", "Wallet"

    reference = models.CharField(max_length=40, unique=True)
    gateway_reference = models.CharField(max_length=100, blank=True, db_index=True)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="orders",
    )
    buyer_email = models.EmailField(blank=True)
    recipient_phone = models.CharField(max_length=20)
    network = models.CharField(max_length=16)

    # Snapshot taken at purchase time; never recomputed from the catalog
    bundle = models.ForeignKey("catalog.Bundle", on_delete=models.PROTECT, related_name="orders")
    data_amount = models.CharField(max_length=20)
    carrier_plan_code = models.CharField(max_length=64)
    amount = models.DecimalField(max_digits=12, decimal_places=2)

    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices)
    payment_channel = models.CharField(max_length=50, blank=True)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    delivery_status = models.CharField(max_length=20, choices=DeliveryStatus.choices, default=DeliveryStatus.PENDING)

    retry_count = models.PositiveIntegerField(default=0)
    payment_response = models.JSONField(null=True, blank=True)
    provider_response = models.JSONField(null=True, blank=True)
    provider_transaction_id = models.CharField(max_length=100, blank=True)
    error_message = models.TextField(blank=True)

    delivery_claimed_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_reason = models.TextField(blank=True)

    # Bumped on every state transition; writes are conditional on the version read
    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "-created_at"], name="billing_order_user_created_idx"),
            models.Index(fields=["status"], name="billing_order_status_idx"),
        ]

    def __str__(self):
        return f"Order {self.reference} ({self.status})"

    @property
    def is_wallet_funded(self) -> bool:
        return self.payment_method == self.PaymentMethod.WALLET


class WalletLedgerEntry(models.Model):
    """Ledger entry for every wallet balance change. Never update a balance without creating one."""

    class Direction(models.TextChoices):
        CREDIT = "credit", "Credit"
        DEBIT = "debit", "Debit"

    class Category(models.TextChoices):
        TOPUP = "topup", "Top-up"
        PURCHASE = "purchase", "Purchase"
        REFUND = "refund", "Refund"
        REFERRAL = "referral", "Referral"
        BONUS = "bonus", "Bonus"
        WITHDRAWAL = "withdrawal", "Withdrawal"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="wallet_entries",
    )
    direction = models.CharField(max_length=10, choices=Direction.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    balance_before = models.DecimalField(max_digits=12, decimal_places=2)
    balance_after = models.DecimalField(max_digits=12, decimal_places=2)
    category = models.CharField(max_length=20, choices=Category.choices)
    reference = models.CharField(max_length=64, unique=True)
    gateway_reference = models.CharField(max_length=100, blank=True)
    order = models.ForeignKey(
        "billing.Order",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="wallet_entries",
    )
    description = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.COMPLETED)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        verbose_name_plural = "Wallet ledger entries"
        indexes = [
            models.Index(fields=["user", "-created_at"], name="billing_wallet_user_idx"),
            models.Index(fields=["category"], name="billing_wallet_category_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(amount__gt=0), name="billing_wallet_amount_positive"),
        ]

    def __str__(self):
        return f"WalletLedgerEntry user={self.user_id} {self.direction} {self.amount} {self.reference}"


class WebhookEvent(models.Model):
    """One authenticated payment-gateway notification, de-duplicated by raw body fingerprint."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    fingerprint = models.CharField(max_length=64, unique=True)
    event_type = models.CharField(max_length=100)
    reference = models.CharField(max_length=100, blank=True, db_index=True)
    payload = models.JSONField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.RECEIVED)
    error_message = models.TextField(blank=True)
    attempts = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"WebhookEvent {self.event_type} {self.reference} ({self.status})"
