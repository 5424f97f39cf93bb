"""
Wallet ledger. All balance changes go through here and create a WalletLedgerEntry.
Never modify wallet_balance outside this module.

The user row is locked (select_for_update) for the duration of each movement, so
concurrent debits on one wallet are serialized and the balance can never go negative.
"""
import logging
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction

from billing import config
from billing.exceptions import (
    DuplicateLedgerReference,
    InsufficientFunds,
    NotFound,
    ProviderError,
    PurchaseValidationError,
    WalletError,
)
from billing.gateways.base import GatewayError
from billing.models import WalletLedgerEntry, generate_reference

logger = logging.getLogger(__name__)

Direction = WalletLedgerEntry.Direction
Category = WalletLedgerEntry.Category
EntryStatus = WalletLedgerEntry.Status


def lock_user(user):
    """Re-read the user row under a row lock. Call inside transaction.atomic()."""
    return get_user_model().objects.select_for_update().get(pk=user.pk)


def _money(amount) -> Decimal:
    amount = Decimal(amount).quantize(Decimal("0.01"))
    if amount <= 0:
        raise WalletError("Amount must be positive.", context={"amount": str(amount)})
    return amount


def _write_entry(locked_user, *, direction, amount, category, reference, order=None, description="",
                 gateway_reference=""):
    before = locked_user.wallet_balance
    after = before + amount if direction == Direction.CREDIT else before - amount
    try:
        with transaction.atomic():
            entry = WalletLedgerEntry.objects.create(
                user=locked_user,
                direction=direction,
                amount=amount,
                balance_before=before,
                balance_after=after,
                category=category,
                reference=reference,
                gateway_reference=gateway_reference,
                order=order,
                description=description[:255],
                status=EntryStatus.COMPLETED,
            )
    except IntegrityError:
        raise DuplicateLedgerReference(
            "This wallet movement was already recorded.", context={"reference": reference}
        )
    locked_user.wallet_balance = after
    locked_user.save(update_fields=["wallet_balance"])
    logger.info(
        "wallet: %s user=%s amount=%s ref=%s balance=%s",
        direction, locked_user.pk, amount, reference, after,
    )
    return entry


@transaction.atomic()
def credit(user, amount, category, reference, order=None, description="", gateway_reference=""):
    """Add money to the wallet. Returns the completed entry."""
    amount = _money(amount)
    locked = lock_user(user)
    entry = _write_entry(
        locked,
        direction=Direction.CREDIT,
        amount=amount,
        category=category,
        reference=reference,
        order=order,
        description=description,
        gateway_reference=gateway_reference,
    )
    user.wallet_balance = locked.wallet_balance
    return entry


@transaction.atomic()
def debit(user, amount, category, reference, order=None, description=""):
    """
    Take money from the wallet. Raises InsufficientFunds (and writes nothing) when the
    live balance is below amount.
    """
    amount = _money(amount)
    locked = lock_user(user)
    if locked.wallet_balance < amount:
        raise InsufficientFunds(required=amount, available=locked.wallet_balance)
    entry = _write_entry(
        locked,
        direction=Direction.DEBIT,
        amount=amount,
        category=category,
        reference=reference,
        order=order,
        description=description,
    )
    user.wallet_balance = locked.wallet_balance
    return entry


def balance_of(user) -> Decimal:
    return get_user_model().objects.values_list("wallet_balance", flat=True).get(pk=user.pk)


def history(user, category=None, direction=None):
    """Completed movements, newest first."""
    entries = WalletLedgerEntry.objects.filter(user=user, status=EntryStatus.COMPLETED)
    if category:
        entries = entries.filter(category=category)
    if direction:
        entries = entries.filter(direction=direction)
    return entries.select_related("order")


def is_topup_reference(reference: str) -> bool:
    return (reference or "").upper().startswith(f"{config.TOPUP_REFERENCE_PREFIX}-")


# --- Top-ups -------------------------------------------------------------------


def start_topup(user, amount, gateway, callback_url=""):
    """
    Record a pending top-up and open a payment for it. Nothing is credited until
    complete_topup sees a successful verification. Returns (entry, PaymentInitResult).
    """
    try:
        amount = Decimal(str(amount)).quantize(Decimal("0.01"))
    except ArithmeticError:
        raise PurchaseValidationError("Enter a valid amount.")
    if not amount.is_finite():
        raise PurchaseValidationError("Enter a valid amount.")
    if amount < config.MIN_TOPUP_AMOUNT:
        raise PurchaseValidationError(
            f"Minimum top-up is {config.CURRENCY} {config.MIN_TOPUP_AMOUNT}.",
            context={"minimum": str(config.MIN_TOPUP_AMOUNT)},
        )
    if amount > config.MAX_TOPUP_AMOUNT:
        raise PurchaseValidationError(
            f"Maximum top-up is {config.CURRENCY} {config.MAX_TOPUP_AMOUNT}.",
            context={"maximum": str(config.MAX_TOPUP_AMOUNT)},
        )

    reference = generate_reference(config.TOPUP_REFERENCE_PREFIX)
    balance = balance_of(user)
    entry = WalletLedgerEntry.objects.create(
        user=user,
        direction=Direction.CREDIT,
        amount=amount,
        balance_before=balance,
        balance_after=balance,
        category=Category.TOPUP,
        reference=reference,
        description="Wallet top-up",
        status=EntryStatus.PENDING,
    )
    try:
        init = gateway.initialize(
            email=user.email,
            amount=amount,
            reference=reference,
            callback_url=callback_url,
            channels=config.PAYMENT_CHANNELS["card"],
            metadata={"transactionType": "wallet_topup", "userId": user.pk},
        )
    except GatewayError as e:
        logger.warning("wallet: topup initialize failed ref=%s error=%s", reference, e.message)
        WalletLedgerEntry.objects.filter(pk=entry.pk).update(status=EntryStatus.FAILED)
        raise ProviderError("Could not start the top-up payment. Please try again.", phase="payment")

    entry.gateway_reference = init.gateway_reference
    entry.save(update_fields=["gateway_reference", "updated_at"])
    return entry, init


@transaction.atomic()
def complete_topup(reference, verification):
    """
    Apply a gateway verification to a pending top-up. Credits the wallet exactly once;
    entries that already left pending are returned unchanged.
    """
    try:
        entry = WalletLedgerEntry.objects.select_for_update().get(
            reference=reference, category=Category.TOPUP
        )
    except WalletLedgerEntry.DoesNotExist:
        raise NotFound("Top-up not found.", context={"reference": reference})

    if entry.status != EntryStatus.PENDING:
        return entry

    mismatch = verification.succeeded and (
        (verification.amount is not None and verification.amount != entry.amount)
        or (verification.currency and verification.currency != config.CURRENCY)
    )
    if verification.failed or mismatch:
        if mismatch:
            logger.warning(
                "wallet: topup amount mismatch ref=%s expected=%s got=%s %s",
                reference, entry.amount, verification.amount, verification.currency,
            )
        entry.status = EntryStatus.FAILED
        entry.save(update_fields=["status", "updated_at"])
        return entry

    if not verification.succeeded:
        return entry

    locked = lock_user(entry.user)
    entry.balance_before = locked.wallet_balance
    entry.balance_after = locked.wallet_balance + entry.amount
    entry.status = EntryStatus.COMPLETED
    entry.save(update_fields=["balance_before", "balance_after", "status", "updated_at"])
    locked.wallet_balance = entry.balance_after
    locked.save(update_fields=["wallet_balance"])
    logger.info("wallet: topup completed ref=%s user=%s amount=%s", reference, locked.pk, entry.amount)
    return entry


def verify_topup(reference, gateway, user=None):
    """Client poll path: ask the gateway and complete the top-up if it was paid."""
    entry = WalletLedgerEntry.objects.filter(reference=reference, category=Category.TOPUP).first()
    if entry is None or (user is not None and entry.user_id != user.pk):
        raise NotFound("Top-up not found.", context={"reference": reference})
    if entry.status != EntryStatus.PENDING:
        return entry
    try:
        verification = gateway.verify(reference)
    except GatewayError as e:
        logger.warning("wallet: topup verify failed ref=%s error=%s", reference, e.message)
        raise ProviderError("Could not confirm the top-up payment. Please try again.", phase="payment")
    return complete_topup(reference, verification)
