"""
Order notifications. Best effort and at most once: events are handed to Celery after
the order change commits, and nothing here can fail or roll back an order.
"""
import logging

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction

from billing import config

logger = logging.getLogger(__name__)

SUBJECTS = {
    "delivered": "Your data bundle has been delivered",
    "delivery_failed": "We could not deliver your data bundle",
    "payment_failed": "Your payment was not successful",
    "refunded": "Your order has been refunded",
}


class OrderNotifier:
    """Enqueues send_order_notification once the surrounding transaction commits."""

    def order_event(self, order, event: str) -> None:
        if event not in SUBJECTS:
            logger.warning("notification: unknown event %s ref=%s", event, order.reference)
            return
        order_id = order.pk
        transaction.on_commit(lambda: self._enqueue(order_id, event))

    def _enqueue(self, order_id, event):
        from billing.tasks import send_order_notification

        try:
            send_order_notification.delay(order_id, event)
        except Exception as e:
            logger.warning("notification: enqueue failed order=%s event=%s error=%s", order_id, event, e)


def _body(order, event: str) -> str:
    amount = f"{config.CURRENCY} {order.amount}"
    if event == "delivered":
        return (
            f"{order.data_amount} {order.network} data has been sent to {order.recipient_phone}.\n"
            f"Reference: {order.reference}\nAmount paid: {amount}"
        )
    if event == "delivery_failed":
        if order.is_wallet_funded:
            return (
                f"We could not deliver {order.data_amount} to {order.recipient_phone}. "
                f"{amount} has been returned to your wallet.\nReference: {order.reference}"
            )
        return (
            f"Your payment of {amount} was received but delivery of {order.data_amount} to "
            f"{order.recipient_phone} failed. Our team will retry it.\nReference: {order.reference}"
        )
    if event == "payment_failed":
        return f"Your payment for order {order.reference} did not go through. You have not been charged."
    return f"Order {order.reference} has been refunded. {amount} has been credited to your wallet."


def send_order_email(order_id, event: str) -> bool:
    """Send one notification email. Returns False when there is nobody to send to."""
    from billing.models import Order

    order = Order.objects.select_related("user").get(pk=order_id)
    recipient = order.buyer_email or (order.user.email if order.user else "")
    if not recipient:
        return False
    send_mail(
        subject=SUBJECTS[event],
        message=_body(order, event),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[recipient],
        fail_silently=False,
    )
    logger.info("notification: sent %s ref=%s", event, order.reference)
    return True
