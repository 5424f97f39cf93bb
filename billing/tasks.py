import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, ignore_result=True, max_retries=0)
def send_order_notification(self, order_id, event):
    """One attempt only; a lost notification never touches the order."""
    from billing.services.notification_service import send_order_email

    try:
        return send_order_email(order_id, event)
    except Exception:
        logger.exception("notification: send failed order=%s event=%s", order_id, event)
        return False


@shared_task(bind=True, ignore_result=True)
def process_webhook_event(self, event_id):
    from billing.services.webhook_service import process_event

    return process_event(event_id)
