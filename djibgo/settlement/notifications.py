"""
User notifications.

Rows are written to the :class:`Notification` outbox inside their own
savepoint, after the financial state they describe; delivery is handed to
Celery once the surrounding transaction commits. A notification that cannot
be written or queued is logged and never rolls back the caller.
"""
import logging

from django.contrib.auth.models import User
from django.db import DatabaseError, transaction

from .models import Notification

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = 'payment_received'
PAYMENT_CONFIRMED = 'payment_confirmed'
PAYMENT_PENDING = 'payment_pending'
BOOKING_COMPLETED = 'booking_completed'
BOOKING_CANCELLED = 'booking_cancelled'
REFUND_ISSUED = 'refund_issued'
MANUAL_REFUND_REQUIRED = 'manual_refund_required'
WITHDRAWAL_REQUESTED = 'withdrawal_requested'
WITHDRAWAL_PROCESSING = 'withdrawal_processing'
WITHDRAWAL_COMPLETED = 'withdrawal_completed'
WITHDRAWAL_REJECTED = 'withdrawal_rejected'


def _queue_delivery(notification_id):
    from .tasks import deliver_notification

    try:
        deliver_notification.delay(str(notification_id))
    except Exception as e:
        # Row stays undelivered and is picked up by the next sweep.
        logger.error(f"Could not queue notification {notification_id}: {str(e)}")


def notify(user, notification_type, title, message, related_booking=None):
    """
    Record a notification and schedule its delivery.

    Returns:
        The Notification, or ``None`` when it could not be written
    """
    try:
        with transaction.atomic():
            notification = Notification.objects.create(
                user=user,
                type=notification_type,
                title=title,
                message=message,
                related_booking=related_booking,
            )
    except DatabaseError as e:
        logger.error(f"Failed to record {notification_type} notification for user {user.pk}: {str(e)}")
        return None

    transaction.on_commit(lambda: _queue_delivery(notification.notification_id))
    return notification


def notify_staff(notification_type, title, message, related_booking=None):
    try:
        with transaction.atomic():
            staff = list(User.objects.filter(is_staff=True, is_active=True))
    except DatabaseError as e:
        logger.error(f"Failed to look up staff for {notification_type} notification: {str(e)}")
        return []
    return [notify(user, notification_type, title, message, related_booking) for user in staff]
