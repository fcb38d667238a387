from celery import shared_task
from datetime import timedelta
from django.conf import settings
from django.db import transaction
from django.utils import timezone
import logging
import requests

from .exceptions import LedgerIntegrityError, SettlementError

logger = logging.getLogger(__name__)


@shared_task(bind=True, autoretry_for=(Exception,), retry_kwargs={'max_retries': 3, 'countdown': 60})
def confirm_scheduled_payment(self, confirmation_id):
    """
    Confirm a payment accepted by a simulated rail once its delay has elapsed

    Args:
        confirmation_id (str): UUID of the ScheduledConfirmation

    Returns:
        dict: Status of the confirmation
    """
    from .models import ScheduledConfirmation
    from .payments import PaymentService

    with transaction.atomic():
        try:
            confirmation = ScheduledConfirmation.objects.select_for_update().get(confirmation_id=confirmation_id)
        except ScheduledConfirmation.DoesNotExist:
            logger.error(f"Scheduled confirmation {confirmation_id} not found")
            return {'status': 'failed', 'message': 'Confirmation not found', 'confirmation_id': str(confirmation_id)}

        if confirmation.status != 'pending':
            return {'status': confirmation.status, 'confirmation_id': str(confirmation_id)}
        if confirmation.due_at > timezone.now():
            # Delivered early (worker clock or eager mode); the sweep picks it up when due.
            return {'status': 'not_due', 'confirmation_id': str(confirmation_id)}

        confirmation.attempts += 1
        confirmation.save(update_fields=['attempts', 'updated_at'])
        payment_id = confirmation.payment_id

    try:
        payment = PaymentService().confirm_payment(payment_id, verified_by='test_mode_job')
    except SettlementError as e:
        # Business rejections will not succeed on retry.
        ScheduledConfirmation.objects.filter(pk=confirmation_id).update(status='failed', last_error=str(e))
        logger.error(f"Scheduled confirmation {confirmation_id} failed: {e.code} {str(e)}")
        return {'status': 'failed', 'message': str(e), 'confirmation_id': str(confirmation_id)}
    except Exception as e:
        ScheduledConfirmation.objects.filter(pk=confirmation_id).update(last_error=str(e))
        logger.error(f"Error confirming payment for {confirmation_id}: {str(e)}")
        raise self.retry(exc=e)

    logger.info(f"Scheduled confirmation {confirmation_id} applied: payment {payment.transaction_reference} {payment.status}")
    return {
        'status': 'success' if payment.status == 'completed' else payment.status,
        'payment_id': str(payment.payment_id),
        'confirmation_id': str(confirmation_id),
    }


@shared_task
def sweep_due_confirmations():
    """
    Dispatch every pending confirmation whose due time has passed.

    Covers lost broker messages and worker restarts.
    """
    from .models import ScheduledConfirmation

    due = ScheduledConfirmation.objects.filter(status='pending', due_at__lte=timezone.now())
    dispatched = 0
    for confirmation_id in due.values_list('confirmation_id', flat=True):
        confirm_scheduled_payment.delay(str(confirmation_id))
        dispatched += 1

    if dispatched:
        logger.info(f"Dispatched {dispatched} due payment confirmations")
    return {'status': 'success', 'dispatched': dispatched}


@shared_task(bind=True, autoretry_for=(Exception,), retry_kwargs={'max_retries': 3, 'countdown': 300})
def release_pending_earnings(self):
    """Move professional earnings from pending to available once the release delay has elapsed."""
    from .ledger import LedgerService

    released = LedgerService().release_due_earnings()
    return {'status': 'success', 'released': released}


@shared_task
def reconcile_wallets():
    """
    Compare every wallet with the fold of its transaction log.

    Faults are logged (CRITICAL) by the ledger and reported here; nothing is corrected.
    """
    from .ledger import LedgerService
    from .models import Wallet

    ledger = LedgerService()
    faulty = []
    checked = 0
    for wallet_id in Wallet.objects.values_list('wallet_id', flat=True):
        checked += 1
        try:
            ledger.reconcile(wallet_id)
        except LedgerIntegrityError:
            faulty.append(str(wallet_id))

    if faulty:
        logger.critical(f"Ledger reconciliation found {len(faulty)} faulty wallets: {', '.join(faulty)}")
    else:
        logger.info(f"Ledger reconciliation checked {checked} wallets, no drift")
    return {'status': 'failed' if faulty else 'success', 'checked': checked, 'faulty': faulty}


@shared_task(bind=True, autoretry_for=(requests.exceptions.RequestException,),
             retry_kwargs={'max_retries': 5, 'countdown': 60})
def deliver_notification(self, notification_id):
    """
    Hand a notification to the external delivery service

    Args:
        notification_id (str): UUID of the Notification

    Returns:
        dict: Status of the delivery
    """
    from .models import Notification

    try:
        notification = Notification.objects.get(notification_id=notification_id)
    except Notification.DoesNotExist:
        logger.error(f"Notification {notification_id} not found")
        return {'status': 'failed', 'message': 'Notification not found', 'notification_id': str(notification_id)}

    if notification.delivered_at:
        return {'status': 'success', 'message': 'Already delivered', 'notification_id': str(notification_id)}

    event = notification.as_event()
    webhook_url = getattr(settings, 'NOTIFICATION_WEBHOOK_URL', '')
    if webhook_url:
        response = requests.post(
            webhook_url,
            json=event,
            timeout=int(settings.SETTLEMENT.get('PROVIDER_TIMEOUT', 30)),
        )
        response.raise_for_status()
    else:
        logger.info(f"Notification for {event['userId']}: [{event['type']}] {event['title']} - {event['message']}")

    Notification.objects.filter(pk=notification.pk).update(delivered_at=timezone.now())
    return {'status': 'success', 'notification_id': str(notification_id)}


@shared_task
def deliver_pending_notifications():
    """Re-queue notifications that were written but never delivered."""
    from .models import Notification

    stale = Notification.objects.filter(
        delivered_at__isnull=True,
        created_at__lte=timezone.now() - timedelta(minutes=5),
    )
    queued = 0
    for notification_id in stale.values_list('notification_id', flat=True):
        deliver_notification.delay(str(notification_id))
        queued += 1
    return {'status': 'success', 'queued': queued}
