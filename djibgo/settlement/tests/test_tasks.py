from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from settlement.models import Notification, PaymentRecord, ScheduledConfirmation, Wallet
from settlement.payments import PaymentService
from settlement.tasks import (
    confirm_scheduled_payment,
    deliver_notification,
    deliver_pending_notifications,
    reconcile_wallets,
    release_pending_earnings,
    sweep_due_confirmations,
)

pytestmark = pytest.mark.django_db


@pytest.fixture
def pending_test_payment(booking, client_user):
    outcome = PaymentService().initiate_payment(booking.pk, client_user.pk, 'waafipay', '77111111')
    return outcome.payment, ScheduledConfirmation.objects.get(payment=outcome.payment)


def make_due(confirmation):
    ScheduledConfirmation.objects.filter(pk=confirmation.pk).update(due_at=timezone.now() - timedelta(seconds=5))


class TestConfirmScheduledPayment:

    def test_not_due_yet(self, pending_test_payment):
        payment, confirmation = pending_test_payment
        result = confirm_scheduled_payment(str(confirmation.pk))
        assert result['status'] == 'not_due'
        payment.refresh_from_db()
        assert payment.status == 'pending'

    def test_due_confirmation_completes_payment(self, pending_test_payment):
        payment, confirmation = pending_test_payment
        make_due(confirmation)

        result = confirm_scheduled_payment(str(confirmation.pk))

        assert result['status'] == 'success'
        assert result['payment_id'] == str(payment.pk)
        confirmation.refresh_from_db()
        assert confirmation.status == 'done'
        assert confirmation.attempts == 1

    def test_already_done(self, pending_test_payment):
        _, confirmation = pending_test_payment
        make_due(confirmation)
        confirm_scheduled_payment(str(confirmation.pk))
        assert confirm_scheduled_payment(str(confirmation.pk))['status'] == 'done'

    def test_business_rejection_marks_row_failed(self, pending_test_payment):
        payment, confirmation = pending_test_payment
        PaymentRecord.objects.filter(pk=payment.pk).update(status='failed')
        make_due(confirmation)

        result = confirm_scheduled_payment(str(confirmation.pk))

        assert result['status'] == 'failed'
        confirmation.refresh_from_db()
        assert confirmation.status == 'failed'
        assert confirmation.last_error

    def test_missing_row(self, db):
        result = confirm_scheduled_payment('6f1c1d8e-0000-4000-8000-000000000000')
        assert result['status'] == 'failed'


def test_sweep_dispatches_due_confirmations(pending_test_payment):
    payment, confirmation = pending_test_payment
    assert sweep_due_confirmations()['dispatched'] == 0

    make_due(confirmation)
    assert sweep_due_confirmations()['dispatched'] == 1

    payment.refresh_from_db()
    assert payment.status == 'completed'


def test_release_pending_earnings(paid_booking):
    booking, payment = paid_booking
    booking.status = 'completed'
    booking.completed_at = timezone.now() - timedelta(days=8)
    booking.save()

    assert release_pending_earnings() == {'status': 'success', 'released': 1}
    wallet = Wallet.objects.get(professional_id=booking.professional_id)
    assert wallet.balance == Decimal('9000.00')


class TestReconcileWallets:

    def test_clean_ledger(self, paid_booking):
        result = reconcile_wallets()
        assert result['status'] == 'success'
        assert result['checked'] == 1

    def test_drift_is_reported(self, paid_booking):
        booking, _ = paid_booking
        wallet = Wallet.objects.get(professional_id=booking.professional_id)
        Wallet.objects.filter(pk=wallet.pk).update(pending_balance=Decimal('1'))

        result = reconcile_wallets()

        assert result['status'] == 'failed'
        assert result['faulty'] == [str(wallet.pk)]
        assert Wallet.objects.get(pk=wallet.pk).pending_balance == Decimal('1')


class FakeResponse:

    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        pass


class TestNotificationDelivery:

    @pytest.fixture
    def notification(self, client_user, booking):
        return Notification.objects.create(
            user=client_user, type='payment_confirmed', title='Payment confirmed',
            message='Your payment of 10000 DJF has been confirmed.', related_booking=booking,
        )

    def test_logged_when_no_webhook(self, notification):
        assert deliver_notification(str(notification.pk))['status'] == 'success'
        notification.refresh_from_db()
        assert notification.delivered_at is not None

    def test_posted_to_webhook(self, notification, settings, monkeypatch):
        settings.NOTIFICATION_WEBHOOK_URL = 'https://notify.djibgo.dj/events'
        calls = []

        def fake_post(url, json=None, timeout=None):
            calls.append((url, json))
            return FakeResponse()

        monkeypatch.setattr('settlement.tasks.requests.post', fake_post)
        deliver_notification(str(notification.pk))

        url, event = calls[0]
        assert url == 'https://notify.djibgo.dj/events'
        assert event['userId'] == str(notification.user_id)
        assert event['relatedBookingId'] == str(notification.related_booking_id)

    def test_delivered_once(self, notification, settings, monkeypatch):
        settings.NOTIFICATION_WEBHOOK_URL = 'https://notify.djibgo.dj/events'
        calls = []
        monkeypatch.setattr('settlement.tasks.requests.post', lambda *a, **kw: calls.append(a) or FakeResponse())
        deliver_notification(str(notification.pk))
        deliver_notification(str(notification.pk))
        assert len(calls) == 1

    def test_delay_runs_in_process(self, notification, eager_celery):
        result = deliver_notification.delay(str(notification.pk))

        assert result.get() == {'status': 'success', 'notification_id': str(notification.pk)}
        assert deliver_notification.app is eager_celery
        notification.refresh_from_db()
        assert notification.delivered_at is not None

    def test_stale_rows_are_requeued(self, notification):
        Notification.objects.filter(pk=notification.pk).update(created_at=timezone.now() - timedelta(minutes=10))
        assert deliver_pending_notifications() == {'status': 'success', 'queued': 1}
        notification.refresh_from_db()
        assert notification.delivered_at is not None
