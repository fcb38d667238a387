from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth.models import User
from django.utils import timezone

from djibgo.celery import app as celery_app
from settlement.ledger import LedgerService
from settlement.models import Booking
from settlement.providers.base import PaymentProvider, ProviderResult, RefundResult


class FakeProvider(PaymentProvider):
    """In-process rail that records what it was asked to do."""

    name = 'fake'
    supports_refunds = True

    def __init__(self, result=None, refund_result=None, raises=None):
        self.result = result or ProviderResult(success=True, provider_txn_id='pi_fake_1', raw_response={'ok': True})
        self.refund_result = refund_result or RefundResult(success=True, refund_reference='re_fake_1')
        self.raises = raises
        self.submitted = []
        self.refunds = []

    def submit(self, request):
        self.submitted.append(request)
        if self.raises is not None:
            raise self.raises
        return self.result

    def refund(self, provider_txn_id, amount, currency, reference, reason=''):
        self.refunds.append({
            'provider_txn_id': provider_txn_id,
            'amount': amount,
            'currency': currency,
            'reference': reference,
            'reason': reason,
        })
        return self.refund_result


@pytest.fixture(autouse=True)
def eager_celery():
    """Run tasks in-process on the app the shared tasks resolve to."""
    celery_app.set_current()
    celery_app.set_default()
    celery_app.conf.update(
        broker_url='memory://',
        result_backend='cache+memory://',
        task_always_eager=True,
        task_eager_propagates=True,
        task_store_eager_result=False,
    )
    yield celery_app


@pytest.fixture(autouse=True)
def settlement_settings(settings):
    settings.WAAFIPAY_TEST_MODE = True
    settings.WAAFIPAY_TEST_CONFIRM_DELAY = 60
    settings.NOTIFICATION_WEBHOOK_URL = ''
    settings.SETTLEMENT = {
        'CURRENCY': 'DJF',
        'DEFAULT_COMMISSION_RATE': '0.10',
        'FULL_REFUND_HOURS': 24,
        'PARTIAL_REFUND_HOURS': 12,
        'PARTIAL_REFUND_RATE': '0.50',
        'MINIMUM_WITHDRAWAL': '1000',
        'EARNINGS_RELEASE_DAYS': 7,
        'TRANSACTION_PREFIX': 'DJIBGO',
        'PROVIDER_TIMEOUT': 5,
        'PROVIDER_MAX_RETRIES': 0,
        'PROVIDER_BACKOFF_FACTOR': 0,
        'PENDING_PAYMENT_TTL_MINUTES': 15,
    }
    return settings


@pytest.fixture
def client_user(db):
    return User.objects.create_user(username='amina', email='amina@example.dj', password='secret')


@pytest.fixture
def professional(db):
    return User.objects.create_user(username='farah', email='farah@example.dj', password='secret')


@pytest.fixture
def staff_user(db):
    return User.objects.create_user(username='ops', email='ops@djibgo.dj', password='secret', is_staff=True)


@pytest.fixture
def make_booking(client_user, professional):
    def _make(hours_ahead=48, total='10000', status='pending', **extra):
        return Booking.objects.create(
            client=client_user,
            professional=professional,
            service_title='Plumbing repair',
            scheduled_at=timezone.now() + timedelta(hours=hours_ahead),
            total_amount=Decimal(total),
            status=status,
            **extra
        )
    return _make


@pytest.fixture
def booking(make_booking):
    return make_booking()


@pytest.fixture
def ledger():
    return LedgerService()


@pytest.fixture
def wallet(ledger, professional):
    return ledger.get_or_create_wallet(professional)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def paid_booking(booking, client_user, fake_provider, staff_user):
    """A booking paid 10000 DJF through a push-refund rail."""
    from settlement.payments import PaymentService

    service = PaymentService(provider_factory=lambda name: fake_provider)
    outcome = service.initiate_payment(booking.pk, client_user.pk, 'stripe', 'pm_card_visa')
    booking.refresh_from_db()
    return booking, outcome.payment
