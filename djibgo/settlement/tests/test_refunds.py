from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from settlement import notifications
from settlement.exceptions import (
    AlreadyRefundedError,
    InvalidTransitionError,
    OwnershipError,
    ProviderError,
    RefundWindowClosedError,
    ValidationError,
)
from settlement.ledger import LedgerService
from settlement.models import Booking, Notification, PaymentRecord, WalletTransaction
from settlement.payments import PaymentService
from settlement.policy import FULL_REFUND_24H, PARTIAL_REFUND_12H
from settlement.providers.base import RefundResult
from settlement.refunds import UNPAID_CANCELLATION, RefundService
from settlement.withdrawals import WithdrawalService

from .conftest import FakeProvider

pytestmark = pytest.mark.django_db


def cancel_hours_before(booking, actor_id, hours, provider):
    now = booking.scheduled_at - timedelta(hours=hours)
    service = RefundService(provider_factory=lambda name: provider)
    return service.cancel_booking(booking.pk, actor_id, reason='Change of plans', now=now)


class TestCancellationSchedule:

    def test_full_refund_thirty_hours_before(self, paid_booking, client_user, fake_provider, ledger):
        booking, payment = paid_booking
        outcome = cancel_hours_before(booking, client_user.pk, 30, fake_provider)

        assert outcome.percentage == 100
        assert outcome.amount == Decimal('10000.00')
        assert outcome.reason_code == FULL_REFUND_24H
        assert outcome.refund_reference == 're_fake_1'
        assert outcome.manual_refund_required is False

        refund_call = fake_provider.refunds[0]
        assert refund_call['provider_txn_id'] == 'pi_fake_1'
        assert refund_call['amount'] == Decimal('10000.00')
        assert refund_call['reference'] == payment.transaction_reference

        booking.refresh_from_db()
        payment.refresh_from_db()
        assert booking.status == 'cancelled'
        assert booking.payment_status == 'refunded'
        assert booking.refund_amount == Decimal('10000.00')
        assert payment.status == 'refunded'
        assert payment.refund_percentage == 100
        assert payment.refund_reason == 'Change of plans'

        wallet = ledger.get_wallet_for(booking.professional_id)
        assert wallet.pending_balance == Decimal('0')
        assert wallet.total_earned == Decimal('0')
        reversal = WalletTransaction.objects.get(wallet=wallet, type='refund_reversal')
        assert reversal.amount == Decimal('-9000.00')

    def test_partial_refund_fifteen_hours_before(self, paid_booking, client_user, fake_provider, ledger):
        booking, _ = paid_booking
        outcome = cancel_hours_before(booking, client_user.pk, 15, fake_provider)

        assert outcome.percentage == 50
        assert outcome.amount == Decimal('5000.00')
        assert outcome.reason_code == PARTIAL_REFUND_12H
        # The professional's whole earning for the booking is reversed.
        wallet = ledger.get_wallet_for(booking.professional_id)
        assert wallet.pending_balance == Decimal('0')

    def test_rejected_five_hours_before(self, paid_booking, client_user, fake_provider):
        booking, payment = paid_booking
        with pytest.raises(RefundWindowClosedError) as excinfo:
            cancel_hours_before(booking, client_user.pk, 5, fake_provider)

        assert excinfo.value.code == 'NO_REFUND_WINDOW'
        assert fake_provider.refunds == []
        booking.refresh_from_db()
        payment.refresh_from_db()
        assert booking.status == 'confirmed'
        assert booking.payment_status == 'paid'
        assert payment.status == 'completed'

    def test_unpaid_booking_cancels_without_refund(self, booking, client_user, professional):
        outcome = RefundService().cancel_booking(booking.pk, client_user.pk)
        assert outcome.reason_code == UNPAID_CANCELLATION
        assert outcome.amount == Decimal('0.00')
        assert outcome.payment is None
        booking.refresh_from_db()
        assert booking.status == 'cancelled'
        assert booking.payment_status == 'unpaid'
        assert Notification.objects.filter(user=professional, type=notifications.BOOKING_CANCELLED).exists()


class TestIdempotency:

    def test_second_cancellation_is_rejected(self, paid_booking, client_user, fake_provider, ledger):
        booking, _ = paid_booking
        cancel_hours_before(booking, client_user.pk, 30, fake_provider)
        with pytest.raises(AlreadyRefundedError):
            cancel_hours_before(booking, client_user.pk, 30, fake_provider)

        assert len(fake_provider.refunds) == 1
        wallet = ledger.get_wallet_for(booking.professional_id)
        assert WalletTransaction.objects.filter(wallet=wallet, type='refund_reversal').count() == 1

    def test_refund_payment_twice(self, paid_booking, client_user, fake_provider):
        _, payment = paid_booking
        service = RefundService(provider_factory=lambda name: fake_provider)
        service.refund_payment(payment.pk, client_user.pk)
        with pytest.raises(AlreadyRefundedError):
            service.refund_payment(payment.pk, client_user.pk)

    def test_failed_payment_cannot_be_refunded(self, booking, client_user):
        payment = PaymentRecord.objects.create(
            booking=booking, payer=client_user, provider='stripe', amount=Decimal('10000'),
            commission_amount=Decimal('1000'), professional_amount=Decimal('9000'),
            transaction_reference='DJIBGO-1-failed', status='failed',
        )
        with pytest.raises(ValidationError) as excinfo:
            RefundService().refund_payment(payment.pk, client_user.pk)
        assert excinfo.value.code == 'payment_not_completed'

    def test_completed_booking_cannot_be_cancelled(self, paid_booking, professional, fake_provider):
        booking, _ = paid_booking
        PaymentService().complete_booking(booking.pk, professional.pk)
        with pytest.raises(InvalidTransitionError):
            cancel_hours_before(booking, professional.pk, 30, fake_provider)


class TestActors:

    def test_stranger_cannot_cancel(self, paid_booking, fake_provider, django_user_model):
        booking, _ = paid_booking
        stranger = django_user_model.objects.create_user(username='stranger', password='x')
        with pytest.raises(OwnershipError):
            cancel_hours_before(booking, stranger.pk, 30, fake_provider)

    def test_staff_can_cancel(self, paid_booking, staff_user, fake_provider):
        booking, _ = paid_booking
        outcome = cancel_hours_before(booking, staff_user.pk, 30, fake_provider)
        assert outcome.percentage == 100


class TestProviderReversal:

    def test_refusal_leaves_everything_untouched(self, paid_booking, client_user, ledger):
        booking, payment = paid_booking
        provider = FakeProvider(refund_result=RefundResult(success=False, error_message='charge disputed'))
        with pytest.raises(ProviderError):
            cancel_hours_before(booking, client_user.pk, 30, provider)

        booking.refresh_from_db()
        payment.refresh_from_db()
        assert booking.payment_status == 'paid'
        assert payment.status == 'completed'
        assert ledger.get_wallet_for(booking.professional_id).pending_balance == Decimal('9000.00')

    def test_rail_without_push_refunds_is_flagged(self, booking, client_user, staff_user):
        payment = PaymentService().initiate_payment(booking.pk, client_user.pk, 'dmoney', '77123456').payment
        PaymentService().confirm_payment(payment.pk, verified_by='staff:ops')

        outcome = RefundService().cancel_booking(booking.pk, client_user.pk, now=timezone.now())

        assert outcome.manual_refund_required is True
        assert outcome.refund_reference == ''
        payment.refresh_from_db()
        assert payment.status == 'refunded'
        assert payment.manual_refund_required is True
        assert Notification.objects.filter(user=staff_user, type=notifications.MANUAL_REFUND_REQUIRED).exists()

    def test_staff_lookup_failure_does_not_roll_back(self, booking, client_user, monkeypatch):
        from django.db import DatabaseError

        payment = PaymentService().initiate_payment(booking.pk, client_user.pk, 'bank').payment
        PaymentService().confirm_payment(payment.pk, verified_by='staff:ops')

        def broken_filter(*args, **kwargs):
            raise DatabaseError('replica unavailable')

        monkeypatch.setattr(notifications.User.objects, 'filter', broken_filter)
        outcome = RefundService().cancel_booking(booking.pk, client_user.pk, now=timezone.now())

        assert outcome.manual_refund_required is True
        payment.refresh_from_db()
        assert payment.status == 'refunded'

    def test_pushed_refund_is_kept_when_cancellation_cannot_apply(self, paid_booking, client_user, staff_user,
                                                                  ledger):
        booking, payment = paid_booking

        class CompletingProvider(FakeProvider):
            def refund(self, *args, **kwargs):
                Booking.objects.filter(pk=booking.pk).update(status='completed', completed_at=timezone.now())
                return super().refund(*args, **kwargs)

        provider = CompletingProvider()
        with pytest.raises(InvalidTransitionError):
            cancel_hours_before(booking, client_user.pk, 30, provider)

        assert len(provider.refunds) == 1
        payment.refresh_from_db()
        assert payment.status == 'completed'
        assert payment.refund_reference == 're_fake_1'
        assert payment.manual_refund_required is True
        assert Notification.objects.filter(user=staff_user, type=notifications.MANUAL_REFUND_REQUIRED).exists()
        assert ledger.get_wallet_for(booking.professional_id).pending_balance == Decimal('9000.00')


class TestReleasedEarnings:

    def test_reversal_from_available_after_release(self, paid_booking, client_user, fake_provider, ledger):
        booking, payment = paid_booking
        wallet = ledger.get_wallet_for(booking.professional_id)
        ledger.release(wallet.pk, payment.professional_amount, payment=payment)
        PaymentRecord.objects.filter(pk=payment.pk).update(released_at=timezone.now())

        cancel_hours_before(booking, client_user.pk, 30, fake_provider)

        wallet.refresh_from_db()
        assert wallet.balance == Decimal('0')
        assert wallet.pending_balance == Decimal('0')

    def test_reversal_after_payout_goes_negative(self, paid_booking, client_user, fake_provider, ledger):
        booking, payment = paid_booking
        wallet = ledger.get_wallet_for(booking.professional_id)
        ledger.release(wallet.pk, payment.professional_amount, payment=payment)
        PaymentRecord.objects.filter(pk=payment.pk).update(released_at=timezone.now())

        withdrawals = WithdrawalService()
        withdrawal = withdrawals.request_withdrawal(
            booking.professional_id, '9000', 'waafipay', {'phone': '77123456'}
        )
        withdrawals.complete_withdrawal(withdrawal.pk, transaction_reference='WP-1')

        cancel_hours_before(booking, client_user.pk, 30, fake_provider)

        balance = LedgerService().get_balance(wallet.pk)
        assert balance.available == Decimal('-9000.00')
        assert balance.withdrawable == Decimal('0')
        assert balance.total_earned - balance.total_withdrawn == balance.available + balance.pending
