"""
Payment initiation and confirmation.

A payment attempt is committed as ``pending`` before the provider is called,
the provider call runs outside any database lock, and its outcome is then
applied in a single atomic block: record status, booking status, ledger
credit and notifications succeed or fail together.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from . import notifications
from .exceptions import (
    AlreadyPaidError,
    InvalidTransitionError,
    NotFoundError,
    OwnershipError,
    PaymentInProgressError,
    ProviderError,
    ValidationError,
)
from .ledger import ZERO, LedgerService
from .models import Booking, PaymentRecord, ScheduledConfirmation
from .policy import (
    compute_commission_split,
    generate_transaction_reference,
    get_policy,
    release_due_at,
    to_decimal,
)
from .providers import PaymentProvider, ProviderRequest, ProviderResult, get_provider

logger = logging.getLogger(__name__)

# Rails where the client pays out of band and may not have an account reference yet.
OPTIONAL_PAYER_REFERENCE = ('bank',)


def is_staff_actor(actor_id) -> bool:
    return User.objects.filter(pk=actor_id, is_staff=True).exists()


def lock_booking(booking_id) -> Booking:
    try:
        return Booking.objects.select_for_update().get(pk=booking_id)
    except Booking.DoesNotExist:
        raise NotFoundError("Booking not found")


def lock_payment(payment_id) -> PaymentRecord:
    try:
        return PaymentRecord.objects.select_for_update().get(pk=payment_id)
    except PaymentRecord.DoesNotExist:
        raise NotFoundError("Payment not found")


@dataclass
class PaymentOutcome:
    payment: PaymentRecord
    status: str
    message: str
    instructions: str = ''
    test_mode: bool = False

    @property
    def success(self) -> bool:
        return self.status in ('completed', 'pending')


@dataclass
class EarningsSummary:
    bookings: List[Booking]
    total_earnings: Decimal
    total_commission: Decimal
    pending_earnings: Decimal
    pending_payouts: int
    completed_bookings: int


class PaymentService:
    """Collects client payments for bookings through the configured rails."""

    def __init__(self, ledger: Optional[LedgerService] = None,
                 provider_factory: Optional[Callable[[str], PaymentProvider]] = None):
        self.ledger = ledger or LedgerService()
        self.provider_factory = provider_factory or get_provider

    def initiate_payment(self, booking_id, client_id, provider_name: str, payer_reference: str = '',
                         amount=None) -> PaymentOutcome:
        """
        Charge the client of a booking.

        Args:
            booking_id: Booking to pay
            client_id: Authenticated actor, must be the booking's client
            provider_name: waafipay, stripe, dmoney or bank
            payer_reference: Phone number or payment method the funds come from
            amount: Optional override of the booking total

        Returns:
            PaymentOutcome with status ``completed`` or ``pending``

        Raises:
            ValidationError, NotFoundError, OwnershipError: before any side effect
            ProviderError: the attempt was recorded as failed
        """
        provider = self.provider_factory(provider_name)
        payer_reference = (payer_reference or '').strip()
        if not payer_reference and provider_name not in OPTIONAL_PAYER_REFERENCE:
            raise ValidationError("A payer account reference is required", code='missing_payer_reference')

        policy = get_policy()
        with transaction.atomic():
            booking = lock_booking(booking_id)
            if booking.client_id != client_id:
                raise OwnershipError("You can only pay for your own bookings")
            if booking.is_paid:
                raise AlreadyPaidError()
            if booking.status == 'cancelled' or booking.payment_status == 'refunded':
                raise ValidationError("This booking has been cancelled", code='booking_cancelled')

            in_flight_since = timezone.now() - timedelta(minutes=policy.pending_payment_ttl_minutes)
            if booking.payments.filter(status='pending', initiated_at__gte=in_flight_since).exists():
                raise PaymentInProgressError()

            charge = booking.total_amount if amount is None else to_decimal(amount)
            if charge <= 0:
                raise ValidationError("Payment amount must be positive", code='invalid_amount')

            wallet = self.ledger.get_or_create_wallet(booking.professional)
            split = compute_commission_split(charge, wallet.commission_rate, policy)

            payment = PaymentRecord.objects.create(
                booking=booking,
                payer_id=client_id,
                provider=provider_name,
                payer_reference=payer_reference,
                amount=split.total,
                commission_amount=split.commission,
                professional_amount=split.professional_share,
                currency=booking.currency,
                transaction_reference=generate_transaction_reference(booking.pk, prefix=policy.transaction_prefix),
                test_mode=provider.test_mode,
            )
            destination = None
            if provider_name == 'stripe' and wallet.stripe_account_status == 'active':
                destination = wallet.stripe_account_id

        logger.info(
            f"Payment {payment.transaction_reference} initiated for booking {booking.pk} "
            f"via {provider_name}: {split.total} {payment.currency} "
            f"(commission {split.commission}, professional {split.professional_share})"
        )

        request = ProviderRequest(
            amount=payment.amount,
            currency=payment.currency,
            payer_reference=payer_reference,
            transaction_reference=payment.transaction_reference,
            booking_id=str(booking.pk),
            description=f"DjibGo - {booking.service_title or 'Service'}",
            destination_account=destination,
            application_fee=payment.commission_amount,
            metadata={'payment_id': str(payment.pk)},
        )

        try:
            result = provider.submit(request)
        except ProviderError as e:
            self.fail_payment(payment.pk, e.provider_message, e.retryable, e.raw_response)
            raise
        except Exception as e:
            self.fail_payment(payment.pk, str(e), retryable=True, raw_response=None)
            raise

        if not result.success:
            self.fail_payment(payment.pk, result.error_message, result.retryable, result.raw_response)
            raise ProviderError(
                result.error_message,
                retryable=result.retryable,
                raw_response=result.raw_response,
                provider=provider_name,
            )

        if result.pending:
            payment = self._mark_awaiting_confirmation(payment, result)
            return PaymentOutcome(
                payment=payment,
                status='pending',
                message="Payment initiated, waiting for confirmation",
                instructions=result.instructions,
                test_mode=result.test_mode,
            )

        payment = self.confirm_payment(
            payment.pk,
            verified_by=provider_name,
            provider_txn_id=result.provider_txn_id,
            raw_response=result.raw_response,
        )
        if payment.status != 'completed':
            return PaymentOutcome(payment=payment, status=payment.status, message=payment.error_message)
        return PaymentOutcome(payment=payment, status='completed', message="Payment confirmed")

    def fail_payment(self, payment_id, message: str, retryable: bool = False, raw_response=None) -> PaymentRecord:
        """Close a pending attempt as failed. Records already terminal are left as they are."""
        with transaction.atomic():
            payment = lock_payment(payment_id)
            if payment.status != 'pending':
                return payment
            payment.status = 'failed'
            payment.error_message = message or 'Payment failed'
            payment.retryable = retryable
            payment.raw_response = raw_response
            payment.save()

        log = logger.warning if retryable else logger.error
        log(
            f"Payment {payment.transaction_reference} failed via {payment.provider} "
            f"({'retryable' if retryable else 'terminal'}): {payment.error_message}"
        )
        return payment

    def _mark_awaiting_confirmation(self, payment: PaymentRecord, result: ProviderResult) -> PaymentRecord:
        with transaction.atomic():
            booking = lock_booking(payment.booking_id)
            payment = lock_payment(payment.pk)
            payment.provider_transaction_id = result.provider_txn_id
            payment.raw_response = result.raw_response
            payment.test_mode = result.test_mode
            payment.save()

            if booking.payment_status == 'unpaid':
                booking.advance_payment_status('pending')
                booking.save(update_fields=['payment_status', 'updated_at'])

            if result.confirm_after is not None:
                confirmation = ScheduledConfirmation.objects.create(
                    payment=payment,
                    due_at=timezone.now() + timedelta(seconds=result.confirm_after),
                )
                transaction.on_commit(
                    lambda: self._schedule_confirmation(confirmation.confirmation_id, result.confirm_after)
                )

            message = "Your payment is awaiting confirmation."
            if result.instructions:
                message = f"{message}\n{result.instructions}"
            notifications.notify(
                booking.client, notifications.PAYMENT_PENDING, "Payment pending", message, booking
            )

        logger.info(
            f"Payment {payment.transaction_reference} accepted by {payment.provider}, awaiting confirmation"
            f"{' (test mode)' if result.test_mode else ''}"
        )
        return payment

    @staticmethod
    def _schedule_confirmation(confirmation_id, delay: int) -> None:
        from .tasks import confirm_scheduled_payment

        try:
            confirm_scheduled_payment.apply_async(args=[str(confirmation_id)], countdown=delay)
        except Exception as e:
            # The row is durable; the sweep will dispatch it once due.
            logger.error(f"Could not queue confirmation {confirmation_id}: {str(e)}")

    def confirm_payment(self, payment_id, verified_by: str, provider_txn_id: Optional[str] = None,
                        raw_response=None) -> PaymentRecord:
        """
        Apply a successful collection: record completed, booking paid,
        professional credited (pending), both parties notified.

        Completing an already completed record is a no-op. A second record
        for a booking that is already settled is failed and flagged for a
        manual refund instead of being completed.
        """
        try:
            booking_id = PaymentRecord.objects.values_list('booking_id', flat=True).get(pk=payment_id)
        except PaymentRecord.DoesNotExist:
            raise NotFoundError("Payment not found")

        with transaction.atomic():
            booking = lock_booking(booking_id)
            payment = lock_payment(payment_id)

            if payment.status == 'completed':
                logger.info(f"Payment {payment.transaction_reference} already completed")
                return payment
            if payment.status != 'pending':
                raise InvalidTransitionError(f"Payment is {payment.status} and cannot be confirmed")

            now = timezone.now()
            if provider_txn_id:
                payment.provider_transaction_id = provider_txn_id
            if raw_response is not None:
                payment.raw_response = raw_response

            if booking.is_paid or booking.payment_status == 'refunded' or booking.status == 'cancelled':
                payment.status = 'failed'
                payment.error_message = 'Booking already settled or cancelled; funds must be returned'
                payment.manual_refund_required = True
                payment.verified_at = now
                payment.verified_by = verified_by
                payment.save()
                ScheduledConfirmation.objects.filter(payment=payment, status='pending').update(status='failed')
                logger.error(
                    f"Duplicate collection {payment.transaction_reference} for booking {booking.pk} "
                    f"({booking.status}/{booking.payment_status}); flagged for manual refund"
                )
                notifications.notify_staff(
                    notifications.MANUAL_REFUND_REQUIRED,
                    "Duplicate payment",
                    f"Payment {payment.transaction_reference} of {payment.amount} {payment.currency} "
                    f"arrived for a settled booking and must be refunded manually.",
                    booking,
                )
                return payment

            payment.status = 'completed'
            payment.verified_at = now
            payment.verified_by = verified_by
            payment.save()

            booking.mark_paid(payment.transaction_reference, now)
            booking.commission_amount = payment.commission_amount
            booking.save()

            wallet = self.ledger.get_or_create_wallet(booking.professional)
            if payment.professional_amount > 0:
                self.ledger.credit(
                    wallet.pk,
                    payment.professional_amount,
                    entry_type='earning',
                    description=f"Payment for booking {str(booking.pk)[:8]}",
                    bucket='pending',
                    payment=payment,
                )

            ScheduledConfirmation.objects.filter(payment=payment, status='pending').update(status='done')

            notifications.notify(
                booking.professional,
                notifications.PAYMENT_RECEIVED,
                "Payment received",
                f"You received {payment.professional_amount} {payment.currency} for "
                f"\"{booking.service_title or 'your service'}\". Funds are available "
                f"{get_policy().earnings_release_days} days after the service is completed.",
                booking,
            )
            notifications.notify(
                booking.client,
                notifications.PAYMENT_CONFIRMED,
                "Payment confirmed",
                f"Your payment of {payment.amount} {payment.currency} has been confirmed.",
                booking,
            )

        logger.info(
            f"Payment {payment.transaction_reference} completed (verified by {verified_by}); "
            f"booking {booking.pk} paid"
        )
        return payment

    def verify_payment(self, payment_id, actor_id) -> PaymentRecord:
        try:
            payment = PaymentRecord.objects.select_related('booking').get(pk=payment_id)
        except PaymentRecord.DoesNotExist:
            raise NotFoundError("Payment not found")
        if actor_id not in (payment.payer_id, payment.booking.professional_id) and not is_staff_actor(actor_id):
            raise OwnershipError()
        return payment

    def payment_history(self, actor_id):
        return PaymentRecord.objects.filter(payer_id=actor_id).select_related('booking').order_by('-initiated_at')

    def professional_earnings(self, actor_id) -> EarningsSummary:
        """
        Paid bookings of a professional with their earnings totals.

        Totals come from the settling payments, i.e. the amounts the ledger
        was credited with; refunded bookings are excluded.
        """
        bookings = (
            Booking.objects.filter(professional_id=actor_id, payment_status='paid')
            .select_related('client', 'professional')
            .order_by('-payment_date')
        )
        totals = PaymentRecord.objects.filter(
            booking__professional_id=actor_id,
            booking__payment_status='paid',
            status='completed',
        ).aggregate(
            total_earnings=Coalesce(Sum('professional_amount'), ZERO),
            total_commission=Coalesce(Sum('commission_amount'), ZERO),
            pending_earnings=Coalesce(Sum('professional_amount', filter=Q(released_at__isnull=True)), ZERO),
            pending_payouts=Count('pk', filter=Q(booking__status='completed', released_at__isnull=True)),
        )
        return EarningsSummary(
            bookings=list(bookings),
            total_earnings=totals['total_earnings'],
            total_commission=totals['total_commission'],
            pending_earnings=totals['pending_earnings'],
            pending_payouts=totals['pending_payouts'],
            completed_bookings=len(bookings),
        )

    def complete_booking(self, booking_id, actor_id) -> Booking:
        """Professional marks the service delivered; this starts the earnings release clock."""
        with transaction.atomic():
            booking = lock_booking(booking_id)
            if booking.professional_id != actor_id and not is_staff_actor(actor_id):
                raise OwnershipError("Only the professional can complete this booking")
            if booking.status not in ('confirmed', 'in_progress'):
                raise InvalidTransitionError(f"A {booking.status} booking cannot be completed")
            if not booking.is_paid:
                raise ValidationError("The booking has not been paid", code='booking_unpaid')

            booking.status = 'completed'
            booking.completed_at = timezone.now()
            booking.save(update_fields=['status', 'completed_at', 'updated_at'])

            notifications.notify(
                booking.client,
                notifications.BOOKING_COMPLETED,
                "Service completed",
                f"\"{booking.service_title or 'Your service'}\" has been marked as completed.",
                booking,
            )

        logger.info(
            f"Booking {booking.pk} completed; earnings release due at {release_due_at(booking.completed_at):%Y-%m-%d %H:%M}"
        )
        return booking

    def handle_stripe_event(self, event) -> Optional[PaymentRecord]:
        """
        Apply an asynchronous PaymentIntent outcome (intents left ``processing``
        at submission time).

        Returns:
            The affected PaymentRecord, or ``None`` for events that are ignored
        """
        if event['type'] not in ('payment_intent.succeeded', 'payment_intent.payment_failed'):
            return None

        intent = event['data']['object']
        payment = PaymentRecord.objects.filter(provider='stripe', provider_transaction_id=intent['id']).first()
        if payment is None:
            reference = (intent.get('metadata') or {}).get('transaction_reference')
            if reference:
                payment = PaymentRecord.objects.filter(transaction_reference=reference).first()
        if payment is None:
            logger.warning(f"Stripe event {event['type']} for unknown intent {intent['id']}")
            return None

        if event['type'] == 'payment_intent.succeeded':
            return self.confirm_payment(payment.pk, verified_by='stripe_webhook', provider_txn_id=intent['id'])
        error = (intent.get('last_payment_error') or {}).get('message') or 'Payment failed'
        return self.fail_payment(payment.pk, error)
