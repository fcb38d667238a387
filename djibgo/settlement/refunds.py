"""
Booking cancellation and refunds.

Refunds are quoted by the policy engine against the amount originally
collected. The professional's earning for the booking is always reversed in
full, whatever share of the payment goes back to the client.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from django.db import transaction
from django.utils import timezone

from . import notifications
from .exceptions import (
    AlreadyRefundedError,
    InvalidTransitionError,
    NotFoundError,
    OwnershipError,
    ProviderError,
    ValidationError,
)
from .ledger import LedgerService
from .models import Booking, PaymentRecord
from .payments import is_staff_actor, lock_booking, lock_payment
from .policy import RefundQuote, compute_refund
from .providers import PaymentProvider, get_provider, supports_push_refunds

logger = logging.getLogger(__name__)

UNPAID_CANCELLATION = 'UNPAID_CANCELLATION'


@dataclass
class RefundOutcome:
    booking: Booking
    percentage: int
    amount: Decimal
    reason_code: str
    message: str
    payment: Optional[PaymentRecord] = None
    refund_reference: str = ''
    manual_refund_required: bool = False


class RefundService:
    """Cancels bookings and returns the client's money according to the refund schedule."""

    def __init__(self, ledger: Optional[LedgerService] = None,
                 provider_factory: Optional[Callable[[str], PaymentProvider]] = None):
        self.ledger = ledger or LedgerService()
        self.provider_factory = provider_factory or get_provider

    @staticmethod
    def _check_actor(booking: Booking, actor_id) -> None:
        if actor_id not in (booking.client_id, booking.professional_id) and not is_staff_actor(actor_id):
            raise OwnershipError("You can only cancel your own bookings")

    @staticmethod
    def _check_cancellable(booking: Booking) -> None:
        if booking.payment_status == 'refunded':
            raise AlreadyRefundedError("This booking has already been refunded")
        if booking.status == 'cancelled':
            raise InvalidTransitionError("This booking is already cancelled")
        if booking.status == 'completed':
            raise InvalidTransitionError("A completed booking cannot be cancelled")

    @staticmethod
    def _settling_payment(booking: Booking) -> PaymentRecord:
        payment = booking.payments.filter(status='completed').order_by('-verified_at').first()
        if payment is None:
            raise NotFoundError("No completed payment found for this booking")
        return payment

    def cancel_booking(self, booking_id, actor_id, reason: str = '', now=None) -> RefundOutcome:
        """
        Cancel a booking and refund the client per the cancellation schedule.

        Unpaid bookings are cancelled without a refund. Paid bookings inside
        the no-refund window are rejected and left untouched.

        Raises:
            RefundWindowClosedError: less than the partial-refund window before the service
            AlreadyRefundedError: the booking was already refunded
            ProviderError: the rail refused the reversal; nothing was changed
        """
        now = now or timezone.now()

        with transaction.atomic():
            booking = lock_booking(booking_id)
            self._check_actor(booking, actor_id)
            self._check_cancellable(booking)

            if not booking.is_paid:
                return self._cancel_unpaid(booking, actor_id, now)

            payment = self._settling_payment(booking)
            quote = compute_refund(booking.scheduled_at, now, payment.amount)
            quote.raise_if_rejected()

        refund_reference, manual = self._reverse_with_provider(payment, quote, reason)

        try:
            booking, payment = self._apply_refund(booking_id, payment.pk, quote, reason, refund_reference, manual, now)
        except Exception as e:
            if not manual:
                self._record_unapplied_refund(payment.pk, quote, refund_reference, e)
            raise

        logger.info(
            f"Booking {booking.pk} cancelled by {actor_id}: refund {quote.amount} {payment.currency} "
            f"({quote.percentage}%, {quote.reason_code}){' - manual refund required' if manual else ''}"
        )
        return RefundOutcome(
            booking=booking,
            percentage=quote.percentage,
            amount=quote.amount,
            reason_code=quote.reason_code,
            message=quote.message,
            payment=payment,
            refund_reference=refund_reference,
            manual_refund_required=manual,
        )

    def refund_payment(self, payment_id, actor_id, reason: str = '', now=None) -> RefundOutcome:
        try:
            payment = PaymentRecord.objects.get(pk=payment_id)
        except PaymentRecord.DoesNotExist:
            raise NotFoundError("Payment not found")
        if payment.status == 'refunded':
            raise AlreadyRefundedError()
        if payment.status != 'completed':
            raise ValidationError(f"A {payment.status} payment cannot be refunded", code='payment_not_completed')
        return self.cancel_booking(payment.booking_id, actor_id, reason=reason, now=now)

    def _apply_refund(self, booking_id, payment_id, quote: RefundQuote, reason: str,
                      refund_reference: str, manual: bool, now):
        with transaction.atomic():
            booking = lock_booking(booking_id)
            payment = lock_payment(payment_id)
            if booking.payment_status == 'refunded' or payment.status == 'refunded':
                raise AlreadyRefundedError("This booking has already been refunded")
            self._check_cancellable(booking)

            payment.status = 'refunded'
            payment.refund_amount = quote.amount
            payment.refund_percentage = quote.percentage
            payment.refund_reason = reason or quote.message
            payment.refund_reference = refund_reference
            payment.manual_refund_required = manual
            payment.refunded_at = now
            payment.save()

            booking.advance_payment_status('refunded')
            booking.status = 'cancelled'
            booking.cancelled_at = now
            booking.refund_amount = quote.amount
            booking.save()

            self._reverse_earning(booking, payment)
            self._notify_refund(booking, payment, quote, manual)
        return booking, payment

    def _record_unapplied_refund(self, payment_id, quote: RefundQuote, refund_reference: str, error) -> None:
        """
        The rail has already returned the money but the cancellation could not
        be applied. Keep the rail's reference on the payment and hand it to an
        operator; the booking and the ledger are left as they are.
        """
        with transaction.atomic():
            payment = lock_payment(payment_id)
            if payment.status == 'refunded' and payment.refund_reference == refund_reference:
                return
            payment.refund_reference = refund_reference
            payment.manual_refund_required = True
            payment.save(update_fields=['refund_reference', 'manual_refund_required', 'updated_at'])

            logger.critical(
                f"Refund {refund_reference} of {quote.amount} {payment.currency} was pushed for payment "
                f"{payment.transaction_reference} but could not be applied: {str(error)}"
            )
            notifications.notify_staff(
                notifications.MANUAL_REFUND_REQUIRED,
                "Refund pushed but not recorded",
                f"{quote.amount} {payment.currency} was refunded on {payment.get_provider_display()} "
                f"(reference {refund_reference}) for payment {payment.transaction_reference}, "
                f"but the booking could not be cancelled: {getattr(error, 'user_message', str(error))}",
                payment.booking,
            )

    def _cancel_unpaid(self, booking: Booking, actor_id, now) -> RefundOutcome:
        booking.status = 'cancelled'
        booking.cancelled_at = now
        booking.save(update_fields=['status', 'cancelled_at', 'updated_at'])

        other = booking.professional if actor_id == booking.client_id else booking.client
        notifications.notify(
            other,
            notifications.BOOKING_CANCELLED,
            "Booking cancelled",
            f"The booking \"{booking.service_title or 'service'}\" has been cancelled.",
            booking,
        )
        logger.info(f"Unpaid booking {booking.pk} cancelled by {actor_id}")
        return RefundOutcome(
            booking=booking,
            percentage=0,
            amount=Decimal('0.00'),
            reason_code=UNPAID_CANCELLATION,
            message="Booking cancelled, no payment was collected",
        )

    def _reverse_with_provider(self, payment: PaymentRecord, quote: RefundQuote, reason: str):
        """Push the refund through the rail when it can; otherwise flag it for an operator."""
        if not supports_push_refunds(payment.provider) or not payment.provider_transaction_id:
            return '', True

        provider = self.provider_factory(payment.provider)

        result = provider.refund(
            payment.provider_transaction_id,
            quote.amount,
            payment.currency,
            payment.transaction_reference,
            reason=reason or quote.reason_code,
        )
        if not result.success:
            logger.error(f"Refund of {payment.transaction_reference} refused by {payment.provider}: {result.error_message}")
            raise ProviderError(
                result.error_message,
                retryable=False,
                raw_response=result.raw_response,
                provider=payment.provider,
            )
        return result.refund_reference, False

    def _reverse_earning(self, booking: Booking, payment: PaymentRecord) -> None:
        share = payment.professional_amount
        if share <= 0:
            return
        wallet = self.ledger.get_wallet_for(booking.professional_id)
        released = payment.released_at is not None
        self.ledger.debit(
            wallet.pk,
            share,
            entry_type='refund_reversal',
            description=f"Refund of booking {str(booking.pk)[:8]}",
            bucket='available' if released else 'pending',
            payment=payment,
            allow_negative=released,
        )

    def _notify_refund(self, booking: Booking, payment: PaymentRecord, quote: RefundQuote, manual: bool) -> None:
        notifications.notify(
            booking.client,
            notifications.REFUND_ISSUED,
            "Booking cancelled",
            f"Your booking has been cancelled. Refund: {quote.amount} {payment.currency} ({quote.percentage}%).",
            booking,
        )
        notifications.notify(
            booking.professional,
            notifications.BOOKING_CANCELLED,
            "Booking cancelled",
            f"The booking \"{booking.service_title or 'service'}\" was cancelled. "
            f"Client refund: {quote.percentage}%.",
            booking,
        )
        if manual:
            notifications.notify_staff(
                notifications.MANUAL_REFUND_REQUIRED,
                "Manual refund required",
                f"Refund {quote.amount} {payment.currency} to the client for payment "
                f"{payment.transaction_reference} via {payment.get_provider_display()}.",
                booking,
            )
