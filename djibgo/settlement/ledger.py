"""
Wallet ledger.

Every mutation locks the wallet row, appends one immutable
:class:`WalletTransaction` and updates the cached balance fields in the same
database transaction. The cache must always equal the fold of the log;
a mismatch is reported, never repaired.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from django.db import transaction
from django.db.models import Q, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from .exceptions import LedgerIntegrityError, NotFoundError, ValidationError
from .models import PaymentRecord, Wallet, WalletTransaction, WithdrawalRequest
from .policy import get_policy, release_cutoff, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')

EARNED_TYPES = ('earning', 'adjustment', 'refund_reversal')


@dataclass(frozen=True)
class Balance:
    available: Decimal
    pending: Decimal
    reserved: Decimal
    withdrawable: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal
    currency: str = 'DJF'


class LedgerService:
    """Authoritative store for professional balances."""

    def get_or_create_wallet(self, professional) -> Wallet:
        wallet, created = Wallet.objects.get_or_create(
            professional=professional,
            defaults={'currency': get_policy().currency},
        )
        if created:
            logger.info(f"Created wallet {wallet.wallet_id} for professional {professional.pk}")
        return wallet

    def get_wallet_for(self, professional_id) -> Wallet:
        try:
            return Wallet.objects.get(professional_id=professional_id)
        except Wallet.DoesNotExist:
            raise NotFoundError("Wallet not found")

    def lock_wallet(self, wallet_id) -> Wallet:
        try:
            return Wallet.objects.select_for_update().get(pk=wallet_id)
        except Wallet.DoesNotExist:
            raise NotFoundError("Wallet not found")

    def _check_conservation(self, wallet: Wallet) -> None:
        if wallet.total_earned - wallet.total_withdrawn != wallet.balance + wallet.pending_balance:
            logger.critical(
                f"Ledger conservation broken on wallet {wallet.wallet_id}: "
                f"earned={wallet.total_earned} withdrawn={wallet.total_withdrawn} "
                f"available={wallet.balance} pending={wallet.pending_balance}"
            )
            raise LedgerIntegrityError(detail={'wallet_id': str(wallet.wallet_id)})

    def _apply(self, wallet: Wallet, entry_type: str, pending_delta: Decimal, available_delta: Decimal,
               description: str, payment: Optional[PaymentRecord] = None,
               withdrawal: Optional[WithdrawalRequest] = None) -> WalletTransaction:
        amount = pending_delta + available_delta
        wallet.pending_balance += pending_delta
        wallet.balance += available_delta
        if entry_type in EARNED_TYPES:
            wallet.total_earned += amount
        elif entry_type == 'withdrawal':
            wallet.total_withdrawn -= amount

        self._check_conservation(wallet)
        wallet.save(update_fields=['balance', 'pending_balance', 'total_earned', 'total_withdrawn', 'updated_at'])

        entry = WalletTransaction.objects.create(
            wallet=wallet,
            type=entry_type,
            amount=amount,
            pending_delta=pending_delta,
            available_delta=available_delta,
            balance_after=wallet.balance,
            pending_after=wallet.pending_balance,
            description=description[:255],
            payment=payment,
            withdrawal=withdrawal,
        )
        logger.info(
            f"Ledger {entry_type} {amount} on wallet {wallet.wallet_id} "
            f"(available={wallet.balance}, pending={wallet.pending_balance})"
        )
        return entry

    @staticmethod
    def _positive(amount) -> Decimal:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Ledger amounts must be positive", code='invalid_amount')
        return amount

    @transaction.atomic
    def credit(self, wallet_id, amount, entry_type: str = 'earning', description: str = '',
               bucket: str = 'pending', payment=None, withdrawal=None) -> WalletTransaction:
        """
        Add funds to a wallet bucket.

        Args:
            wallet_id: Wallet primary key
            amount: Positive amount
            entry_type: Ledger entry type (earning, adjustment)
            description: Human readable description
            bucket: ``pending`` (earnings awaiting release) or ``available``

        Returns:
            The appended WalletTransaction
        """
        amount = self._positive(amount)
        wallet = self.lock_wallet(wallet_id)
        pending_delta, available_delta = (amount, ZERO) if bucket == 'pending' else (ZERO, amount)
        return self._apply(wallet, entry_type, pending_delta, available_delta, description, payment, withdrawal)

    @transaction.atomic
    def debit(self, wallet_id, amount, entry_type: str = 'withdrawal', description: str = '',
              bucket: str = 'available', payment=None, withdrawal=None,
              allow_negative: bool = False) -> WalletTransaction:
        """
        Remove funds from a wallet bucket.

        ``allow_negative`` is reserved for reversals of money that was already
        paid out; the resulting negative balance is offset by future earnings.
        """
        amount = self._positive(amount)
        wallet = self.lock_wallet(wallet_id)
        current = wallet.pending_balance if bucket == 'pending' else wallet.balance
        if amount > current:
            if not allow_negative:
                raise ValidationError("Insufficient balance", code='insufficient_balance')
            logger.warning(
                f"Debit of {amount} from {bucket} on wallet {wallet.wallet_id} exceeds {current}; balance goes negative"
            )
        pending_delta, available_delta = (-amount, ZERO) if bucket == 'pending' else (ZERO, -amount)
        return self._apply(wallet, entry_type, pending_delta, available_delta, description, payment, withdrawal)

    @transaction.atomic
    def release(self, wallet_id, amount, payment=None, description: str = '') -> WalletTransaction:
        """Move funds from pending to available. Net amount of the entry is zero."""
        amount = self._positive(amount)
        wallet = self.lock_wallet(wallet_id)
        if amount > wallet.pending_balance:
            raise ValidationError("Cannot release more than the pending balance", code='insufficient_pending')
        return self._apply(wallet, 'release', -amount, amount, description or 'Earnings released', payment)

    def reserved_amount(self, wallet: Wallet, exclude=None) -> Decimal:
        qs = WithdrawalRequest.objects.filter(wallet=wallet, status__in=WithdrawalRequest.RESERVING_STATUSES)
        if exclude is not None:
            qs = qs.exclude(pk=exclude)
        return qs.aggregate(total=Coalesce(Sum('amount'), ZERO))['total']

    def fold(self, wallet_id) -> Dict[str, Decimal]:
        """Recompute the wallet fields from the transaction log."""
        totals = WalletTransaction.objects.filter(wallet_id=wallet_id).aggregate(
            available=Coalesce(Sum('available_delta'), ZERO),
            pending=Coalesce(Sum('pending_delta'), ZERO),
            earned=Coalesce(Sum('amount', filter=Q(type__in=EARNED_TYPES)), ZERO),
            withdrawn=Coalesce(Sum('amount', filter=Q(type='withdrawal')), ZERO),
        )
        return {
            'balance': totals['available'],
            'pending_balance': totals['pending'],
            'total_earned': totals['earned'],
            'total_withdrawn': -totals['withdrawn'],
        }

    def reconcile(self, wallet_id) -> Wallet:
        """
        Compare cached wallet fields with the fold of the log.

        Raises:
            LedgerIntegrityError: on any mismatch; nothing is corrected
        """
        wallet = Wallet.objects.get(pk=wallet_id)
        folded = self.fold(wallet_id)
        mismatches = {
            name: {'cached': str(getattr(wallet, name)), 'folded': str(value)}
            for name, value in folded.items()
            if getattr(wallet, name) != value
        }
        if mismatches:
            logger.critical(f"Ledger drift on wallet {wallet_id}: {mismatches}")
            raise LedgerIntegrityError(detail={'wallet_id': str(wallet_id), 'mismatches': mismatches})
        return wallet

    def get_balance(self, wallet_id, reconcile: bool = True) -> Balance:
        wallet = self.reconcile(wallet_id) if reconcile else Wallet.objects.get(pk=wallet_id)
        reserved = self.reserved_amount(wallet)
        return Balance(
            available=wallet.balance,
            pending=wallet.pending_balance,
            reserved=reserved,
            withdrawable=max(wallet.balance - reserved, ZERO),
            total_earned=wallet.total_earned,
            total_withdrawn=wallet.total_withdrawn,
            currency=wallet.currency,
        )

    def release_due_earnings(self, now=None) -> int:
        """
        Release the professional share of every completed booking whose
        release delay has elapsed. Each payment is released at most once.
        """
        now = now or timezone.now()
        due = PaymentRecord.objects.filter(
            status='completed',
            released_at__isnull=True,
            booking__status='completed',
            booking__completed_at__lte=release_cutoff(now),
        ).values_list('pk', flat=True)

        released = 0
        for payment_id in list(due):
            with transaction.atomic():
                payment = PaymentRecord.objects.select_for_update().select_related('booking').get(pk=payment_id)
                if payment.released_at is not None or payment.status != 'completed':
                    continue
                wallet = self.get_wallet_for(payment.booking.professional_id)
                self.release(
                    wallet.pk,
                    payment.professional_amount,
                    payment=payment,
                    description=f"Release for booking {str(payment.booking_id)[:8]}",
                )
                payment.released_at = now
                payment.save(update_fields=['released_at', 'updated_at'])
                released += 1

        if released:
            logger.info(f"Released earnings for {released} payments")
        return released
