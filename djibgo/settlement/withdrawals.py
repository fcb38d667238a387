"""
Professional payouts.

A request reserves its amount against the wallet without moving money;
the ledger is only debited when an operator completes the payout.
"""
import logging
from typing import Dict, Optional

from django.contrib.auth.models import User
from django.db import transaction
from django.utils import timezone

from . import notifications
from .exceptions import NotFoundError, ValidationError
from .ledger import LedgerService
from .models import Wallet, WithdrawalRequest
from .policy import check_withdrawal_amount, get_policy

logger = logging.getLogger(__name__)

PAYOUT_DETAIL_FIELDS = {
    'waafipay': ('phone',),
    'dmoney': ('phone',),
    'bank': ('bank_name', 'account_number', 'account_holder'),
}

# Stored wallet field for each payout detail, per method.
WALLET_PAYOUT_FIELDS = {
    'waafipay': {'phone': 'waafi_phone'},
    'dmoney': {'phone': 'dmoney_phone'},
    'bank': {
        'bank_name': 'bank_name',
        'account_number': 'bank_account_number',
        'account_holder': 'bank_account_name',
    },
}


def validate_payout_details(method: str, details: Optional[Dict]) -> Dict[str, str]:
    if method not in PAYOUT_DETAIL_FIELDS:
        raise ValidationError(f"Unsupported payout method: {method}", code='invalid_payout_method')
    details = details or {}
    cleaned = {}
    missing = []
    for name in PAYOUT_DETAIL_FIELDS[method]:
        value = str(details.get(name) or '').strip()
        if not value:
            missing.append(name)
        cleaned[name] = value
    if missing:
        raise ValidationError(
            f"Missing payout details: {', '.join(missing)}",
            code='missing_payout_details',
        )
    return cleaned


def stored_payout_details(wallet: Wallet, method: str) -> Dict[str, str]:
    return {
        name: getattr(wallet, field)
        for name, field in WALLET_PAYOUT_FIELDS.get(method, {}).items()
    }


class WithdrawalService:

    def __init__(self, ledger: Optional[LedgerService] = None):
        self.ledger = ledger or LedgerService()

    def _lock(self, withdrawal_id) -> WithdrawalRequest:
        try:
            return WithdrawalRequest.objects.select_for_update().get(pk=withdrawal_id)
        except WithdrawalRequest.DoesNotExist:
            raise NotFoundError("Withdrawal request not found")

    def request_withdrawal(self, professional_id, amount, method: str,
                           details: Optional[Dict] = None) -> WithdrawalRequest:
        """
        Reserve ``amount`` of the available balance for a payout.

        Details omitted by the caller fall back to the payout information
        stored on the wallet.

        Raises:
            ValidationError: below the minimum, above the reserved-aware
                available balance, or incomplete payout details
        """
        wallet = self.ledger.get_wallet_for(professional_id)
        details = validate_payout_details(method, {**stored_payout_details(wallet, method), **(details or {})})

        with transaction.atomic():
            wallet = self.ledger.lock_wallet(wallet.pk)
            reserved = self.ledger.reserved_amount(wallet)
            amount = check_withdrawal_amount(amount, wallet.balance - reserved)

            withdrawal = WithdrawalRequest.objects.create(
                wallet=wallet,
                professional_id=professional_id,
                amount=amount,
                payout_method=method,
                payout_details=details,
            )

            notifications.notify_staff(
                notifications.WITHDRAWAL_REQUESTED,
                "New withdrawal request",
                f"Withdrawal of {amount} {wallet.currency} via {withdrawal.get_payout_method_display()} "
                f"requested by professional {professional_id}.",
            )

        logger.info(
            f"Withdrawal {withdrawal.withdrawal_id} of {amount} requested by {professional_id} "
            f"(available {wallet.balance}, already reserved {reserved})"
        )
        return withdrawal

    def start_processing(self, withdrawal_id, admin_notes: str = '') -> WithdrawalRequest:
        with transaction.atomic():
            withdrawal = self._lock(withdrawal_id)
            withdrawal.transition_to('processing')
            if admin_notes:
                withdrawal.admin_notes = admin_notes
            withdrawal.save(update_fields=['status', 'admin_notes'])

            notifications.notify(
                withdrawal.professional,
                notifications.WITHDRAWAL_PROCESSING,
                "Withdrawal in progress",
                f"Your withdrawal of {withdrawal.amount} is being processed.",
            )

        logger.info(f"Withdrawal {withdrawal_id} is processing")
        return withdrawal

    def complete_withdrawal(self, withdrawal_id, transaction_reference: str = '',
                            admin_notes: str = '') -> WithdrawalRequest:
        """Record the payout as sent and debit the wallet."""
        with transaction.atomic():
            withdrawal = self._lock(withdrawal_id)
            withdrawal.transition_to('completed')
            withdrawal.processed_at = timezone.now()
            withdrawal.transaction_reference = transaction_reference
            if admin_notes:
                withdrawal.admin_notes = admin_notes
            withdrawal.save(update_fields=['status', 'processed_at', 'transaction_reference', 'admin_notes'])

            self.ledger.debit(
                withdrawal.wallet_id,
                withdrawal.amount,
                entry_type='withdrawal',
                description=f"Withdrawal via {withdrawal.get_payout_method_display()}",
                bucket='available',
                withdrawal=withdrawal,
            )

            notifications.notify(
                withdrawal.professional,
                notifications.WITHDRAWAL_COMPLETED,
                "Withdrawal completed",
                f"Your withdrawal of {withdrawal.amount} has been sent"
                f"{f' (reference {transaction_reference})' if transaction_reference else ''}.",
            )

        logger.info(f"Withdrawal {withdrawal_id} completed: {withdrawal.amount} paid out")
        return withdrawal

    def reject_withdrawal(self, withdrawal_id, admin_notes: str = '') -> WithdrawalRequest:
        """Reject the request; its reservation is released with the status change."""
        with transaction.atomic():
            withdrawal = self._lock(withdrawal_id)
            withdrawal.transition_to('rejected')
            withdrawal.processed_at = timezone.now()
            withdrawal.admin_notes = admin_notes
            withdrawal.save(update_fields=['status', 'processed_at', 'admin_notes'])

            notifications.notify(
                withdrawal.professional,
                notifications.WITHDRAWAL_REJECTED,
                "Withdrawal rejected",
                f"Your withdrawal of {withdrawal.amount} was rejected"
                f"{f': {admin_notes}' if admin_notes else '.'}",
            )

        logger.info(f"Withdrawal {withdrawal_id} rejected: {admin_notes}")
        return withdrawal

    def update_payout_info(self, professional_id, method: str, details: Optional[Dict] = None) -> Wallet:
        """Set the preferred payout method and store its account identifiers."""
        try:
            professional = User.objects.get(pk=professional_id)
        except User.DoesNotExist:
            raise NotFoundError("Professional not found")
        wallet = self.ledger.get_or_create_wallet(professional)

        if method == 'stripe':
            if not wallet.stripe_account_id:
                raise ValidationError("Connect a Stripe account first", code='stripe_not_connected')
            changed = []
        else:
            cleaned = validate_payout_details(method, details)
            changed = []
            for name, field in WALLET_PAYOUT_FIELDS[method].items():
                setattr(wallet, field, cleaned[name])
                changed.append(field)

        wallet.preferred_payout_method = method
        wallet.save(update_fields=changed + ['preferred_payout_method', 'updated_at'])
        logger.info(f"Payout info updated for professional {professional_id}: {method}")
        return wallet

    def list_withdrawals(self, professional_id):
        return WithdrawalRequest.objects.filter(professional_id=professional_id).order_by('-created_at')

    def connect_stripe_account(self, professional_id, provider) -> Dict[str, str]:
        """
        Start (or resume) Stripe Connect onboarding for a professional.

        Returns:
            dict with ``account_id``, ``status`` and, while onboarding is not
            finished, ``onboarding_url``
        """
        try:
            professional = User.objects.get(pk=professional_id)
        except User.DoesNotExist:
            raise NotFoundError("Professional not found")
        wallet = self.ledger.get_or_create_wallet(professional)

        if wallet.stripe_account_id:
            status = provider.refresh_account_status(wallet.stripe_account_id)
            wallet.stripe_account_status = status
            wallet.save(update_fields=['stripe_account_status', 'updated_at'])
            result = {'account_id': wallet.stripe_account_id, 'status': status}
            if status != 'active':
                result['onboarding_url'] = provider.create_onboarding_link(wallet.stripe_account_id)
            return result

        created = provider.create_connected_account(professional.email)
        wallet.stripe_account_id = created['account_id']
        wallet.stripe_account_status = 'incomplete'
        wallet.save(update_fields=['stripe_account_id', 'stripe_account_status', 'updated_at'])
        logger.info(f"Stripe account {created['account_id']} created for professional {professional_id}")
        return {
            'account_id': created['account_id'],
            'status': 'incomplete',
            'onboarding_url': created['onboarding_url'],
        }


def minimum_withdrawal():
    return get_policy().minimum_withdrawal
