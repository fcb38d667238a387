from decimal import Decimal

import pytest

from settlement import notifications
from settlement.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from settlement.models import Notification, Wallet, WalletTransaction, WithdrawalRequest
from settlement.withdrawals import WithdrawalService, validate_payout_details

pytestmark = pytest.mark.django_db

PHONE = {'phone': '77123456'}


@pytest.fixture
def funded_wallet(ledger, wallet):
    ledger.credit(wallet.pk, '40000', entry_type='adjustment', bucket='available', description='Opening balance')
    wallet.refresh_from_db()
    return wallet


@pytest.fixture
def service():
    return WithdrawalService()


class TestRequestWithdrawal:

    def test_reserves_without_moving_money(self, service, funded_wallet, professional, ledger, staff_user):
        withdrawal = service.request_withdrawal(professional.pk, '15000', 'waafipay', PHONE)

        assert withdrawal.status == 'pending'
        assert withdrawal.amount == Decimal('15000.00')
        assert withdrawal.payout_details == PHONE
        balance = ledger.get_balance(funded_wallet.pk)
        assert balance.available == Decimal('40000')
        assert balance.reserved == Decimal('15000')
        assert balance.withdrawable == Decimal('25000')
        assert Notification.objects.filter(user=staff_user, type=notifications.WITHDRAWAL_REQUESTED).exists()

    def test_more_than_available_is_rejected(self, service, funded_wallet, professional):
        with pytest.raises(ValidationError) as excinfo:
            service.request_withdrawal(professional.pk, '50000', 'waafipay', PHONE)
        assert excinfo.value.code == 'insufficient_balance'
        assert not WithdrawalRequest.objects.exists()

    def test_pending_reservations_count_against_new_requests(self, service, funded_wallet, professional):
        service.request_withdrawal(professional.pk, '30000', 'waafipay', PHONE)
        with pytest.raises(ValidationError) as excinfo:
            service.request_withdrawal(professional.pk, '10001', 'dmoney', PHONE)
        assert excinfo.value.code == 'insufficient_balance'
        service.request_withdrawal(professional.pk, '10000', 'dmoney', PHONE)

    def test_below_minimum(self, service, funded_wallet, professional):
        with pytest.raises(ValidationError) as excinfo:
            service.request_withdrawal(professional.pk, '999', 'waafipay', PHONE)
        assert excinfo.value.code == 'amount_below_minimum'

    def test_pending_earnings_are_not_withdrawable(self, service, ledger, wallet, professional):
        ledger.credit(wallet.pk, '9000')
        with pytest.raises(ValidationError):
            service.request_withdrawal(professional.pk, '5000', 'waafipay', PHONE)

    def test_bank_details_required(self, service, funded_wallet, professional):
        with pytest.raises(ValidationError) as excinfo:
            service.request_withdrawal(professional.pk, '5000', 'bank', {'bank_name': 'BCIMR'})
        assert excinfo.value.code == 'missing_payout_details'

    def test_stored_payout_details_are_used(self, service, funded_wallet, professional):
        service.update_payout_info(professional.pk, 'waafipay', PHONE)
        withdrawal = service.request_withdrawal(professional.pk, '5000', 'waafipay')
        assert withdrawal.payout_details == PHONE

    def test_professional_without_wallet(self, service, professional):
        with pytest.raises(NotFoundError):
            service.request_withdrawal(professional.pk, '5000', 'waafipay', PHONE)


class TestOperatorWorkflow:

    def test_complete_debits_the_wallet(self, service, funded_wallet, professional, ledger):
        withdrawal = service.request_withdrawal(professional.pk, '15000', 'waafipay', PHONE)
        service.start_processing(withdrawal.pk, admin_notes='Sent to WaafiPay batch')
        completed = service.complete_withdrawal(withdrawal.pk, transaction_reference='WP-7781')

        assert completed.status == 'completed'
        assert completed.processed_at is not None
        assert completed.transaction_reference == 'WP-7781'
        entry = WalletTransaction.objects.get(withdrawal=completed)
        assert entry.type == 'withdrawal'
        assert entry.amount == Decimal('-15000.00')

        balance = ledger.get_balance(funded_wallet.pk)
        assert balance.available == Decimal('25000')
        assert balance.reserved == Decimal('0')
        assert balance.total_withdrawn == Decimal('15000')
        assert Notification.objects.filter(user=professional, type=notifications.WITHDRAWAL_COMPLETED).exists()

    def test_pending_request_can_be_completed_directly(self, service, funded_wallet, professional):
        withdrawal = service.request_withdrawal(professional.pk, '1000', 'dmoney', PHONE)
        assert service.complete_withdrawal(withdrawal.pk).status == 'completed'

    def test_reject_frees_the_reservation(self, service, funded_wallet, professional, ledger):
        withdrawal = service.request_withdrawal(professional.pk, '40000', 'waafipay', PHONE)
        service.reject_withdrawal(withdrawal.pk, admin_notes='Phone number does not match')

        balance = ledger.get_balance(funded_wallet.pk)
        assert balance.withdrawable == Decimal('40000')
        assert not WalletTransaction.objects.filter(type='withdrawal').exists()
        notification = Notification.objects.get(user=professional, type=notifications.WITHDRAWAL_REJECTED)
        assert 'Phone number does not match' in notification.message

    @pytest.mark.parametrize('first,then', [
        ('reject_withdrawal', 'complete_withdrawal'),
        ('complete_withdrawal', 'reject_withdrawal'),
        ('complete_withdrawal', 'start_processing'),
    ])
    def test_terminal_requests_do_not_move(self, service, funded_wallet, professional, first, then):
        withdrawal = service.request_withdrawal(professional.pk, '5000', 'waafipay', PHONE)
        getattr(service, first)(withdrawal.pk)
        with pytest.raises(InvalidTransitionError):
            getattr(service, then)(withdrawal.pk)

    def test_unknown_request(self, service, db):
        with pytest.raises(NotFoundError):
            service.start_processing('6f1c1d8e-0000-4000-8000-000000000000')


class TestPayoutInfo:

    def test_bank_details_stored(self, service, professional):
        wallet = service.update_payout_info(professional.pk, 'bank', {
            'bank_name': 'BCIMR', 'account_number': '0012345678', 'account_holder': 'Farah Ali',
        })
        assert wallet.preferred_payout_method == 'bank'
        assert wallet.bank_account_number == '0012345678'
        assert wallet.bank_account_name == 'Farah Ali'

    def test_stripe_requires_connected_account(self, service, professional):
        with pytest.raises(ValidationError) as excinfo:
            service.update_payout_info(professional.pk, 'stripe')
        assert excinfo.value.code == 'stripe_not_connected'

    def test_unknown_method(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_payout_details('paypal', {})
        assert excinfo.value.code == 'invalid_payout_method'


class FakeConnect:

    def __init__(self, status='incomplete'):
        self.status = status

    def create_connected_account(self, email):
        return {'account_id': 'acct_new', 'onboarding_url': 'https://connect.stripe.com/setup/new'}

    def refresh_account_status(self, account_id):
        return self.status

    def create_onboarding_link(self, account_id):
        return f'https://connect.stripe.com/setup/{account_id}'


class TestStripeConnect:

    def test_creates_account(self, service, professional):
        result = service.connect_stripe_account(professional.pk, FakeConnect())
        assert result == {
            'account_id': 'acct_new',
            'status': 'incomplete',
            'onboarding_url': 'https://connect.stripe.com/setup/new',
        }
        assert Wallet.objects.get(professional=professional).stripe_account_id == 'acct_new'

    def test_resumes_onboarding(self, service, wallet, professional):
        wallet.stripe_account_id = 'acct_old'
        wallet.save()
        result = service.connect_stripe_account(professional.pk, FakeConnect(status='pending'))
        assert result['onboarding_url'] == 'https://connect.stripe.com/setup/acct_old'

    def test_active_account(self, service, wallet, professional):
        wallet.stripe_account_id = 'acct_old'
        wallet.save()
        result = service.connect_stripe_account(professional.pk, FakeConnect(status='active'))
        assert result == {'account_id': 'acct_old', 'status': 'active'}
        wallet.refresh_from_db()
        assert wallet.stripe_account_status == 'active'
        assert service.update_payout_info(professional.pk, 'stripe').preferred_payout_method == 'stripe'
