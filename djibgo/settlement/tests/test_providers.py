from decimal import Decimal

import pytest
import requests
import stripe

from settlement.exceptions import ProviderError, ValidationError
from settlement.providers import get_provider, supports_push_refunds
from settlement.providers.base import ProviderRequest
from settlement.providers.manual import ManualTransferProvider
from settlement.providers.stripe_connect import StripeConnectProvider, account_status, to_stripe_amount
from settlement.providers.waafipay import WaafiPayProvider, format_phone


def make_request(**overrides):
    values = dict(
        amount=Decimal('10000.00'),
        currency='DJF',
        payer_reference='+253 77 12 34 56',
        transaction_reference='DJIBGO-1700000000000-abcdef12',
        booking_id='abcdef12-3456-7890-abcd-ef1234567890',
    )
    values.update(overrides)
    return ProviderRequest(**values)


class TestRegistry:

    def test_known_rails(self, settings):
        settings.STRIPE_SECRET_KEY = 'sk_test_123'
        assert isinstance(get_provider('waafipay'), WaafiPayProvider)
        assert isinstance(get_provider('stripe'), StripeConnectProvider)
        assert get_provider('dmoney').name == 'dmoney'
        assert get_provider('bank').name == 'bank'

    def test_unknown_rail(self):
        with pytest.raises(ValidationError) as excinfo:
            get_provider('paypal')
        assert excinfo.value.code == 'unknown_provider'

    def test_push_refund_support(self):
        assert supports_push_refunds('stripe') is True
        assert supports_push_refunds('waafipay') is False
        assert supports_push_refunds('bank') is False
        assert supports_push_refunds('paypal') is False


class TestManualTransfer:

    def test_instructions_quote_the_reference(self):
        result = ManualTransferProvider('dmoney').submit(make_request())
        assert result.success and result.pending
        assert 'DJIBGO-1700000000000-abcdef12' in result.instructions
        assert '*770#' in result.instructions

    def test_unknown_rail(self):
        with pytest.raises(ValueError):
            ManualTransferProvider('cash')


class FakeHttpResponse:

    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        return self._body


class FakeSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append((url, json))
        if self.error is not None:
            raise self.error
        return self.response


class TestWaafiPay:

    @pytest.fixture
    def live(self, settings):
        settings.WAAFIPAY_MERCHANT_ID = 'M0910291'
        settings.WAAFIPAY_API_USER_ID = '1000416'
        settings.WAAFIPAY_API_KEY = 'API-675418888AHX'
        return WaafiPayProvider(test_mode=False)

    @pytest.mark.parametrize('raw,expected', [
        ('+253 77 12 34 56', '77123456'),
        ('25377123456', '77123456'),
        ('77123456', '77123456'),
    ])
    def test_format_phone(self, raw, expected):
        assert format_phone(raw) == expected

    def test_live_mode_requires_credentials(self, settings):
        settings.WAAFIPAY_MERCHANT_ID = ''
        settings.WAAFIPAY_API_KEY = ''
        with pytest.raises(ProviderError):
            WaafiPayProvider(test_mode=False)

    def test_test_mode_simulates_and_defers(self):
        result = WaafiPayProvider(test_mode=True).submit(make_request())
        assert result.success and result.pending and result.test_mode
        assert result.confirm_after == 60
        assert result.provider_txn_id == 'TEST-DJIBGO-1700000000000-abcdef12'
        assert '253771111111' in result.instructions

    def test_purchase_payload(self, live):
        payload = live.build_purchase_payload(make_request())
        params = payload['serviceParams']
        assert payload['serviceName'] == 'API_PURCHASE'
        assert payload['requestId'] == 'DJIBGO-1700000000000-abcdef12'
        assert params['merchantUid'] == 'M0910291'
        assert params['payerInfo']['accountNo'] == '77123456'
        assert params['transactionInfo']['amount'] == '10000.00'
        assert params['transactionInfo']['currency'] == 'DJF'

    def test_approved(self, live):
        live._session = FakeSession(FakeHttpResponse(200, {
            'responseCode': '2001',
            'responseMsg': 'RCS_SUCCESS',
            'params': {'state': 'APPROVED', 'transactionId': '40040291'},
        }))
        result = live.submit(make_request())
        assert result.success and not result.pending
        assert result.provider_txn_id == '40040291'
        assert live._session.posts[0][0] == 'https://api.waafipay.net/asm'

    def test_declined(self, live):
        live._session = FakeSession(FakeHttpResponse(200, {
            'responseCode': '5206',
            'responseMsg': 'Payment Failed (Insufficient balance)',
        }))
        result = live.submit(make_request())
        assert not result.success and not result.retryable
        assert result.error_message == 'Payment Failed (Insufficient balance)'

    def test_network_failure_is_retryable(self, live):
        live._session = FakeSession(error=requests.exceptions.ConnectionError('reset by peer'))
        result = live.submit(make_request())
        assert not result.success
        assert result.retryable

    def test_server_error_is_retryable(self, live):
        live._session = FakeSession(FakeHttpResponse(503, {'error': 'maintenance'}))
        result = live.submit(make_request())
        assert result.retryable

    def test_client_error_is_terminal(self, live):
        live._session = FakeSession(FakeHttpResponse(401, {'error': 'bad key'}))
        result = live.submit(make_request())
        assert not result.success and not result.retryable


class StripeObject(dict):

    def to_dict(self):
        return dict(self)


class TestStripeConnect:

    @pytest.fixture
    def provider(self, settings):
        settings.STRIPE_SECRET_KEY = 'sk_test_123'
        settings.STRIPE_WEBHOOK_SECRET = 'whsec_123'
        return StripeConnectProvider()

    def test_missing_key(self, settings):
        settings.STRIPE_SECRET_KEY = ''
        with pytest.raises(ProviderError):
            StripeConnectProvider()

    def test_zero_decimal_amounts(self):
        assert to_stripe_amount(Decimal('10000.00'), 'DJF') == 10000
        assert to_stripe_amount(Decimal('12.34'), 'EUR') == 1234

    @pytest.mark.parametrize('account,status', [
        ({'charges_enabled': True, 'payouts_enabled': True}, 'active'),
        ({'details_submitted': True}, 'pending'),
        ({}, 'incomplete'),
    ])
    def test_account_status(self, account, status):
        assert account_status(account) == status

    def test_destination_charge_is_idempotent(self, provider, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return StripeObject(id='pi_123', status='succeeded')

        monkeypatch.setattr(stripe.PaymentIntent, 'create', create)
        result = provider.submit(make_request(
            payer_reference='pm_card_visa', destination_account='acct_9', application_fee=Decimal('1000.00'),
        ))

        assert result.success and not result.pending
        assert result.provider_txn_id == 'pi_123'
        params = calls[0]
        assert params['idempotency_key'] == 'DJIBGO-1700000000000-abcdef12'
        assert params['amount'] == 10000
        assert params['currency'] == 'djf'
        assert params['transfer_data'] == {'destination': 'acct_9'}
        assert params['application_fee_amount'] == 1000

    def test_processing_intent_is_pending(self, provider, monkeypatch):
        monkeypatch.setattr(stripe.PaymentIntent, 'create',
                            lambda **kw: StripeObject(id='pi_9', status='processing'))
        result = provider.submit(make_request(payer_reference='pm_card_visa'))
        assert result.success and result.pending

    def test_connection_error_is_retryable(self, provider, monkeypatch):
        def create(**kwargs):
            raise stripe.APIConnectionError('connection reset')

        monkeypatch.setattr(stripe.PaymentIntent, 'create', create)
        result = provider.submit(make_request(payer_reference='pm_card_visa'))
        assert not result.success and result.retryable

    def test_refund_uses_reference_idempotency_key(self, provider, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return StripeObject(id='re_1', status='succeeded')

        monkeypatch.setattr(stripe.Refund, 'create', create)
        result = provider.refund('pi_123', Decimal('5000.00'), 'DJF', 'DJIBGO-1-abc', reason='PARTIAL_REFUND_12H')

        assert result.success
        assert result.refund_reference == 're_1'
        assert calls[0]['idempotency_key'] == 'refund-DJIBGO-1-abc'
        assert calls[0]['amount'] == 5000
        assert calls[0]['reverse_transfer'] is True

    def test_invalid_webhook_signature(self, provider, monkeypatch):
        def construct_event(payload, signature, secret):
            raise ValueError('bad payload')

        monkeypatch.setattr(stripe.Webhook, 'construct_event', construct_event)
        with pytest.raises(ValidationError) as excinfo:
            provider.construct_event(b'{}', 't=1,v1=abc')
        assert excinfo.value.code == 'invalid_signature'
