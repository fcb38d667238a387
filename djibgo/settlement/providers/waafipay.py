import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils import timezone

from ..exceptions import ProviderError
from .base import HttpProviderMixin, PaymentProvider, ProviderRequest, ProviderResult

logger = logging.getLogger(__name__)

APPROVED_CODE = '2001'
APPROVED_STATE = 'APPROVED'

# Sandbox account used by the simulated rail.
TEST_PHONE = '253771111111'
TEST_PIN = '1212'


def format_phone(phone: str) -> str:
    """Strip the +253 country prefix, WaafiPay expects the local account number."""
    phone = (phone or '').strip().replace(' ', '')
    if phone.startswith('+'):
        phone = phone[1:]
    if phone.startswith('253'):
        phone = phone[3:]
    return phone


class WaafiPayProvider(HttpProviderMixin, PaymentProvider):
    """
    WaafiPay mobile wallet purchase (``API_PURCHASE`` on ``/asm``).

    In test mode nothing leaves the process: the adapter synthesises an
    approved response and asks for a delayed confirmation instead.
    """

    name = 'waafipay'
    supports_refunds = False

    def __init__(self, test_mode: Optional[bool] = None):
        self.base_url = getattr(settings, 'WAAFIPAY_API_URL', 'https://api.waafipay.net')
        self.merchant_uid = getattr(settings, 'WAAFIPAY_MERCHANT_ID', '')
        self.api_user_id = getattr(settings, 'WAAFIPAY_API_USER_ID', '')
        self.api_key = getattr(settings, 'WAAFIPAY_API_KEY', '')
        self.confirm_delay = int(getattr(settings, 'WAAFIPAY_TEST_CONFIRM_DELAY', 60))
        self._test_mode = getattr(settings, 'WAAFIPAY_TEST_MODE', False) if test_mode is None else test_mode

        if not self._test_mode and not (self.merchant_uid and self.api_key):
            raise ProviderError("WaafiPay credentials are not configured", provider=self.name)

    @property
    def test_mode(self) -> bool:
        return bool(self._test_mode)

    def build_purchase_payload(self, request: ProviderRequest) -> Dict[str, Any]:
        return {
            'schemaVersion': '1.0',
            'requestId': request.transaction_reference,
            'timestamp': timezone.now().isoformat(),
            'channelName': 'WEB',
            'serviceName': 'API_PURCHASE',
            'serviceParams': {
                'merchantUid': self.merchant_uid,
                'apiUserId': self.api_user_id,
                'apiKey': self.api_key,
                'paymentMethod': 'MWALLET_ACCOUNT',
                'payerInfo': {
                    'accountNo': format_phone(request.payer_reference),
                },
                'transactionInfo': {
                    'referenceId': request.transaction_reference,
                    'invoiceId': request.booking_id,
                    'amount': str(request.amount),
                    'currency': request.currency,
                    'description': request.description or 'DjibGo service',
                    'merchantNote': f"Booking {request.booking_id}",
                },
            },
        }

    def submit(self, request: ProviderRequest) -> ProviderResult:
        if self.test_mode:
            return self._simulate(request)

        payload = self.build_purchase_payload(request)
        try:
            response = self._make_request('POST', 'asm', payload)
        except ProviderError as e:
            return ProviderResult(
                success=False,
                raw_response=e.raw_response,
                error_message=e.provider_message,
                retryable=e.retryable,
            )

        # Live responses nest the state under "params"; older ones keep it top-level.
        params = response.get('params') or response
        if response.get('responseCode') == APPROVED_CODE and params.get('state') == APPROVED_STATE:
            logger.info(f"WaafiPay approved {request.transaction_reference}")
            return ProviderResult(
                success=True,
                provider_txn_id=str(params.get('transactionId', '')),
                raw_response=response,
            )

        message = response.get('responseMsg') or 'Payment failed'
        logger.warning(f"WaafiPay declined {request.transaction_reference}: {message}")
        return ProviderResult(success=False, raw_response=response, error_message=message)

    def _simulate(self, request: ProviderRequest) -> ProviderResult:
        """Deterministic sandbox response; confirmation is scheduled by the caller."""
        logger.info(f"WaafiPay test mode: simulating purchase {request.transaction_reference}")
        response = {
            'responseCode': APPROVED_CODE,
            'responseMsg': 'Transaction successful',
            'transactionId': f"TEST-{request.transaction_reference}",
            'referenceNumber': request.transaction_reference,
            'state': APPROVED_STATE,
            'sandboxAccount': TEST_PHONE,
        }
        return ProviderResult(
            success=True,
            provider_txn_id=response['transactionId'],
            raw_response=response,
            pending=True,
            confirm_after=self.confirm_delay,
            test_mode=True,
            instructions=(
                f"TEST MODE\nTest number: {TEST_PHONE}\nTest PIN: {TEST_PIN}\n"
                f"The payment will be confirmed automatically in {self.confirm_delay} seconds."
            ),
        )
