import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe
from django.conf import settings

from ..exceptions import ProviderError, ValidationError
from ..policy import currency_exponent
from .base import PaymentProvider, ProviderRequest, ProviderResult, RefundResult, provider_timeout

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def to_stripe_amount(amount: Decimal, currency: str) -> int:
    """Stripe takes integer amounts in the smallest unit; DJF is zero-decimal."""
    return int(amount.scaleb(currency_exponent(currency)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def account_status(account) -> str:
    if account.get('charges_enabled') and account.get('payouts_enabled'):
        return 'active'
    if account.get('details_submitted'):
        return 'pending'
    return 'incomplete'


class StripeConnectProvider(PaymentProvider):
    """
    Card payments through Stripe with a destination charge to the
    professional's Connect account when it is active.

    The transaction reference is the Stripe idempotency key, so a retried
    submission of the same attempt cannot charge twice.
    """

    name = 'stripe'
    supports_refunds = True

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or getattr(settings, 'STRIPE_SECRET_KEY', None)
        if not self.api_key:
            raise ProviderError("STRIPE_SECRET_KEY not found in settings", provider=self.name)
        self.max_retries = int(settings.SETTLEMENT.get('PROVIDER_MAX_RETRIES', 3))

    def _configure(self):
        stripe.api_key = self.api_key
        stripe.max_network_retries = self.max_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=provider_timeout())

    def _error_result(self, error: stripe.StripeError) -> ProviderResult:
        retryable = isinstance(error, RETRYABLE_ERRORS)
        message = getattr(error, 'user_message', None) or str(error)
        log = logger.warning if retryable else logger.error
        log(f"Stripe error ({type(error).__name__}): {message}")
        return ProviderResult(
            success=False,
            raw_response=getattr(error, 'json_body', None),
            error_message=message,
            retryable=retryable,
        )

    def submit(self, request: ProviderRequest) -> ProviderResult:
        self._configure()
        params: Dict[str, Any] = {
            'amount': to_stripe_amount(request.amount, request.currency),
            'currency': request.currency.lower(),
            'payment_method': request.payer_reference,
            'payment_method_types': ['card'],
            'confirm': True,
            'description': request.description or f"Booking {request.booking_id}",
            'transfer_group': request.booking_id,
            'metadata': {
                'booking_id': request.booking_id,
                'transaction_reference': request.transaction_reference,
                **{k: str(v) for k, v in request.metadata.items()},
            },
        }
        if request.destination_account:
            params['transfer_data'] = {'destination': request.destination_account}
            if request.application_fee is not None:
                params['application_fee_amount'] = to_stripe_amount(request.application_fee, request.currency)

        try:
            intent = stripe.PaymentIntent.create(idempotency_key=request.transaction_reference, **params)
        except stripe.StripeError as e:
            return self._error_result(e)

        raw = intent.to_dict() if hasattr(intent, 'to_dict') else dict(intent)
        if intent['status'] == 'succeeded':
            logger.info(f"Stripe PaymentIntent {intent['id']} succeeded for {request.transaction_reference}")
            return ProviderResult(success=True, provider_txn_id=intent['id'], raw_response=raw)
        if intent['status'] in ('processing', 'requires_capture'):
            return ProviderResult(success=True, provider_txn_id=intent['id'], raw_response=raw, pending=True)

        return ProviderResult(
            success=False,
            provider_txn_id=intent['id'],
            raw_response=raw,
            error_message=f"Payment intent ended in status {intent['status']}",
        )

    def refund(self, provider_txn_id: str, amount: Decimal, currency: str,
               reference: str, reason: str = '') -> RefundResult:
        self._configure()
        try:
            refund = stripe.Refund.create(
                payment_intent=provider_txn_id,
                amount=to_stripe_amount(amount, currency),
                reverse_transfer=True,
                refund_application_fee=True,
                metadata={'reference': reference, 'policy_reason': reason},
                idempotency_key=f"refund-{reference}",
            )
        except stripe.StripeError as e:
            result = self._error_result(e)
            raise ProviderError(
                result.error_message, retryable=result.retryable,
                raw_response=result.raw_response, provider=self.name,
            )

        raw = refund.to_dict() if hasattr(refund, 'to_dict') else dict(refund)
        if refund['status'] in ('succeeded', 'pending'):
            return RefundResult(success=True, refund_reference=refund['id'], raw_response=raw)
        return RefundResult(success=False, refund_reference=refund['id'], raw_response=raw,
                            error_message=f"Refund ended in status {refund['status']}")

    def create_connected_account(self, email: str, country: str = 'FR') -> Dict[str, str]:
        """
        Create an Express account and its onboarding link.

        Djibouti is not a Connect country, so accounts default to FR.
        """
        self._configure()
        try:
            account = stripe.Account.create(
                type='express',
                country=country,
                email=email,
                capabilities={
                    'card_payments': {'requested': True},
                    'transfers': {'requested': True},
                },
                business_type='individual',
            )
        except stripe.StripeError as e:
            result = self._error_result(e)
            raise ProviderError(result.error_message, retryable=result.retryable, provider=self.name)
        return {'account_id': account['id'], 'onboarding_url': self.create_onboarding_link(account['id'])}

    def create_onboarding_link(self, account_id: str) -> str:
        self._configure()
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=getattr(settings, 'STRIPE_CONNECT_REFRESH_URL', ''),
                return_url=getattr(settings, 'STRIPE_CONNECT_RETURN_URL', ''),
                type='account_onboarding',
            )
        except stripe.StripeError as e:
            result = self._error_result(e)
            raise ProviderError(result.error_message, retryable=result.retryable, provider=self.name)
        return link['url']

    def refresh_account_status(self, account_id: str) -> str:
        self._configure()
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as e:
            result = self._error_result(e)
            raise ProviderError(result.error_message, retryable=result.retryable, provider=self.name)
        return account_status(account)

    def construct_event(self, payload: bytes, signature: str):
        """Verify a webhook payload against ``STRIPE_WEBHOOK_SECRET`` and decode it."""
        secret = getattr(settings, 'STRIPE_WEBHOOK_SECRET', '')
        if not secret:
            raise ProviderError("STRIPE_WEBHOOK_SECRET not found in settings", provider=self.name)
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Rejected Stripe webhook: {str(e)}")
            raise ValidationError("Invalid webhook signature", code='invalid_signature')
