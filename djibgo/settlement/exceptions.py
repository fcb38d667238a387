"""
Settlement error taxonomy.

Every error carries a stable ``code``, a ``user_message`` that is safe to
show to the caller, and an optional ``detail`` dict that is only ever logged.
"""


class SettlementError(Exception):
    """Base class for settlement domain errors."""

    code = 'settlement_error'
    status_code = 400
    default_message = 'The operation could not be completed'

    def __init__(self, user_message=None, *, code=None, detail=None):
        self.user_message = user_message or self.default_message
        if code:
            self.code = code
        self.detail = detail or {}
        super().__init__(self.user_message)


class ValidationError(SettlementError):
    """Bad amount, missing field or business-rule rejection. No side effects."""

    code = 'validation_error'
    default_message = 'Invalid request'


class AlreadyPaidError(ValidationError):
    code = 'already_paid'
    default_message = 'This booking has already been paid'


class PaymentInProgressError(ValidationError):
    code = 'payment_in_progress'
    default_message = 'A payment for this booking is already awaiting confirmation'


class AlreadyRefundedError(ValidationError):
    code = 'already_refunded'
    default_message = 'This payment has already been refunded'


class RefundWindowClosedError(ValidationError):
    """Raised for cancellations inside the no-refund window."""

    code = 'NO_REFUND_WINDOW'
    default_message = 'No refund is possible within 12 hours of the service'

    def __init__(self, user_message=None, *, hours_until_service=None, **kwargs):
        self.hours_until_service = hours_until_service
        super().__init__(user_message, **kwargs)


class InvalidTransitionError(ValidationError):
    code = 'invalid_transition'
    default_message = 'This status change is not allowed'


class NotFoundError(SettlementError):
    code = 'not_found'
    status_code = 404
    default_message = 'Not found'


class OwnershipError(SettlementError):
    """The authenticated actor does not own the targeted resource."""

    code = 'forbidden'
    status_code = 403
    default_message = 'You are not allowed to act on this resource'


class ProviderError(SettlementError):
    """
    Failure reported by (or while talking to) a payment rail.

    ``retryable`` failures (network, timeouts, 5xx) may be retried by the
    caller with a fresh transaction reference; terminal ones may not.
    """

    code = 'provider_error'
    status_code = 502
    default_message = 'The payment provider is unavailable, please try again later'

    def __init__(self, provider_message='', *, retryable=False, raw_response=None, provider=None):
        self.provider_message = provider_message
        self.retryable = retryable
        self.raw_response = raw_response
        self.provider = provider
        super().__init__(
            code='provider_retryable' if retryable else 'provider_rejected',
            detail={'provider': provider, 'message': provider_message},
        )
        if retryable:
            self.status_code = 503


class LedgerIntegrityError(SettlementError):
    """Cached wallet fields disagree with the transaction log. Needs manual reconciliation."""

    code = 'ledger_integrity'
    status_code = 500
    default_message = 'Your wallet is temporarily unavailable, please try again later'
