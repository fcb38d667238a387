"""
Money policy engine.

Pure functions for commission splits, the cancellation refund schedule,
the earnings release delay and withdrawal limits. Nothing here touches the
database or the network; the business constants come from
``settings.SETTLEMENT`` through :func:`get_policy` and every function also
accepts an explicit policy so it can be exercised without Django settings.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional, Union

from django.conf import settings

from .exceptions import RefundWindowClosedError, ValidationError

Amount = Union[Decimal, int, str]

MINOR_UNITS = 100
CENT = Decimal('0.01')

# Currencies without a sub-unit. Amounts in these are whole numbers on every rail.
ZERO_DECIMAL_CURRENCIES = {'DJF', 'JPY', 'KRW', 'XAF', 'XOF'}

FULL_REFUND_24H = 'FULL_REFUND_24H'
PARTIAL_REFUND_12H = 'PARTIAL_REFUND_12H'
NO_REFUND_WINDOW = 'NO_REFUND_WINDOW'

REFUND_MESSAGES = {
    FULL_REFUND_24H: 'Cancelled more than 24h before the service - full refund (100%)',
    PARTIAL_REFUND_12H: 'Cancelled between 12h and 24h before the service - partial refund (50%)',
    NO_REFUND_WINDOW: 'Cancellations less than 12h before the service are not refundable',
}


@dataclass(frozen=True)
class SettlementPolicy:
    currency: str = 'DJF'
    currency_exponent: int = 0
    default_commission_rate: Decimal = Decimal('0.10')
    full_refund_hours: int = 24
    partial_refund_hours: int = 12
    partial_refund_rate: Decimal = Decimal('0.50')
    minimum_withdrawal: Decimal = Decimal('1000')
    earnings_release_days: int = 7
    transaction_prefix: str = 'DJIBGO'
    pending_payment_ttl_minutes: int = 15


@dataclass(frozen=True)
class CommissionSplit:
    total: Decimal
    commission: Decimal
    professional_share: Decimal
    rate: Decimal


@dataclass(frozen=True)
class RefundQuote:
    percentage: int
    amount: Decimal
    reason_code: str
    hours_until_service: Decimal

    @property
    def message(self) -> str:
        return REFUND_MESSAGES[self.reason_code]

    @property
    def is_refundable(self) -> bool:
        return self.percentage > 0

    def raise_if_rejected(self) -> None:
        """Cancellations inside the no-refund window are rejected, never zero-refunded."""
        if not self.is_refundable:
            raise RefundWindowClosedError(
                self.message,
                hours_until_service=self.hours_until_service,
            )


def get_policy() -> SettlementPolicy:
    """Build the policy from ``settings.SETTLEMENT``, falling back to the defaults."""
    conf = getattr(settings, 'SETTLEMENT', {})
    defaults = SettlementPolicy()
    currency = conf.get('CURRENCY', defaults.currency)
    return SettlementPolicy(
        currency=currency,
        currency_exponent=int(conf.get('CURRENCY_EXPONENT', currency_exponent(currency))),
        default_commission_rate=Decimal(str(conf.get('DEFAULT_COMMISSION_RATE', defaults.default_commission_rate))),
        full_refund_hours=int(conf.get('FULL_REFUND_HOURS', defaults.full_refund_hours)),
        partial_refund_hours=int(conf.get('PARTIAL_REFUND_HOURS', defaults.partial_refund_hours)),
        partial_refund_rate=Decimal(str(conf.get('PARTIAL_REFUND_RATE', defaults.partial_refund_rate))),
        minimum_withdrawal=Decimal(str(conf.get('MINIMUM_WITHDRAWAL', defaults.minimum_withdrawal))),
        earnings_release_days=int(conf.get('EARNINGS_RELEASE_DAYS', defaults.earnings_release_days)),
        transaction_prefix=conf.get('TRANSACTION_PREFIX', defaults.transaction_prefix),
        pending_payment_ttl_minutes=int(conf.get('PENDING_PAYMENT_TTL_MINUTES', defaults.pending_payment_ttl_minutes)),
    )


def to_decimal(value: Amount) -> Decimal:
    """Coerce a money value to Decimal. Floats go through str() so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def currency_exponent(currency: str) -> int:
    """Digits after the decimal point in ``currency``: 0 for DJF, 2 for EUR."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor(amount: Amount, exponent: int = 2) -> int:
    """Convert a currency amount to integer minor units, half-up on finer input."""
    return int((to_decimal(amount).scaleb(exponent)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_minor(units: int, exponent: int = 2) -> Decimal:
    return Decimal(units).scaleb(-exponent).quantize(CENT)


def round_to_currency(amount: Amount, policy: Optional[SettlementPolicy] = None) -> Decimal:
    """Round half-up to the smallest unit the currency has (whole francs for DJF)."""
    policy = policy or get_policy()
    return from_minor(to_minor(amount, policy.currency_exponent), policy.currency_exponent)


def compute_commission_split(total_amount: Amount, commission_rate: Optional[Amount] = None,
                             policy: Optional[SettlementPolicy] = None) -> CommissionSplit:
    """
    Split a client payment into platform commission and professional share.

    Args:
        total_amount: Amount paid by the client
        commission_rate: Fraction kept by the platform (``None`` uses the policy default)
        policy: Optional explicit policy

    Returns:
        CommissionSplit rounded to the currency's smallest unit whose
        commission and professional share always add up to the total; the
        rounding remainder goes to the commission.
    """
    policy = policy or get_policy()
    rate = policy.default_commission_rate if commission_rate is None else to_decimal(commission_rate)
    if rate < 0 or rate > 1:
        raise ValidationError(f'Commission rate must be between 0 and 1, got {rate}')

    exponent = policy.currency_exponent
    total_minor = to_minor(total_amount, exponent)
    if total_minor < 0:
        raise ValidationError('Amount must not be negative')

    professional_minor = int((Decimal(total_minor) * (Decimal(1) - rate)).to_integral_value(rounding=ROUND_DOWN))
    commission_minor = total_minor - professional_minor

    return CommissionSplit(
        total=from_minor(total_minor, exponent),
        commission=from_minor(commission_minor, exponent),
        professional_share=from_minor(professional_minor, exponent),
        rate=rate,
    )


def compute_refund(scheduled_at: datetime, now: datetime, total_amount: Amount,
                   policy: Optional[SettlementPolicy] = None) -> RefundQuote:
    """
    Quote the refund owed for a cancellation at ``now``.

    Tier bounds are inclusive: exactly 24h before the service is a full
    refund, exactly 12h is a partial one, anything closer is the
    no-refund window.
    """
    policy = policy or get_policy()
    until_service = scheduled_at - now
    hours = (Decimal(until_service.total_seconds()) / Decimal(3600)).quantize(Decimal('0.1'))

    if until_service >= timedelta(hours=policy.full_refund_hours):
        fraction, reason = Decimal(1), FULL_REFUND_24H
    elif until_service >= timedelta(hours=policy.partial_refund_hours):
        fraction, reason = policy.partial_refund_rate, PARTIAL_REFUND_12H
    else:
        fraction, reason = Decimal(0), NO_REFUND_WINDOW

    amount = round_to_currency(to_decimal(total_amount) * fraction, policy)
    percentage = int((fraction * 100).to_integral_value(rounding=ROUND_HALF_UP))
    return RefundQuote(percentage=percentage, amount=amount, reason_code=reason, hours_until_service=hours)


def release_due_at(completed_at: datetime, policy: Optional[SettlementPolicy] = None) -> datetime:
    """When earnings for a service completed at ``completed_at`` become withdrawable."""
    policy = policy or get_policy()
    return completed_at + timedelta(days=policy.earnings_release_days)


def release_cutoff(now: datetime, policy: Optional[SettlementPolicy] = None) -> datetime:
    """Services completed at or before this instant have releasable earnings at ``now``."""
    policy = policy or get_policy()
    return now - timedelta(days=policy.earnings_release_days)


def check_withdrawal_amount(amount: Amount, withdrawable: Amount,
                            policy: Optional[SettlementPolicy] = None) -> Decimal:
    """Validate a withdrawal against the minimum and the reserved-aware available balance."""
    policy = policy or get_policy()
    amount = to_decimal(amount)
    if amount <= 0:
        raise ValidationError('Withdrawal amount must be positive', code='invalid_amount')
    if amount < policy.minimum_withdrawal:
        raise ValidationError(
            f'Amount below minimum: the minimum withdrawal is {policy.minimum_withdrawal:.0f} {policy.currency}',
            code='amount_below_minimum',
        )
    if amount > to_decimal(withdrawable):
        raise ValidationError('Insufficient available balance', code='insufficient_balance')
    return amount.quantize(CENT)


def generate_transaction_reference(booking_id, now: Optional[float] = None, prefix: Optional[str] = None) -> str:
    """``{prefix}-{epoch millis}-{first 8 chars of the booking id}``"""
    prefix = prefix or get_policy().transaction_prefix
    millis = int((time.time() if now is None else now) * 1000)
    return f"{prefix}-{millis}-{str(booking_id)[:8]}"
