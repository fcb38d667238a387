from django.db import models
from django.contrib.auth.models import User
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils import timezone
import uuid

from .exceptions import InvalidTransitionError


class Booking(models.Model):
    """
    A scheduled service engagement between a client and a professional.

    Bookings are never deleted; cancellation is the soft terminal state.
    """
    BOOKING_STATUS = [
        ('pending', 'Pending'),
        ('confirmed', 'Confirmed'),
        ('in_progress', 'In Progress'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    PAYMENT_STATUS = [
        ('unpaid', 'Unpaid'),
        ('pending', 'Pending'),
        ('paid', 'Paid'),
        ('refunded', 'Refunded'),
    ]

    # Only forward moves are allowed; refunded is the only post-paid state.
    PAYMENT_TRANSITIONS = {
        'unpaid': ('pending',),
        'pending': ('paid',),
        'paid': ('refunded',),
        'refunded': (),
    }

    booking_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the booking"
    )

    client = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='client_bookings',
        help_text="The client who booked the service"
    )

    professional = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='professional_bookings',
        help_text="The professional delivering the service"
    )

    service_title = models.CharField(
        max_length=200,
        blank=True,
        help_text="Title of the booked service"
    )

    scheduled_at = models.DateTimeField(
        help_text="When the service is scheduled to start"
    )

    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Total price of the booking"
    )

    currency = models.CharField(
        max_length=3,
        default='DJF',
        help_text="Booking currency"
    )

    status = models.CharField(
        max_length=20,
        choices=BOOKING_STATUS,
        default='pending',
        help_text="Current status of the booking"
    )

    payment_status = models.CharField(
        max_length=20,
        choices=PAYMENT_STATUS,
        default='unpaid',
        help_text="Settlement status of the booking"
    )

    commission_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=0,
        help_text="Platform commission on the paid amount"
    )

    refund_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=0,
        help_text="Amount refunded to the client on cancellation"
    )

    payment_reference = models.CharField(
        max_length=100,
        blank=True,
        help_text="Transaction reference of the settling payment"
    )

    payment_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the booking was paid"
    )

    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the professional marked the service as delivered"
    )

    cancelled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the booking was cancelled"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='settlement_booking_status_idx'),
            models.Index(fields=['payment_status'], name='settlement_booking_paystat_idx'),
            models.Index(fields=['scheduled_at'], name='settlement_booking_sched_idx'),
        ]

    def __str__(self):
        return f"Booking {self.booking_id} - {self.status}/{self.payment_status}"

    def advance_payment_status(self, new_status):
        """Move ``payment_status`` forward, refusing anything outside the allowed transitions."""
        if new_status == self.payment_status:
            return
        if new_status not in self.PAYMENT_TRANSITIONS.get(self.payment_status, ()):
            raise InvalidTransitionError(
                f"Payment status cannot go from {self.payment_status} to {new_status}"
            )
        self.payment_status = new_status

    def mark_paid(self, reference, paid_at=None):
        if self.payment_status == 'unpaid':
            self.advance_payment_status('pending')
        self.advance_payment_status('paid')
        if self.status == 'pending':
            self.status = 'confirmed'
        self.payment_reference = reference
        self.payment_date = paid_at or timezone.now()

    @property
    def is_paid(self):
        return self.payment_status == 'paid'


class PaymentRecord(models.Model):
    """
    One attempt to collect funds for a booking through a provider.

    Retries create new records; a terminal record is never re-opened.
    """
    PAYMENT_STATUS = [
        ('pending', 'Pending'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('refunded', 'Refunded'),
    ]

    PROVIDERS = [
        ('waafipay', 'WaafiPay'),
        ('stripe', 'Stripe Connect'),
        ('dmoney', 'D-Money'),
        ('bank', 'Bank Transfer'),
    ]

    TERMINAL_STATUSES = ('completed', 'failed', 'refunded')

    payment_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the payment"
    )

    booking = models.ForeignKey(
        Booking,
        on_delete=models.PROTECT,
        related_name='payments',
        help_text="The booking this payment is for"
    )

    payer = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='payments',
        help_text="The client who initiated the payment"
    )

    provider = models.CharField(
        max_length=20,
        choices=PROVIDERS,
        help_text="Payment rail used for this attempt"
    )

    payer_reference = models.CharField(
        max_length=100,
        blank=True,
        help_text="Phone number, card token or account the funds come from"
    )

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Amount charged to the client"
    )

    commission_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Platform commission"
    )

    professional_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Professional share (amount - commission)"
    )

    currency = models.CharField(max_length=3, default='DJF')

    transaction_reference = models.CharField(
        max_length=100,
        unique=True,
        help_text="Globally unique reference generated for this attempt"
    )

    provider_transaction_id = models.CharField(
        max_length=100,
        blank=True,
        help_text="Transaction identifier assigned by the provider"
    )

    status = models.CharField(
        max_length=20,
        choices=PAYMENT_STATUS,
        default='pending',
        help_text="Current payment status"
    )

    test_mode = models.BooleanField(
        default=False,
        help_text="Whether the attempt ran against a simulated rail"
    )

    raw_response = models.JSONField(
        null=True,
        blank=True,
        help_text="Raw provider response kept for audit"
    )

    error_message = models.TextField(
        blank=True,
        help_text="Provider error message for failed attempts"
    )

    retryable = models.BooleanField(
        default=False,
        help_text="Whether a failed attempt may be retried with a new reference"
    )

    verified_by = models.CharField(
        max_length=50,
        blank=True,
        help_text="Who confirmed the payment (provider api, test job, operator)"
    )

    # Refund fields
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    refund_percentage = models.PositiveSmallIntegerField(
        default=0,
        validators=[MaxValueValidator(100)]
    )
    refund_reason = models.CharField(max_length=255, blank=True)
    refund_reference = models.CharField(max_length=100, blank=True)
    manual_refund_required = models.BooleanField(
        default=False,
        help_text="The rail cannot push refunds; an operator must pay the client back"
    )

    initiated_at = models.DateTimeField(auto_now_add=True)
    verified_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the professional share moved from pending to available"
    )
    refunded_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-initiated_at']
        indexes = [
            models.Index(fields=['status'], name='settlement_payment_status_idx'),
            models.Index(fields=['provider_transaction_id'], name='settlement_payment_ptxn_idx'),
            models.Index(fields=['initiated_at'], name='settlement_payment_init_idx'),
        ]

    def __str__(self):
        return f"Payment {self.transaction_reference} - {self.provider} - {self.status}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_successful(self):
        return self.status == 'completed'


class Wallet(models.Model):
    """
    Per-professional balance cache.

    ``balance`` is withdrawable money, ``pending_balance`` is earned but not
    yet released. The authoritative record is the transaction log; these
    fields must always equal its fold.
    """
    PAYOUT_METHODS = [
        ('waafipay', 'WaafiPay'),
        ('dmoney', 'D-Money'),
        ('bank', 'Bank Transfer'),
        ('stripe', 'Stripe Connect'),
    ]

    wallet_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    professional = models.OneToOneField(
        User,
        on_delete=models.PROTECT,
        related_name='wallet',
        help_text="Owner of the wallet"
    )

    balance = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=0,
        help_text="Available balance"
    )

    pending_balance = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=0,
        help_text="Earnings waiting for the release delay"
    )

    total_earned = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total_withdrawn = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    currency = models.CharField(max_length=3, default='DJF')

    commission_rate = models.DecimalField(
        max_digits=5,
        decimal_places=4,
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(1)],
        help_text="Per-professional commission override (fraction); empty uses the platform default"
    )

    preferred_payout_method = models.CharField(
        max_length=20,
        choices=PAYOUT_METHODS,
        blank=True
    )

    waafi_phone = models.CharField(max_length=20, blank=True)
    dmoney_phone = models.CharField(max_length=20, blank=True)
    bank_name = models.CharField(max_length=100, blank=True)
    bank_account_number = models.CharField(max_length=50, blank=True)
    bank_account_name = models.CharField(max_length=100, blank=True)
    stripe_account_id = models.CharField(max_length=100, blank=True)
    stripe_account_status = models.CharField(
        max_length=20,
        blank=True,
        help_text="incomplete, pending or active"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Wallet of {self.professional_id} - {self.balance} available / {self.pending_balance} pending"


class WalletTransaction(models.Model):
    """
    Append-only ledger entry.

    ``amount`` is the net effect on (earned - withdrawn) and always equals
    ``pending_delta + available_delta``.
    """
    TRANSACTION_TYPES = [
        ('earning', 'Earning'),
        ('release', 'Release'),
        ('withdrawal', 'Withdrawal'),
        ('adjustment', 'Adjustment'),
        ('refund_reversal', 'Refund Reversal'),
    ]

    transaction_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name='transactions'
    )

    type = models.CharField(max_length=20, choices=TRANSACTION_TYPES)

    amount = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Signed net amount"
    )

    pending_delta = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    available_delta = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    balance_after = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Available balance after applying this entry"
    )

    pending_after = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        help_text="Pending balance after applying this entry"
    )

    description = models.CharField(max_length=255, blank=True)

    payment = models.ForeignKey(
        PaymentRecord,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='ledger_entries'
    )

    withdrawal = models.ForeignKey(
        'WithdrawalRequest',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='ledger_entries'
    )

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['wallet', 'created_at'], name='settlement_wtx_wallet_idx'),
            models.Index(fields=['type'], name='settlement_wtx_type_idx'),
        ]

    def __str__(self):
        return f"{self.type} {self.amount} on {self.wallet_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Wallet transactions are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Wallet transactions are immutable")


class WithdrawalRequest(models.Model):
    """
    A professional's request to move available funds to an external account.

    While pending or processing, the amount is reserved: it is excluded from
    further withdrawal eligibility but stays in the wallet balance until the
    request completes.
    """
    WITHDRAWAL_STATUS = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('rejected', 'Rejected'),
    ]

    PAYOUT_METHODS = [
        ('waafipay', 'WaafiPay'),
        ('dmoney', 'D-Money'),
        ('bank', 'Bank Transfer'),
    ]

    RESERVING_STATUSES = ('pending', 'processing')

    TRANSITIONS = {
        'pending': ('processing', 'completed', 'rejected'),
        'processing': ('completed', 'rejected'),
        'completed': (),
        'rejected': (),
    }

    withdrawal_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name='withdrawals'
    )

    professional = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='withdrawals'
    )

    amount = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        validators=[MinValueValidator(0)]
    )

    payout_method = models.CharField(max_length=20, choices=PAYOUT_METHODS)

    payout_details = models.JSONField(
        default=dict,
        help_text="Phone number, or bank name / account number / holder"
    )

    status = models.CharField(
        max_length=20,
        choices=WITHDRAWAL_STATUS,
        default='pending'
    )

    admin_notes = models.TextField(blank=True)

    transaction_reference = models.CharField(
        max_length=100,
        blank=True,
        help_text="Payout reference recorded by the operator"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='settlement_wdr_status_idx'),
        ]

    def __str__(self):
        return f"Withdrawal {self.withdrawal_id} - {self.amount} - {self.status}"

    def transition_to(self, new_status):
        if new_status not in self.TRANSITIONS.get(self.status, ()):
            raise InvalidTransitionError(
                f"Withdrawal cannot go from {self.status} to {new_status}"
            )
        self.status = new_status

    @property
    def is_reserving(self):
        return self.status in self.RESERVING_STATUSES


class ScheduledConfirmation(models.Model):
    """
    Durable delayed confirmation of a payment (test-mode rails).

    The row is written with the pending payment, so a worker sweep can pick
    it up even if the queued Celery message is lost.
    """
    STATUS = [
        ('pending', 'Pending'),
        ('done', 'Done'),
        ('failed', 'Failed'),
    ]

    confirmation_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    payment = models.OneToOneField(
        PaymentRecord,
        on_delete=models.CASCADE,
        related_name='scheduled_confirmation'
    )

    due_at = models.DateTimeField()
    status = models.CharField(max_length=10, choices=STATUS, default='pending')
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['due_at']
        indexes = [
            models.Index(fields=['status', 'due_at'], name='settlement_conf_due_idx'),
        ]

    def __str__(self):
        return f"Confirmation of {self.payment_id} due {self.due_at:%Y-%m-%d %H:%M:%S}"


class Notification(models.Model):
    """
    Outbox of user notifications handed to the external delivery service.
    """
    notification_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='settlement_notifications'
    )

    type = models.CharField(max_length=40)
    title = models.CharField(max_length=200)
    message = models.TextField()

    related_booking = models.ForeignKey(
        Booking,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='notifications'
    )

    delivered_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.type} for {self.user_id}"

    def as_event(self):
        return {
            'userId': str(self.user_id),
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'relatedBookingId': str(self.related_booking_id) if self.related_booking_id else None,
        }
