from rest_framework import serializers
from django.contrib.auth.models import User

from .models import Booking, PaymentRecord, Wallet, WalletTransaction, WithdrawalRequest
from .providers import PROVIDER_NAMES
from .withdrawals import PAYOUT_DETAIL_FIELDS


class UserSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = ['id', 'username', 'first_name', 'last_name', 'email']
        read_only_fields = fields


class BookingSerializer(serializers.ModelSerializer):
    """
    Serializer for Booking model (settlement view of a booking)
    """
    client = UserSerializer(read_only=True)
    professional = UserSerializer(read_only=True)

    class Meta:
        model = Booking
        fields = [
            'booking_id',
            'client',
            'professional',
            'service_title',
            'scheduled_at',
            'total_amount',
            'currency',
            'status',
            'payment_status',
            'commission_amount',
            'refund_amount',
            'payment_reference',
            'payment_date',
            'completed_at',
            'cancelled_at',
            'created_at',
        ]
        read_only_fields = fields


class PaymentRecordSerializer(serializers.ModelSerializer):
    """
    Serializer for PaymentRecord model; the raw provider response stays server side
    """
    booking_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = PaymentRecord
        fields = [
            'payment_id',
            'booking_id',
            'provider',
            'amount',
            'commission_amount',
            'professional_amount',
            'currency',
            'transaction_reference',
            'provider_transaction_id',
            'status',
            'test_mode',
            'error_message',
            'retryable',
            'refund_amount',
            'refund_percentage',
            'refund_reason',
            'manual_refund_required',
            'initiated_at',
            'verified_at',
            'refunded_at',
        ]
        read_only_fields = fields


class PaymentInitiateSerializer(serializers.Serializer):
    """
    Serializer for payment initiation request
    """
    booking_id = serializers.UUIDField()
    provider = serializers.ChoiceField(choices=PROVIDER_NAMES)
    payer_reference = serializers.CharField(
        required=False,
        allow_blank=True,
        help_text="Phone number (WaafiPay, D-Money) or Stripe payment method id"
    )
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)

    def validate_amount(self, value):
        if value is not None and value <= 0:
            raise serializers.ValidationError("Amount must be positive")
        return value


class PaymentOutcomeSerializer(serializers.Serializer):
    payment = PaymentRecordSerializer()
    status = serializers.CharField()
    message = serializers.CharField()
    instructions = serializers.CharField(allow_blank=True)
    test_mode = serializers.BooleanField()


class PaymentVerifySerializer(serializers.Serializer):
    payment_id = serializers.UUIDField()


class RefundRequestSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField()
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class CancelBookingSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class RefundOutcomeSerializer(serializers.Serializer):
    """
    Serializer for the result of a cancellation
    """
    booking_id = serializers.UUIDField(source='booking.booking_id')
    payment_id = serializers.UUIDField(source='payment.payment_id', allow_null=True, default=None)
    percentage = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    reason_code = serializers.CharField()
    message = serializers.CharField()
    refund_reference = serializers.CharField(allow_blank=True)
    manual_refund_required = serializers.BooleanField()


class BalanceSerializer(serializers.Serializer):
    available = serializers.DecimalField(max_digits=14, decimal_places=2)
    pending = serializers.DecimalField(max_digits=14, decimal_places=2)
    reserved = serializers.DecimalField(max_digits=14, decimal_places=2)
    withdrawable = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_earned = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_withdrawn = serializers.DecimalField(max_digits=14, decimal_places=2)
    currency = serializers.CharField()


class EarningsSummarySerializer(serializers.Serializer):
    """
    A professional's paid bookings with their earnings totals
    """
    bookings = BookingSerializer(many=True, read_only=True)
    total_earnings = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_commission = serializers.DecimalField(max_digits=14, decimal_places=2)
    pending_earnings = serializers.DecimalField(max_digits=14, decimal_places=2)
    pending_payouts = serializers.IntegerField()
    completed_bookings = serializers.IntegerField()


class WalletSerializer(serializers.ModelSerializer):
    class Meta:
        model = Wallet
        fields = [
            'wallet_id',
            'currency',
            'commission_rate',
            'preferred_payout_method',
            'waafi_phone',
            'dmoney_phone',
            'bank_name',
            'bank_account_number',
            'bank_account_name',
            'stripe_account_status',
        ]
        read_only_fields = fields


class WalletTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = WalletTransaction
        fields = [
            'transaction_id',
            'type',
            'amount',
            'pending_delta',
            'available_delta',
            'balance_after',
            'pending_after',
            'description',
            'payment',
            'withdrawal',
            'created_at',
        ]
        read_only_fields = fields


class PayoutInfoSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=list(PAYOUT_DETAIL_FIELDS) + ['stripe'])
    details = serializers.DictField(child=serializers.CharField(allow_blank=True), required=False, default=dict)


class WithdrawalCreateSerializer(serializers.Serializer):
    """
    Serializer for withdrawal requests; details default to the stored payout info
    """
    amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    method = serializers.ChoiceField(choices=list(PAYOUT_DETAIL_FIELDS))
    details = serializers.DictField(child=serializers.CharField(allow_blank=True), required=False, default=dict)


class WithdrawalSerializer(serializers.ModelSerializer):
    class Meta:
        model = WithdrawalRequest
        fields = [
            'withdrawal_id',
            'amount',
            'payout_method',
            'payout_details',
            'status',
            'admin_notes',
            'transaction_reference',
            'created_at',
            'processed_at',
        ]
        read_only_fields = fields


class WithdrawalActionSerializer(serializers.Serializer):
    admin_notes = serializers.CharField(required=False, allow_blank=True, default='')
    transaction_reference = serializers.CharField(required=False, allow_blank=True, default='', max_length=100)
