"""
Read-only admin views over settlement data.

Money moves only through the services in this app, so balances, ledger
entries and payment records can be inspected here but never edited.
"""

from django.contrib import admin

from .models import Booking, Notification, PaymentRecord, Wallet, WalletTransaction, WithdrawalRequest


class ReadOnlyAdmin(admin.ModelAdmin):

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Booking)
class BookingAdmin(ReadOnlyAdmin):
    list_display = ('booking_id', 'client', 'professional', 'scheduled_at', 'total_amount', 'status', 'payment_status')
    list_filter = ('status', 'payment_status')
    search_fields = ('booking_id', 'payment_reference', 'client__username', 'professional__username')
    date_hierarchy = 'scheduled_at'


@admin.register(PaymentRecord)
class PaymentRecordAdmin(ReadOnlyAdmin):
    list_display = (
        'transaction_reference', 'booking', 'provider', 'amount', 'status',
        'manual_refund_required', 'initiated_at',
    )
    list_filter = ('provider', 'status', 'test_mode', 'manual_refund_required')
    search_fields = ('transaction_reference', 'provider_transaction_id', 'booking__booking_id')
    exclude = ('raw_response',)
    date_hierarchy = 'initiated_at'


class WalletTransactionInline(admin.TabularInline):
    model = WalletTransaction
    fields = ('created_at', 'type', 'amount', 'pending_delta', 'available_delta', 'balance_after', 'pending_after')
    readonly_fields = fields
    ordering = ('-created_at',)
    extra = 0
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Wallet)
class WalletAdmin(ReadOnlyAdmin):
    list_display = ('professional', 'balance', 'pending_balance', 'total_earned', 'total_withdrawn')
    search_fields = ('professional__username',)
    inlines = [WalletTransactionInline]


@admin.register(WithdrawalRequest)
class WithdrawalRequestAdmin(ReadOnlyAdmin):
    list_display = ('withdrawal_id', 'professional', 'amount', 'payout_method', 'status', 'created_at')
    list_filter = ('status', 'payout_method')
    search_fields = ('professional__username', 'transaction_reference')


@admin.register(Notification)
class NotificationAdmin(ReadOnlyAdmin):
    list_display = ('user', 'type', 'title', 'created_at', 'delivered_at')
    list_filter = ('type',)
