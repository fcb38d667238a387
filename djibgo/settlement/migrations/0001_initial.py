# Initial settlement schema: bookings, payments, wallets, ledger, withdrawals

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import uuid
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('booking_id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier for the booking', primary_key=True, serialize=False)),
                ('service_title', models.CharField(blank=True, help_text='Title of the booked service', max_length=200)),
                ('scheduled_at', models.DateTimeField(help_text='When the service is scheduled to start')),
                ('total_amount', models.DecimalField(decimal_places=2, help_text='Total price of the booking', max_digits=12, validators=[django.core.validators.MinValueValidator(0)])),
                ('currency', models.CharField(default='DJF', help_text='Booking currency', max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('confirmed', 'Confirmed'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='pending', help_text='Current status of the booking', max_length=20)),
                ('payment_status', models.CharField(choices=[('unpaid', 'Unpaid'), ('pending', 'Pending'), ('paid', 'Paid'), ('refunded', 'Refunded')], default='unpaid', help_text='Settlement status of the booking', max_length=20)),
                ('commission_amount', models.DecimalField(decimal_places=2, default=0, help_text='Platform commission on the paid amount', max_digits=12)),
                ('refund_amount', models.DecimalField(decimal_places=2, default=0, help_text='Amount refunded to the client on cancellation', max_digits=12)),
                ('payment_reference', models.CharField(blank=True, help_text='Transaction reference of the settling payment', max_length=100)),
                ('payment_date', models.DateTimeField(blank=True, help_text='When the booking was paid', null=True)),
                ('completed_at', models.DateTimeField(blank=True, help_text='When the professional marked the service as delivered', null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, help_text='When the booking was cancelled', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('client', models.ForeignKey(help_text='The client who booked the service', on_delete=django.db.models.deletion.PROTECT, related_name='client_bookings', to=settings.AUTH_USER_MODEL)),
                ('professional', models.ForeignKey(help_text='The professional delivering the service', on_delete=django.db.models.deletion.PROTECT, related_name='professional_bookings', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='settlement_booking_status_idx'),
                    models.Index(fields=['payment_status'], name='settlement_booking_paystat_idx'),
                    models.Index(fields=['scheduled_at'], name='settlement_booking_sched_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PaymentRecord',
            fields=[
                ('payment_id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Unique identifier for the payment', primary_key=True, serialize=False)),
                ('provider', models.CharField(choices=[('waafipay', 'WaafiPay'), ('stripe', 'Stripe Connect'), ('dmoney', 'D-Money'), ('bank', 'Bank Transfer')], help_text='Payment rail used for this attempt', max_length=20)),
                ('payer_reference', models.CharField(blank=True, help_text='Phone number, card token or account the funds come from', max_length=100)),
                ('amount', models.DecimalField(decimal_places=2, help_text='Amount charged to the client', max_digits=12, validators=[django.core.validators.MinValueValidator(0)])),
                ('commission_amount', models.DecimalField(decimal_places=2, help_text='Platform commission', max_digits=12)),
                ('professional_amount', models.DecimalField(decimal_places=2, help_text='Professional share (amount - commission)', max_digits=12)),
                ('currency', models.CharField(default='DJF', max_length=3)),
                ('transaction_reference', models.CharField(help_text='Globally unique reference generated for this attempt', max_length=100, unique=True)),
                ('provider_transaction_id', models.CharField(blank=True, help_text='Transaction identifier assigned by the provider', max_length=100)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('failed', 'Failed'), ('refunded', 'Refunded')], default='pending', help_text='Current payment status', max_length=20)),
                ('test_mode', models.BooleanField(default=False, help_text='Whether the attempt ran against a simulated rail')),
                ('raw_response', models.JSONField(blank=True, help_text='Raw provider response kept for audit', null=True)),
                ('error_message', models.TextField(blank=True, help_text='Provider error message for failed attempts')),
                ('retryable', models.BooleanField(default=False, help_text='Whether a failed attempt may be retried with a new reference')),
                ('verified_by', models.CharField(blank=True, help_text='Who confirmed the payment (provider api, test job, operator)', max_length=50)),
                ('refund_amount', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('refund_percentage', models.PositiveSmallIntegerField(default=0, validators=[django.core.validators.MaxValueValidator(100)])),
                ('refund_reason', models.CharField(blank=True, max_length=255)),
                ('refund_reference', models.CharField(blank=True, max_length=100)),
                ('manual_refund_required', models.BooleanField(default=False, help_text='The rail cannot push refunds; an operator must pay the client back')),
                ('initiated_at', models.DateTimeField(auto_now_add=True)),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                ('released_at', models.DateTimeField(blank=True, help_text='When the professional share moved from pending to available', null=True)),
                ('refunded_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('booking', models.ForeignKey(help_text='The booking this payment is for', on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='settlement.booking')),
                ('payer', models.ForeignKey(help_text='The client who initiated the payment', on_delete=django.db.models.deletion.PROTECT, related_name='payments', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-initiated_at'],
                'indexes': [
                    models.Index(fields=['status'], name='settlement_payment_status_idx'),
                    models.Index(fields=['provider_transaction_id'], name='settlement_payment_ptxn_idx'),
                    models.Index(fields=['initiated_at'], name='settlement_payment_init_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Wallet',
            fields=[
                ('wallet_id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('balance', models.DecimalField(decimal_places=2, default=0, help_text='Available balance', max_digits=14)),
                ('pending_balance', models.DecimalField(decimal_places=2, default=0, help_text='Earnings waiting for the release delay', max_digits=14)),
                ('total_earned', models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ('total_withdrawn', models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ('currency', models.CharField(default='DJF', max_length=3)),
                ('commission_rate', models.DecimalField(blank=True, decimal_places=4, help_text='Per-professional commission override (fraction); empty uses the platform default', max_digits=5, null=True, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(1)])),
                ('preferred_payout_method', models.CharField(blank=True, choices=[('waafipay', 'WaafiPay'), ('dmoney', 'D-Money'), ('bank', 'Bank Transfer'), ('stripe', 'Stripe Connect')], max_length=20)),
                ('waafi_phone', models.CharField(blank=True, max_length=20)),
                ('dmoney_phone', models.CharField(blank=True, max_length=20)),
                ('bank_name', models.CharField(blank=True, max_length=100)),
                ('bank_account_number', models.CharField(blank=True, max_length=50)),
                ('bank_account_name', models.CharField(blank=True, max_length=100)),
                ('stripe_account_id', models.CharField(blank=True, max_length=100)),
                ('stripe_account_status', models.CharField(blank=True, help_text='incomplete, pending or active', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('professional', models.OneToOneField(help_text='Owner of the wallet', on_delete=django.db.models.deletion.PROTECT, related_name='wallet', to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name='WithdrawalRequest',
            fields=[
                ('withdrawal_id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=14, validators=[django.core.validators.MinValueValidator(0)])),
                ('payout_method', models.CharField(choices=[('waafipay', 'WaafiPay'), ('dmoney', 'D-Money'), ('bank', 'Bank Transfer')], max_length=20)),
                ('payout_details', models.JSONField(default=dict, help_text='Phone number, or bank name / account number / holder')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('rejected', 'Rejected')], default='pending', max_length=20)),
                ('admin_notes', models.TextField(blank=True)),
                ('transaction_reference', models.CharField(blank=True, help_text='Payout reference recorded by the operator', max_length=100)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('professional', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='withdrawals', to=settings.AUTH_USER_MODEL)),
                ('wallet', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='withdrawals', to='settlement.wallet')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='settlement_wdr_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='WalletTransaction',
            fields=[
                ('transaction_id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('type', models.CharField(choices=[('earning', 'Earning'), ('release', 'Release'), ('withdrawal', 'Withdrawal'), ('adjustment', 'Adjustment'), ('refund_reversal', 'Refund Reversal')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, help_text='Signed net amount', max_digits=14)),
                ('pending_delta', models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ('available_delta', models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ('balance_after', models.DecimalField(decimal_places=2, help_text='Available balance after applying this entry', max_digits=14)),
                ('pending_after', models.DecimalField(decimal_places=2, help_text='Pending balance after applying this entry', max_digits=14)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('payment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='ledger_entries', to='settlement.paymentrecord')),
                ('wallet', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='transactions', to='settlement.wallet')),
                ('withdrawal', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='ledger_entries', to='settlement.withdrawalrequest')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['wallet', 'created_at'], name='settlement_wtx_wallet_idx'),
                    models.Index(fields=['type'], name='settlement_wtx_type_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ScheduledConfirmation',
            fields=[
                ('confirmation_id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('due_at', models.DateTimeField()),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('done', 'Done'), ('failed', 'Failed')], default='pending', max_length=10)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('payment', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='scheduled_confirmation', to='settlement.paymentrecord')),
            ],
            options={
                'ordering': ['due_at'],
                'indexes': [
                    models.Index(fields=['status', 'due_at'], name='settlement_conf_due_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Notification',
            fields=[
                ('notification_id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('type', models.CharField(max_length=40)),
                ('title', models.CharField(max_length=200)),
                ('message', models.TextField()),
                ('delivered_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('related_booking', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='notifications', to='settlement.booking')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='settlement_notifications', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
