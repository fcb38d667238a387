from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView, exception_handler
from drf_yasg.utils import swagger_auto_schema
from drf_yasg import openapi
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
import logging

from .exceptions import ProviderError, RefundWindowClosedError, SettlementError
from .ledger import LedgerService
from .payments import PaymentService
from .policy import get_policy
from .providers import get_provider
from .refunds import RefundService
from .serializers import (
    BalanceSerializer, BookingSerializer, CancelBookingSerializer, EarningsSummarySerializer, PaymentInitiateSerializer,
    PaymentOutcomeSerializer, PaymentRecordSerializer, PaymentVerifySerializer, PayoutInfoSerializer,
    RefundOutcomeSerializer, RefundRequestSerializer, WalletSerializer, WalletTransactionSerializer,
    WithdrawalActionSerializer, WithdrawalCreateSerializer, WithdrawalSerializer,
)
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)


def settlement_exception_handler(exc, context):
    """
    Render settlement errors as ``{"error", "code"}``.

    Provider and integrity failures only expose their generic message; the
    diagnostic detail goes to the log.
    """
    if not isinstance(exc, SettlementError):
        return exception_handler(exc, context)

    view = context.get('view')
    if isinstance(exc, ProviderError) or exc.status_code >= 500:
        logger.error(f"{exc.code} in {type(view).__name__}: {exc.detail}")
    else:
        logger.info(f"Rejected request in {type(view).__name__}: {exc.code} {exc.user_message}")

    body = {'error': exc.user_message, 'code': exc.code}
    if isinstance(exc, ProviderError):
        body['retryable'] = exc.retryable
    if isinstance(exc, RefundWindowClosedError) and exc.hours_until_service is not None:
        body['hours_until_service'] = str(exc.hours_until_service)
    return Response(body, status=exc.status_code)


class PaymentViewSet(viewsets.GenericViewSet):
    """
    Client payments: initiation, verification, refunds and history.
    """
    serializer_class = PaymentRecordSerializer
    permission_classes = [IsAuthenticated]
    lookup_field = 'payment_id'

    @swagger_auto_schema(
        request_body=PaymentInitiateSerializer,
        responses={
            201: PaymentOutcomeSerializer,
            202: PaymentOutcomeSerializer,
            400: 'Bad Request',
            502: 'Provider rejected the payment',
            503: 'Provider unavailable, retry with a new attempt'
        }
    )
    @action(detail=False, methods=['post'])
    def initiate(self, request):
        """
        Initiate payment for a booking
        """
        serializer = PaymentInitiateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        outcome = PaymentService().initiate_payment(
            data['booking_id'],
            request.user.pk,
            data['provider'],
            data.get('payer_reference', ''),
            amount=data.get('amount'),
        )
        http_status = status.HTTP_201_CREATED if outcome.status == 'completed' else status.HTTP_202_ACCEPTED
        return Response(PaymentOutcomeSerializer(outcome).data, status=http_status)

    @swagger_auto_schema(
        request_body=PaymentVerifySerializer,
        responses={200: PaymentRecordSerializer}
    )
    @action(detail=False, methods=['post'])
    def verify(self, request):
        """
        Current status of a payment, for its payer, the professional or staff
        """
        serializer = PaymentVerifySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = PaymentService().verify_payment(serializer.validated_data['payment_id'], request.user.pk)
        return Response(PaymentRecordSerializer(payment).data)

    @swagger_auto_schema(
        request_body=RefundRequestSerializer,
        responses={200: RefundOutcomeSerializer}
    )
    @action(detail=False, methods=['post'])
    def refund(self, request):
        """
        Cancel the booking of a payment and refund it according to the cancellation schedule
        """
        serializer = RefundRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        outcome = RefundService().refund_payment(
            serializer.validated_data['payment_id'],
            request.user.pk,
            reason=serializer.validated_data.get('reason', ''),
        )
        return Response(RefundOutcomeSerializer(outcome).data)

    @swagger_auto_schema(responses={200: PaymentRecordSerializer(many=True)})
    @action(detail=False, methods=['get'])
    def history(self, request):
        queryset = PaymentService().payment_history(request.user.pk)
        page = self.paginate_queryset(queryset)
        if page is not None:
            serializer = PaymentRecordSerializer(page, many=True)
            return self.get_paginated_response(serializer.data)
        return Response(PaymentRecordSerializer(queryset, many=True).data)

    @swagger_auto_schema(
        method='post',
        request_body=openapi.Schema(
            type=openapi.TYPE_OBJECT,
            properties={
                'provider_transaction_id': openapi.Schema(
                    type=openapi.TYPE_STRING,
                    description='Reference of the funds seen on the merchant account'
                )
            }
        ),
        responses={200: PaymentRecordSerializer}
    )
    @action(detail=True, methods=['post'], permission_classes=[IsAdminUser])
    def confirm(self, request, payment_id=None):
        """
        Operator confirmation of a manual rail payment (D-Money, bank transfer)
        """
        payment = PaymentService().confirm_payment(
            payment_id,
            verified_by=f"staff:{request.user.username}",
            provider_txn_id=request.data.get('provider_transaction_id') or None,
        )
        return Response(PaymentRecordSerializer(payment).data)


class BookingViewSet(viewsets.GenericViewSet):
    """
    Settlement actions on bookings.
    """
    serializer_class = BookingSerializer
    permission_classes = [IsAuthenticated]
    lookup_field = 'booking_id'

    @swagger_auto_schema(
        request_body=CancelBookingSerializer,
        responses={
            200: RefundOutcomeSerializer,
            400: 'Cancellation not allowed (for example NO_REFUND_WINDOW)'
        }
    )
    @action(detail=True, methods=['post'])
    def cancel(self, request, booking_id=None):
        """
        Cancel a booking; paid bookings are refunded 100% more than 24h ahead,
        50% between 12h and 24h, and cannot be cancelled later than that
        """
        serializer = CancelBookingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        outcome = RefundService().cancel_booking(
            booking_id,
            request.user.pk,
            reason=serializer.validated_data.get('reason', ''),
        )
        return Response(RefundOutcomeSerializer(outcome).data)

    @swagger_auto_schema(method='post', responses={200: BookingSerializer})
    @action(detail=True, methods=['post'])
    def complete(self, request, booking_id=None):
        """
        Professional marks the service as delivered
        """
        booking = PaymentService().complete_booking(booking_id, request.user.pk)
        return Response(BookingSerializer(booking).data)


class WalletViewSet(viewsets.GenericViewSet):
    """
    The authenticated professional's wallet.
    """
    serializer_class = WalletTransactionSerializer
    permission_classes = [IsAuthenticated]

    def _wallet(self, request):
        return LedgerService().get_or_create_wallet(request.user)

    @swagger_auto_schema(responses={200: BalanceSerializer})
    def list(self, request):
        """
        Balance breakdown, reconciled against the transaction log
        """
        wallet = self._wallet(request)
        balance = LedgerService().get_balance(wallet.pk)
        data = BalanceSerializer(balance).data
        data['minimum_withdrawal'] = str(get_policy().minimum_withdrawal)
        data['payout_info'] = WalletSerializer(wallet).data
        return Response(data)

    @swagger_auto_schema(responses={200: WalletTransactionSerializer(many=True)})
    @action(detail=False, methods=['get'])
    def transactions(self, request):
        wallet = self._wallet(request)
        queryset = wallet.transactions.order_by('-created_at')
        page = self.paginate_queryset(queryset)
        if page is not None:
            serializer = WalletTransactionSerializer(page, many=True)
            return self.get_paginated_response(serializer.data)
        return Response(WalletTransactionSerializer(queryset, many=True).data)

    @swagger_auto_schema(responses={200: EarningsSummarySerializer})
    @action(detail=False, methods=['get'])
    def earnings(self, request):
        """
        Paid bookings and earnings totals of the authenticated professional
        """
        summary = PaymentService().professional_earnings(request.user.pk)
        return Response(EarningsSummarySerializer(summary).data)

    @swagger_auto_schema(
        method='post',
        request_body=PayoutInfoSerializer,
        responses={200: WalletSerializer}
    )
    @action(detail=False, methods=['post'], url_path='payout-info')
    def payout_info(self, request):
        serializer = PayoutInfoSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        wallet = WithdrawalService().update_payout_info(
            request.user.pk,
            serializer.validated_data['method'],
            serializer.validated_data.get('details'),
        )
        return Response(WalletSerializer(wallet).data)

    @swagger_auto_schema(method='get', responses={200: WithdrawalSerializer(many=True)})
    @swagger_auto_schema(
        method='post',
        request_body=WithdrawalCreateSerializer,
        responses={201: WithdrawalSerializer, 400: 'Amount below minimum or insufficient balance'}
    )
    @action(detail=False, methods=['get', 'post'])
    def withdrawals(self, request):
        """
        List withdrawal requests, or request a new payout
        """
        service = WithdrawalService()
        if request.method == 'GET':
            queryset = service.list_withdrawals(request.user.pk)
            page = self.paginate_queryset(queryset)
            if page is not None:
                return self.get_paginated_response(WithdrawalSerializer(page, many=True).data)
            return Response(WithdrawalSerializer(queryset, many=True).data)

        serializer = WithdrawalCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        withdrawal = service.request_withdrawal(
            request.user.pk,
            serializer.validated_data['amount'],
            serializer.validated_data['method'],
            serializer.validated_data.get('details'),
        )
        return Response(WithdrawalSerializer(withdrawal).data, status=status.HTTP_201_CREATED)

    @swagger_auto_schema(method='post', responses={200: 'Stripe Connect account and onboarding link'})
    @action(detail=False, methods=['post'], url_path='stripe/onboard')
    def stripe_onboard(self, request):
        """
        Create or resume the professional's Stripe Connect onboarding
        """
        result = WithdrawalService().connect_stripe_account(request.user.pk, get_provider('stripe'))
        return Response(result)


class WithdrawalAdminViewSet(viewsets.GenericViewSet):
    """
    Operator actions on withdrawal requests.
    """
    serializer_class = WithdrawalSerializer
    permission_classes = [IsAdminUser]
    lookup_field = 'withdrawal_id'

    @swagger_auto_schema(request_body=WithdrawalActionSerializer, responses={200: WithdrawalSerializer})
    @action(detail=True, methods=['post'])
    def process(self, request, withdrawal_id=None):
        serializer = WithdrawalActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        withdrawal = WithdrawalService().start_processing(withdrawal_id, serializer.validated_data['admin_notes'])
        return Response(WithdrawalSerializer(withdrawal).data)

    @swagger_auto_schema(request_body=WithdrawalActionSerializer, responses={200: WithdrawalSerializer})
    @action(detail=True, methods=['post'])
    def complete(self, request, withdrawal_id=None):
        """
        Record the payout as sent; debits the professional's wallet
        """
        serializer = WithdrawalActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        withdrawal = WithdrawalService().complete_withdrawal(
            withdrawal_id,
            transaction_reference=serializer.validated_data['transaction_reference'],
            admin_notes=serializer.validated_data['admin_notes'],
        )
        return Response(WithdrawalSerializer(withdrawal).data)

    @swagger_auto_schema(request_body=WithdrawalActionSerializer, responses={200: WithdrawalSerializer})
    @action(detail=True, methods=['post'])
    def reject(self, request, withdrawal_id=None):
        serializer = WithdrawalActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        withdrawal = WithdrawalService().reject_withdrawal(withdrawal_id, serializer.validated_data['admin_notes'])
        return Response(WithdrawalSerializer(withdrawal).data)


@method_decorator(csrf_exempt, name='dispatch')
class StripeWebhookView(APIView):
    """
    Handle PaymentIntent notifications from Stripe
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        provider = get_provider('stripe')
        event = provider.construct_event(request.body, request.META.get('HTTP_STRIPE_SIGNATURE', ''))
        logger.info(f"Received Stripe webhook {event['type']}")

        payment = PaymentService().handle_stripe_event(event)
        if payment:
            logger.info(f"Webhook applied to payment {payment.transaction_reference}: {payment.status}")
        return Response({'status': 'success'})
