from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import BookingViewSet, PaymentViewSet, StripeWebhookView, WalletViewSet, WithdrawalAdminViewSet

router = DefaultRouter()
router.register(r'payments', PaymentViewSet, basename='payment')
router.register(r'bookings', BookingViewSet, basename='booking')
router.register(r'wallet', WalletViewSet, basename='wallet')
router.register(r'withdrawals', WithdrawalAdminViewSet, basename='withdrawal')

urlpatterns = [
    path('', include(router.urls)),
    path('webhooks/stripe/', StripeWebhookView.as_view(), name='stripe-webhook'),
]
