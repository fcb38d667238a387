from .base import PaymentProvider, ProviderRequest, ProviderResult, RefundResult
from .registry import PROVIDER_NAMES, get_provider, supports_push_refunds

__all__ = [
    'PaymentProvider',
    'ProviderRequest',
    'ProviderResult',
    'RefundResult',
    'PROVIDER_NAMES',
    'get_provider',
    'supports_push_refunds',
]
