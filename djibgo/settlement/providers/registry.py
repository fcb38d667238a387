from ..exceptions import ValidationError
from .base import PaymentProvider
from .manual import ManualTransferProvider
from .stripe_connect import StripeConnectProvider
from .waafipay import WaafiPayProvider

PROVIDER_CLASSES = {
    'waafipay': WaafiPayProvider,
    'stripe': StripeConnectProvider,
    'dmoney': ManualTransferProvider,
    'bank': ManualTransferProvider,
}

PROVIDER_NAMES = tuple(PROVIDER_CLASSES)


def get_provider(name: str) -> PaymentProvider:
    """Return the adapter registered under ``name``."""
    if name not in PROVIDER_CLASSES:
        raise ValidationError(f"Unknown payment provider: {name}", code='unknown_provider')
    if PROVIDER_CLASSES[name] is ManualTransferProvider:
        return ManualTransferProvider(name)
    return PROVIDER_CLASSES[name]()


def supports_push_refunds(name: str) -> bool:
    """Whether the rail can return money itself, checked without building the adapter."""
    return name in PROVIDER_CLASSES and PROVIDER_CLASSES[name].supports_refunds
