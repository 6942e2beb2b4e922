from .payment import (
    CheckoutBody,
    CheckoutResponse,
    PaymentRecord,
    SettleRequest,
    SubscriptionResponse,
    VNPayCheckoutBody,
)

__all__ = [
    "CheckoutBody",
    "CheckoutResponse",
    "PaymentRecord",
    "SettleRequest",
    "SubscriptionResponse",
    "VNPayCheckoutBody",
]
