from .payment import PaymentTransaction
from .subscription import Subscription

__all__ = [
    "PaymentTransaction",
    "Subscription",
]
