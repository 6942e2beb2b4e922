from fastfolio.core.config import Settings
from fastfolio.payments.types import PaymentProvider

from .base import Ack, GatewayAdapter
from .momo import MoMoGateway
from .stripe_gateway import StripeGateway, SubscriptionChange
from .vnpay import VNPayGateway


def build_gateways(settings: Settings) -> dict[PaymentProvider, GatewayAdapter]:
    return {
        PaymentProvider.STRIPE: StripeGateway(settings),
        PaymentProvider.VNPAY: VNPayGateway(settings),
        PaymentProvider.MOMO: MoMoGateway(settings),
    }


__all__ = [
    "Ack",
    "GatewayAdapter",
    "MoMoGateway",
    "StripeGateway",
    "SubscriptionChange",
    "VNPayGateway",
    "build_gateways",
]
