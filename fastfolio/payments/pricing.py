"""Plan prices and the payment method catalogue shown on the billing page."""
from fastfolio.payments.types import BillingCycle, PaymentProvider, Plan

# USD in cents, VND in dong
PLAN_PRICING: dict[Plan, dict[str, dict[str, int]]] = {
    Plan.PRO: {
        "monthly": {"USD": 800, "VND": 199000},
        "yearly": {"USD": 8000, "VND": 1990000},  # ~17% off
    },
    Plan.LIFETIME: {
        "oneTime": {"USD": 4900, "VND": 1190000},
    },
}

PAYMENT_METHODS = [
    {
        "id": PaymentProvider.STRIPE,
        "name": "Credit/Debit Card",
        "description": "Visa, Mastercard, AMEX",
        "icon": "credit-card",
        "currencies": ["USD"],
        "supportedPlans": [Plan.PRO, Plan.LIFETIME],
        "supportsRecurring": True,
    },
    {
        "id": PaymentProvider.VNPAY,
        "name": "VNPay",
        "description": "ATM nội địa, Visa, QR Pay",
        "icon": "vnpay",
        "currencies": ["VND"],
        "supportedPlans": [Plan.PRO, Plan.LIFETIME],
        "supportsRecurring": True,
    },
    {
        "id": PaymentProvider.MOMO,
        "name": "MoMo",
        "description": "Ví điện tử MoMo",
        "icon": "momo",
        "currencies": ["VND"],
        "supportedPlans": [Plan.PRO, Plan.LIFETIME],
        "supportsRecurring": True,
    },
]


def get_plan_price(plan: Plan, currency: str, billing_cycle: BillingCycle | None = None) -> int:
    """Price in the currency's smallest unit; 0 when the combination is not offered."""
    pricing = PLAN_PRICING.get(Plan(plan))
    if not pricing:
        return 0
    if plan == Plan.LIFETIME:
        period = "oneTime"
    elif billing_cycle == BillingCycle.YEARLY:
        period = "yearly"
    else:
        period = "monthly"
    return pricing.get(period, {}).get(currency.upper(), 0)
