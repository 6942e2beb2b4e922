"""Provider-agnostic payment vocabulary shared by the gateways, the ledger and the reconciler."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Plan(str, Enum):
    FREE = "FREE"  # projection value only, never purchasable
    PRO = "PRO"
    LIFETIME = "LIFETIME"


PURCHASABLE_PLANS = (Plan.PRO, Plan.LIFETIME)


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentProvider(str, Enum):
    STRIPE = "STRIPE"
    VNPAY = "VNPAY"
    MOMO = "MOMO"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


TERMINAL_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.FAILED)


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class Channel(str, Enum):
    RETURN = "return"    # browser redirect back from the gateway
    IPN = "ipn"          # server-to-server notification / webhook
    MANUAL = "manual"    # admin reconciliation


# Additive key-value map stored on each ledger row
PaymentMetadata = dict[str, Any]


def merge_metadata(existing: PaymentMetadata | None, patch: PaymentMetadata | None) -> PaymentMetadata:
    """New keys win; keys absent from the patch are preserved. Neither input is mutated."""
    merged = dict(existing or {})
    merged.update(patch or {})
    return merged


@dataclass(frozen=True)
class CheckoutRequest:
    reference: str
    user_id: str
    email: str | None
    plan: Plan
    amount: int
    currency: str
    billing_cycle: BillingCycle
    client_ip: str = "127.0.0.1"


@dataclass(frozen=True)
class CheckoutSession:
    redirect_url: str
    short_link: str | None = None
    # Written onto the PENDING row once the gateway accepted the order
    metadata: PaymentMetadata = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmationEvent:
    """A verified confirmation, already translated out of the provider's wire format."""

    ref: str
    provider: PaymentProvider
    verified_amount: int
    verified_currency: str
    success: bool
    provider_txn_id: str | None
    channel: Channel
    message: str | None = None
    # Provider-supplied billing period end (card gateway)
    period_end: datetime | None = None
    customer_ref: str | None = None
    subscription_ref: str | None = None
    extra: PaymentMetadata = field(default_factory=dict)
