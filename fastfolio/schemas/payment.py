from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CheckoutBody(BaseModel):
    """Checkout is opened first; the plan is granted only once the gateway confirms."""

    model_config = ConfigDict(populate_by_name=True)

    plan: Literal["PRO", "LIFETIME"]
    billing_cycle: Literal["monthly", "yearly"] = Field(default="monthly", alias="billingCycle")


class VNPayCheckoutBody(CheckoutBody):
    locale: Literal["vn", "en"] = "vn"
    bank_code: str | None = Field(default=None, alias="bankCode")


class CheckoutResponse(BaseModel):
    transactionId: str
    redirectUrl: str
    shortLink: str | None = None


class SubscriptionResponse(BaseModel):
    plan: str
    status: str
    currentPeriodEnd: datetime | None = None
    paymentProvider: str | None = None


class PaymentRecord(BaseModel):
    transactionId: str
    provider: str
    userId: str
    plan: str
    amount: int
    currency: str
    status: str
    metadata: dict[str, Any]
    createdAt: datetime
    updatedAt: datetime


class SettleRequest(BaseModel):
    """Manual reconciliation: the admin records what the provider's dashboard shows."""

    success: bool = True
    provider_transaction_id: str | None = Field(default=None, alias="providerTransactionId")
    note: str | None = None
