from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from fastfolio.models.clock import utcnow


class PaymentTransaction(SQLModel, table=True):
    """Ledger row: one per checkout attempt. Created PENDING, settled once, never deleted."""

    id: int | None = Field(default=None, primary_key=True)
    transaction_id: str = Field(unique=True, index=True)  # {userId}_{plan}_{epochMillis}
    provider: str  # "STRIPE" | "VNPAY" | "MOMO"
    user_id: str = Field(index=True)
    plan: str  # "PRO" | "LIFETIME"
    amount: int  # USD cents for Stripe, VND for VNPay/MoMo
    currency: str
    status: str = Field(default="PENDING", index=True)  # PENDING | SUCCESS | FAILED
    # "metadata" is reserved on declarative classes, so the attribute is `meta`
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))
    # Bumped by every conditional update; a stale writer matches zero rows
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
