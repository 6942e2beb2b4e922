from datetime import datetime

from sqlmodel import Field, SQLModel

from fastfolio.models.clock import utcnow


class Subscription(SQLModel, table=True):
    """Account-state projection of the ledger, one row per user."""

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    plan: str = "FREE"  # "FREE" | "PRO" | "LIFETIME"
    status: str = "ACTIVE"  # ACTIVE | PAST_DUE | CANCELED
    payment_provider: str | None = None
    provider_transaction_ref: str | None = None
    # Card gateway lifecycle events (renewal, cancellation) are keyed by these
    stripe_customer_id: str | None = Field(default=None, index=True)
    stripe_subscription_id: str | None = Field(default=None, index=True)
    current_period_end: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
