"""Subscription projection: written by the reconciler and by card-gateway lifecycle events only."""
import logging
from datetime import datetime, timedelta

from sqlmodel import Session, select

from fastfolio.models import PaymentTransaction, Subscription
from fastfolio.models.clock import utcnow
from fastfolio.payments.types import BillingCycle, PaymentProvider, PaymentStatus, Plan, SubscriptionStatus

log = logging.getLogger("fastfolio.subscriptions")

LIFETIME_PERIOD_END = datetime(2099, 12, 31)
PERIOD_LENGTH = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.YEARLY: timedelta(days=365),
}


def compute_period_end(
    plan: str,
    now: datetime,
    billing_cycle: str | None = None,
    provider_period_end: datetime | None = None,
) -> datetime:
    if plan == Plan.LIFETIME.value:
        return LIFETIME_PERIOD_END
    if provider_period_end is not None:
        return provider_period_end
    try:
        cycle = BillingCycle(billing_cycle or BillingCycle.MONTHLY.value)
    except ValueError:
        cycle = BillingCycle.MONTHLY
    return now + PERIOD_LENGTH[cycle]


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Subscription | None:
        return self.db.exec(select(Subscription).where(Subscription.user_id == user_id)).first()

    def activate(
        self,
        txn: PaymentTransaction,
        *,
        now: datetime | None = None,
        provider_txn_id: str | None = None,
        period_end: datetime | None = None,
        customer_ref: str | None = None,
        subscription_ref: str | None = None,
    ) -> Subscription:
        """Upsert the user's row from a settled transaction. Does not commit."""
        now = now or utcnow()
        sub = self.get(txn.user_id) or Subscription(user_id=txn.user_id)
        sub.plan = txn.plan
        sub.status = SubscriptionStatus.ACTIVE.value
        sub.payment_provider = txn.provider
        sub.provider_transaction_ref = provider_txn_id or txn.transaction_id
        sub.current_period_end = compute_period_end(
            txn.plan, now, (txn.meta or {}).get("billingCycle"), period_end
        )
        # Lifecycle events of an older card subscription must not reach the new plan
        if txn.provider == PaymentProvider.STRIPE.value:
            sub.stripe_customer_id = customer_ref or sub.stripe_customer_id
            sub.stripe_subscription_id = subscription_ref
        else:
            sub.stripe_customer_id = None
            sub.stripe_subscription_id = None
        sub.updated_at = now
        self.db.add(sub)
        return sub

    def _update_where(self, column, value: str, **changes) -> int:
        """Only rows whose current plan is a live card subscription."""
        stmt = (
            select(Subscription)
            .where(column == value)
            .where(Subscription.payment_provider == PaymentProvider.STRIPE.value)
            .where(Subscription.stripe_subscription_id.is_not(None))
        )
        rows = list(self.db.exec(stmt).all())
        for sub in rows:
            for key, val in changes.items():
                setattr(sub, key, val)
            sub.updated_at = utcnow()
            self.db.add(sub)
        self.db.commit()
        return len(rows)

    def update_by_stripe_subscription(
        self,
        stripe_subscription_id: str,
        status: SubscriptionStatus,
        current_period_end: datetime | None = None,
        plan: Plan | None = None,
    ) -> int:
        changes: dict = {"status": status.value}
        if current_period_end is not None:
            changes["current_period_end"] = current_period_end
        if plan is not None:
            changes["plan"] = plan.value
        updated = self._update_where(Subscription.stripe_subscription_id, stripe_subscription_id, **changes)
        if not updated:
            log.info("No subscription for stripe_subscription_id=%s (not settled yet?)", stripe_subscription_id)
        return updated

    def update_by_stripe_customer(self, stripe_customer_id: str, status: SubscriptionStatus) -> int:
        updated = self._update_where(Subscription.stripe_customer_id, stripe_customer_id, status=status.value)
        if not updated:
            log.info("No subscription for stripe_customer_id=%s", stripe_customer_id)
        return updated

    def rebuild_from_ledger(self, user_id: str) -> Subscription | None:
        """Replay the user's SUCCESS rows in settlement order into a fresh projection."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .where(PaymentTransaction.status == PaymentStatus.SUCCESS.value)
            .order_by(PaymentTransaction.updated_at, PaymentTransaction.id)
        )
        settled = list(self.db.exec(stmt).all())
        sub = self.get(user_id)
        if not settled:
            if sub is not None:
                sub.plan = Plan.FREE.value
                sub.status = SubscriptionStatus.ACTIVE.value
                sub.payment_provider = None
                sub.provider_transaction_ref = None
                sub.current_period_end = None
                sub.updated_at = utcnow()
                self.db.add(sub)
                self.db.commit()
            return sub
        for txn in settled:
            meta = txn.meta or {}
            sub = self.activate(
                txn,
                now=txn.updated_at,
                provider_txn_id=meta.get("providerTransactionId"),
                customer_ref=meta.get("stripeCustomerId"),
                subscription_ref=meta.get("stripeSubscriptionId"),
            )
            # activate() stamps updated_at with the settlement time; the rebuild itself happens now
            self.db.flush()
        sub.updated_at = utcnow()
        self.db.add(sub)
        self.db.commit()
        self.db.refresh(sub)
        log.info("Subscription rebuilt from %s settled transactions: user_id=%s plan=%s", len(settled), user_id, sub.plan)
        return sub
