"""
Settlement: apply a verified confirmation to the ledger and the subscription exactly once.

The Return redirect and the IPN for the same order routinely race each other;
whichever reaches the ledger CAS first settles the row, the other one gets
ALREADY_SETTLED. The subscription upsert runs only on the winning path and
is committed in the same database transaction as the ledger write.
"""
import logging
from dataclasses import dataclass
from enum import Enum

from sqlmodel import Session

from fastfolio.models import PaymentTransaction
from fastfolio.models.clock import utcnow
from fastfolio.payments.correlator import decode_reference
from fastfolio.payments.errors import AmountMismatch, UnknownTransaction
from fastfolio.payments.types import ConfirmationEvent, PaymentStatus
from fastfolio.services.ledger import PaymentLedger
from fastfolio.services.subscriptions import SubscriptionStore

log = logging.getLogger("fastfolio.reconciler")


class Outcome(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"


@dataclass
class Settlement:
    outcome: Outcome
    transaction: PaymentTransaction

    @property
    def already_settled(self) -> bool:
        return self.outcome == Outcome.ALREADY_SETTLED

    @property
    def succeeded(self) -> bool:
        """Final state of the row, whichever delivery settled it."""
        return self.transaction.status == PaymentStatus.SUCCESS.value


def _confirmation_metadata(event: ConfirmationEvent) -> dict:
    meta = {
        "providerTransactionId": event.provider_txn_id,
        "channel": event.channel.value,
        "confirmedAt": utcnow().isoformat(),
    }
    if event.customer_ref:
        meta["stripeCustomerId"] = event.customer_ref
    if event.subscription_ref:
        meta["stripeSubscriptionId"] = event.subscription_ref
    if not event.success:
        meta["failureReason"] = event.message
    meta.update(event.extra)
    return meta


class Reconciler:
    def __init__(self, db: Session):
        self.db = db
        self.ledger = PaymentLedger(db)
        self.subscriptions = SubscriptionStore(db)

    def apply(self, event: ConfirmationEvent) -> Settlement:
        """
        Raises MalformedReference, UnknownTransaction or AmountMismatch without
        touching any state. Returns SETTLED for the one delivery that moved the
        row out of PENDING and ALREADY_SETTLED for every other delivery.
        """
        decode_reference(event.ref)

        txn = self.ledger.get(event.ref)
        if txn is None:
            raise UnknownTransaction(f"unknown transaction {event.ref!r}", ref=event.ref)
        if txn.provider != event.provider.value:
            # A confirmation signed by one gateway cannot settle another gateway's order
            raise UnknownTransaction(
                f"transaction {event.ref!r} belongs to {txn.provider}, not {event.provider.value}",
                ref=event.ref,
            )
        if event.verified_amount != txn.amount or event.verified_currency.upper() != txn.currency.upper():
            raise AmountMismatch(
                f"expected {txn.amount} {txn.currency}, got {event.verified_amount} {event.verified_currency}",
                ref=event.ref,
                expected=txn.amount,
                received=event.verified_amount,
            )

        new_status = PaymentStatus.SUCCESS if event.success else PaymentStatus.FAILED
        try:
            transition = self.ledger.transition_if_pending(
                event.ref, new_status, _confirmation_metadata(event), commit=False
            )
            if not transition.applied:
                self.db.rollback()
                log.info(
                    "Already settled: ref=%s status=%s channel=%s",
                    event.ref,
                    transition.transaction.status,
                    event.channel.value,
                )
                return Settlement(Outcome.ALREADY_SETTLED, self.ledger.require(event.ref))
            if event.success:
                # A failed payment never touches the subscription: no downgrade of an earlier purchase
                self.subscriptions.activate(
                    transition.transaction,
                    provider_txn_id=event.provider_txn_id,
                    period_end=event.period_end,
                    customer_ref=event.customer_ref,
                    subscription_ref=event.subscription_ref,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        txn = self.ledger.require(event.ref)
        log.info(
            "Settled: ref=%s provider=%s status=%s channel=%s",
            event.ref,
            txn.provider,
            txn.status,
            event.channel.value,
        )
        return Settlement(Outcome.SETTLED, txn)
