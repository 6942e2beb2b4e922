"""
Payment ledger: the single source of truth for "has this transaction been settled".

`transition_if_pending` is the only status mutation. It is one conditional
UPDATE keyed on `status = 'PENDING'` and the row version the caller read, so
two concurrent confirmations can never both observe PENDING and both win.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from fastfolio.models import PaymentTransaction
from fastfolio.models.clock import utcnow
from fastfolio.payments.errors import DuplicateTransaction, UnknownTransaction
from fastfolio.payments.types import (
    TERMINAL_STATUSES,
    PaymentMetadata,
    PaymentStatus,
    merge_metadata,
)

log = logging.getLogger("fastfolio.ledger")

# A version conflict only happens when a metadata annotation lands between our read
# and our write; retrying a handful of times is plenty.
_MAX_CAS_ATTEMPTS = 5


@dataclass
class Transition:
    applied: bool
    transaction: PaymentTransaction


class PaymentLedger:
    def __init__(self, db: Session):
        self.db = db

    def get(self, ref: str) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.transaction_id == ref)
            .execution_options(populate_existing=True)
        )
        return self.db.exec(stmt).first()

    def require(self, ref: str) -> PaymentTransaction:
        txn = self.get(ref)
        if txn is None:
            raise UnknownTransaction(f"unknown transaction {ref!r}", ref=ref)
        return txn

    def list_for_user(self, user_id: str, limit: int = 50) -> list[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .limit(limit)
        )
        return list(self.db.exec(stmt).all())

    def list_recent(self, status: PaymentStatus | None = None, limit: int = 200) -> list[PaymentTransaction]:
        stmt = select(PaymentTransaction).order_by(PaymentTransaction.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(PaymentTransaction.status == status.value)
        return list(self.db.exec(stmt).all())

    def record_pending(self, txn: PaymentTransaction) -> PaymentTransaction:
        """Insert a new PENDING row. A reference collision is a bug in the checkout path, not a race."""
        txn.status = PaymentStatus.PENDING.value
        txn.version = 0
        self.db.add(txn)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            log.error("Duplicate transaction reference: ref=%s", txn.transaction_id)
            raise DuplicateTransaction(f"transaction {txn.transaction_id!r} already exists", ref=txn.transaction_id) from exc
        self.db.refresh(txn)
        return txn

    def _conditional_update(self, txn: PaymentTransaction, status: PaymentStatus, meta: PaymentMetadata) -> bool:
        table = PaymentTransaction.__table__
        stmt = (
            update(table)
            .where(table.c.transaction_id == txn.transaction_id)
            .where(table.c.status == PaymentStatus.PENDING.value)
            .where(table.c.version == txn.version)
            .values(
                {
                    table.c.status: status.value,
                    table.c["metadata"]: meta,
                    table.c.version: txn.version + 1,
                    table.c.updated_at: utcnow(),
                }
            )
        )
        result = self.db.connection().execute(stmt)
        return result.rowcount == 1

    def transition_if_pending(
        self,
        ref: str,
        new_status: PaymentStatus,
        metadata_patch: PaymentMetadata | None = None,
        commit: bool = True,
    ) -> Transition:
        """
        Compare-and-swap PENDING -> `new_status`.

        Returns `applied=True` with the updated row for exactly one caller per
        transaction; every other caller gets `applied=False` and the existing
        row unchanged. With `commit=False` the caller owns the database
        transaction (the reconciler commits the ledger write together with the
        subscription upsert).
        """
        if new_status not in TERMINAL_STATUSES:
            raise ValueError(f"{new_status} is not a terminal status")
        for _ in range(_MAX_CAS_ATTEMPTS):
            txn = self.require(ref)
            if txn.status != PaymentStatus.PENDING.value:
                return Transition(applied=False, transaction=txn)
            merged = merge_metadata(txn.meta, metadata_patch)
            if self._conditional_update(txn, new_status, merged):
                if commit:
                    self.db.commit()
                return Transition(applied=True, transaction=self.require(ref))
            log.info("Ledger CAS lost a race, re-reading: ref=%s version=%s", ref, txn.version)
        # Still PENDING after repeated version conflicts: treat as not applied, leave it for the next delivery
        log.warning("Ledger CAS gave up after %s attempts: ref=%s", _MAX_CAS_ATTEMPTS, ref)
        return Transition(applied=False, transaction=self.require(ref))

    def annotate(self, ref: str, metadata_patch: PaymentMetadata) -> bool:
        """Merge metadata into a row that is still PENDING. Settled rows are left alone."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            txn = self.require(ref)
            if txn.status != PaymentStatus.PENDING.value:
                return False
            if self._conditional_update(txn, PaymentStatus.PENDING, merge_metadata(txn.meta, metadata_patch)):
                self.db.commit()
                return True
        return False
