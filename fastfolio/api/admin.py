"""Admin reconciliation: list ledger rows, settle a stuck PENDING row by hand, rebuild a projection."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from fastfolio.api.deps import require_admin
from fastfolio.api.subscription import payment_record
from fastfolio.core.database import get_db
from fastfolio.core.security import AuthUser
from fastfolio.payments.errors import AmountMismatch, MalformedReference, UnknownTransaction
from fastfolio.payments.types import Channel, ConfirmationEvent, PaymentProvider, PaymentStatus
from fastfolio.schemas import PaymentRecord, SettleRequest
from fastfolio.services.ledger import PaymentLedger
from fastfolio.services.reconciler import Reconciler
from fastfolio.services.subscriptions import SubscriptionStore

router = APIRouter(prefix="/api/admin", tags=["admin"])
log = logging.getLogger("fastfolio.api.admin")


@router.get("/payments", response_model=list[PaymentRecord])
def admin_payments(
    status_filter: PaymentStatus | None = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=1000),
    _: AuthUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return [payment_record(txn) for txn in PaymentLedger(db).list_recent(status=status_filter, limit=limit)]


@router.post("/payments/{ref}/settle")
def admin_settle(
    ref: str,
    body: SettleRequest,
    admin: AuthUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """
    Goes through the same reconciler as the gateways, using the stored amount:
    an admin can settle a row but cannot settle it twice or change what was paid.
    """
    txn = PaymentLedger(db).get(ref)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    event = ConfirmationEvent(
        ref=txn.transaction_id,
        provider=PaymentProvider(txn.provider),
        verified_amount=txn.amount,
        verified_currency=txn.currency,
        success=body.success,
        provider_txn_id=body.provider_transaction_id,
        channel=Channel.MANUAL,
        message=body.note or ("Settled manually" if body.success else "Failed manually"),
        extra={"settledBy": admin.email, "adminNote": body.note},
    )
    try:
        settlement = Reconciler(db).apply(event)
    except (MalformedReference, UnknownTransaction, AmountMismatch) as e:
        raise HTTPException(status_code=400, detail=e.message)
    log.info("Manual settlement: ref=%s by=%s outcome=%s", ref, admin.email, settlement.outcome.value)
    return {
        "outcome": settlement.outcome.value,
        "transaction": payment_record(settlement.transaction),
    }


@router.post("/subscriptions/{user_id}/rebuild")
def admin_rebuild_subscription(
    user_id: str,
    admin: AuthUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    sub = SubscriptionStore(db).rebuild_from_ledger(user_id)
    log.info("Subscription rebuild: user_id=%s by=%s", user_id, admin.email)
    if sub is None:
        return {"userId": user_id, "plan": "FREE", "status": "ACTIVE", "currentPeriodEnd": None}
    return {
        "userId": user_id,
        "plan": sub.plan,
        "status": sub.status,
        "currentPeriodEnd": sub.current_period_end,
        "paymentProvider": sub.payment_provider,
    }
