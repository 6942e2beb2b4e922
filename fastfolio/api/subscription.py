from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from fastfolio.api.deps import get_current_user, get_gateways
from fastfolio.core.database import get_db
from fastfolio.core.security import AuthUser
from fastfolio.models import PaymentTransaction
from fastfolio.payments.pricing import PAYMENT_METHODS, PLAN_PRICING
from fastfolio.payments.types import Plan, SubscriptionStatus
from fastfolio.schemas import PaymentRecord, SubscriptionResponse
from fastfolio.services.ledger import PaymentLedger
from fastfolio.services.subscriptions import SubscriptionStore

router = APIRouter(prefix="/api", tags=["billing"])


def payment_record(txn: PaymentTransaction) -> PaymentRecord:
    return PaymentRecord(
        transactionId=txn.transaction_id,
        provider=txn.provider,
        userId=txn.user_id,
        plan=txn.plan,
        amount=txn.amount,
        currency=txn.currency,
        status=txn.status,
        metadata=txn.meta or {},
        createdAt=txn.created_at,
        updatedAt=txn.updated_at,
    )


@router.get("/user/subscription", response_model=SubscriptionResponse)
def user_subscription(user: AuthUser = Depends(get_current_user), db: Session = Depends(get_db)):
    sub = SubscriptionStore(db).get(user.id)
    if sub is None:
        return SubscriptionResponse(plan=Plan.FREE.value, status=SubscriptionStatus.ACTIVE.value)
    return SubscriptionResponse(
        plan=sub.plan,
        status=sub.status,
        currentPeriodEnd=sub.current_period_end,
        paymentProvider=sub.payment_provider,
    )


@router.get("/payments/methods")
def payment_methods(gateways=Depends(get_gateways)):
    methods = [
        {
            **method,
            "id": method["id"].value,
            "supportedPlans": [p.value for p in method["supportedPlans"]],
            "configured": gateways[method["id"]].is_configured(),
        }
        for method in PAYMENT_METHODS
    ]
    pricing = {plan.value: periods for plan, periods in PLAN_PRICING.items()}
    return {"methods": methods, "pricing": pricing}


@router.get("/payments/history", response_model=list[PaymentRecord])
def payment_history(
    limit: int = Query(50, ge=1, le=200),
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [payment_record(txn) for txn in PaymentLedger(db).list_for_user(user.id, limit=limit)]
