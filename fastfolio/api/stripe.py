import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from fastfolio.api.callbacks import acknowledge_notification, settlement_ack
from fastfolio.api.checkout import run_checkout
from fastfolio.api.deps import get_current_user, get_gateways
from fastfolio.core.database import get_db
from fastfolio.core.rate_limit import CHECKOUT_RATE_LIMIT, limiter
from fastfolio.core.security import AuthUser
from fastfolio.payments.gateways import Ack, StripeGateway
from fastfolio.payments.types import Channel, PaymentProvider
from fastfolio.schemas import CheckoutBody, CheckoutResponse
from fastfolio.services.reconciler import Reconciler
from fastfolio.services.subscriptions import SubscriptionStore

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
log = logging.getLogger("fastfolio.api.stripe")


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(CHECKOUT_RATE_LIMIT)
def stripe_checkout(
    request: Request,
    body: CheckoutBody,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
):
    return run_checkout(request, body, user, db, gateways[PaymentProvider.STRIPE])


def process_stripe_event(gateway: StripeGateway, db: Session, payload: bytes, signature: str | None) -> Ack:
    event = gateway.verify_webhook(payload, signature)
    confirmation = gateway.confirmation_from_event(event, Channel.IPN)
    if confirmation is not None:
        return settlement_ack(Reconciler(db).apply(confirmation))

    change = gateway.subscription_change(event)
    if change is None:
        log.info("Stripe event ignored: type=%s id=%s", event.get("type"), event.get("id"))
        return Ack.RECEIVED
    store = SubscriptionStore(db)
    if change.subscription_ref:
        store.update_by_stripe_subscription(
            change.subscription_ref,
            change.status,
            current_period_end=change.current_period_end,
            plan=change.plan,
        )
    elif event.get("type") == "invoice.payment_failed" and change.customer_ref:
        store.update_by_stripe_customer(change.customer_ref, change.status)
    log.info("Stripe lifecycle event applied: type=%s status=%s", event.get("type"), change.status.value)
    return Ack.RECEIVED


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db), gateways=Depends(get_gateways)):
    """Raw body is required: the signature covers the exact bytes Stripe sent."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    gateway = gateways[PaymentProvider.STRIPE]
    body, status_code = await run_in_threadpool(
        acknowledge_notification,
        gateway,
        lambda: process_stripe_event(gateway, db, payload, signature),
    )
    return JSONResponse(content=body, status_code=status_code)
