"""Checkout: price the plan, record a PENDING ledger row, hand the order to the gateway."""
import logging

from sqlmodel import Session

from fastfolio.core.security import AuthUser
from fastfolio.models import PaymentTransaction
from fastfolio.payments.correlator import encode_reference
from fastfolio.payments.errors import (
    GatewayNotConfigured,
    GatewayRejected,
    GatewayUnavailable,
    PaymentError,
)
from fastfolio.payments.gateways import GatewayAdapter
from fastfolio.payments.pricing import get_plan_price
from fastfolio.payments.types import (
    PURCHASABLE_PLANS,
    BillingCycle,
    CheckoutRequest,
    CheckoutSession,
    PaymentStatus,
    Plan,
)
from fastfolio.services.ledger import PaymentLedger

log = logging.getLogger("fastfolio.checkout")


class InvalidPlan(PaymentError):
    code = "invalid_plan"


class CheckoutService:
    def __init__(self, db: Session, gateway: GatewayAdapter):
        self.db = db
        self.gateway = gateway
        self.ledger = PaymentLedger(db)

    def start(
        self,
        user: AuthUser,
        plan: Plan,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        client_ip: str = "127.0.0.1",
        **gateway_options,
    ) -> tuple[PaymentTransaction, CheckoutSession]:
        """
        The PENDING row is committed before the gateway is called, so a
        confirmation can never arrive for an order the ledger does not know.
        """
        plan = Plan(plan)
        billing_cycle = BillingCycle(billing_cycle or BillingCycle.MONTHLY)
        provider = self.gateway.provider
        if not self.gateway.is_configured(plan, billing_cycle):
            raise GatewayNotConfigured(f"{provider.value} is not configured")
        if plan not in PURCHASABLE_PLANS:
            raise InvalidPlan(f"plan {plan.value} cannot be purchased")
        currency = self.gateway.currency
        amount = get_plan_price(plan, currency, billing_cycle)
        if amount <= 0:
            raise InvalidPlan(f"no {currency} price for {plan.value}/{billing_cycle.value}")

        reference = encode_reference(user.id, plan.value)
        txn = self.ledger.record_pending(
            PaymentTransaction(
                transaction_id=reference,
                provider=provider.value,
                user_id=user.id,
                plan=plan.value,
                amount=amount,
                currency=currency,
                meta={"billingCycle": billing_cycle.value},
            )
        )
        log.info(
            "Checkout started: ref=%s provider=%s amount=%s %s",
            reference,
            provider.value,
            amount,
            currency,
        )

        request = CheckoutRequest(
            reference=reference,
            user_id=user.id,
            email=user.email,
            plan=plan,
            amount=amount,
            currency=currency,
            billing_cycle=billing_cycle,
            client_ip=client_ip,
        )
        try:
            session = self.gateway.create_checkout(request, **gateway_options)
        except GatewayUnavailable as e:
            # The provider may still have created the order; a later IPN must be able to settle it
            log.error("Gateway unavailable during checkout: ref=%s provider=%s error=%s", reference, provider.value, e.message)
            self.ledger.annotate(reference, {"checkoutError": e.message})
            raise
        except GatewayRejected as e:
            self.ledger.transition_if_pending(
                reference,
                PaymentStatus.FAILED,
                {"failureReason": e.message, **{k: v for k, v in e.context.items() if v is not None}},
            )
            raise

        if session.metadata:
            self.ledger.annotate(reference, session.metadata)
        return self.ledger.require(reference), session
