"""Stripe (card, USD cents): hosted Checkout Sessions out, signed webhooks back."""
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import stripe

from fastfolio.core.config import Settings
from fastfolio.payments.errors import GatewayRejected, GatewayUnavailable, VerificationFailed
from fastfolio.payments.gateways.base import Ack, GatewayAdapter
from fastfolio.payments.signatures import StripeWebhookSignature
from fastfolio.payments.types import (
    BillingCycle,
    Channel,
    CheckoutRequest,
    CheckoutSession,
    ConfirmationEvent,
    PaymentProvider,
    Plan,
    SubscriptionStatus,
)

log = logging.getLogger("fastfolio.gateways.stripe")

SETTLING_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)
LIFECYCLE_EVENTS = (
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_failed",
    "invoice.paid",
)

# Stripe subscription.status -> our projection status
_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
}


@dataclass(frozen=True)
class SubscriptionChange:
    """Renewal, dunning or cancellation of an already settled card subscription."""

    status: SubscriptionStatus
    subscription_ref: str | None = None
    customer_ref: str | None = None
    current_period_end: datetime | None = None
    plan: Plan | None = None


def _from_epoch(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class StripeGateway(GatewayAdapter):
    provider = PaymentProvider.STRIPE
    currency = "USD"
    ipn_responses = {
        Ack.CONFIRMED: ({"received": True}, 200),
        Ack.ALREADY_CONFIRMED: ({"received": True}, 200),
        Ack.RECEIVED: ({"received": True}, 200),
        Ack.ORDER_NOT_FOUND: ({"error": "Order not found"}, 400),
        Ack.INVALID_ORDER: ({"error": "Invalid order ID"}, 400),
        Ack.INVALID_AMOUNT: ({"error": "Invalid amount"}, 400),
        Ack.INVALID_SIGNATURE: ({"error": "Invalid signature"}, 400),
        Ack.ERROR: ({"error": "Webhook handler failed"}, 400),
    }

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.secret_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.signature = StripeWebhookSignature(tolerance=settings.stripe_webhook_tolerance)
        self.price_ids = {
            (Plan.PRO, BillingCycle.MONTHLY): settings.stripe_pro_price_id,
            (Plan.PRO, BillingCycle.YEARLY): settings.stripe_pro_yearly_price_id,
            (Plan.LIFETIME, BillingCycle.MONTHLY): settings.stripe_lifetime_price_id,
            (Plan.LIFETIME, BillingCycle.YEARLY): settings.stripe_lifetime_price_id,
        }

    def price_id(self, plan: Plan, billing_cycle: BillingCycle | None = None) -> str:
        return self.price_ids.get((Plan(plan), billing_cycle or BillingCycle.MONTHLY), "")

    def is_configured(self, plan: Plan | None = None, billing_cycle: BillingCycle | None = None) -> bool:
        if not self.secret_key:
            return False
        if plan is None:
            return True
        return bool(self.price_id(plan, billing_cycle))

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        mode = "payment" if request.plan == Plan.LIFETIME else "subscription"
        params: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": self.price_id(request.plan, request.billing_cycle), "quantity": 1}],
            "success_url": f"{self.settings.app_url}/dashboard?success=true",
            "cancel_url": f"{self.settings.billing_url}?canceled=true",
            "client_reference_id": request.reference,
            "metadata": {
                "userId": request.user_id,
                "plan": request.plan.value,
                "transactionId": request.reference,
            },
        }
        if request.email:
            params["customer_email"] = request.email
        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.APIConnectionError as e:
            raise GatewayUnavailable(f"Stripe connection error: {e.user_message or e}") from e
        except stripe.StripeError as e:
            log.warning("Stripe checkout rejected: ref=%s error=%s", request.reference, e.user_message or e)
            raise GatewayRejected(e.user_message or "Failed to create Stripe session", stripeCode=e.code) from e
        return CheckoutSession(redirect_url=session["url"], metadata={"stripeSessionId": session["id"]})

    def verify_webhook(self, payload: bytes | str, signature: str | None) -> dict:
        """Check the Stripe-Signature header, then hand back the event as plain dicts."""
        if not self.signature.verify({"payload": payload, "signature": signature}, self.webhook_secret):
            raise VerificationFailed("invalid Stripe signature")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise VerificationFailed("Stripe payload is not JSON") from e
        if not isinstance(event, dict) or "type" not in event:
            raise VerificationFailed("Stripe payload is not an event")
        return event

    def parse_confirmation(self, params: Mapping[str, Any], channel: Channel) -> ConfirmationEvent | None:
        """`params` is the raw webhook: {"payload": bytes, "signature": header}."""
        event = self.verify_webhook(params.get("payload") or b"", params.get("signature"))
        return self.confirmation_from_event(event, channel)

    def confirmation_from_event(self, event: Mapping[str, Any], channel: Channel = Channel.IPN) -> ConfirmationEvent | None:
        event_type = event.get("type")
        if event_type not in SETTLING_EVENTS:
            return None
        session = (event.get("data") or {}).get("object") or {}
        ref = session.get("client_reference_id") or (session.get("metadata") or {}).get("transactionId")
        if event_type == "checkout.session.completed":
            if session.get("payment_status") not in ("paid", "no_payment_required"):
                # Delayed payment methods settle later through async_payment_*
                log.info("Stripe session completed but not paid yet: ref=%s", ref)
                return None
            success = True
        else:
            success = event_type == "checkout.session.async_payment_succeeded"
        payment_ref = session.get("payment_intent") or session.get("subscription") or session.get("id")
        return ConfirmationEvent(
            ref=str(ref or ""),
            provider=self.provider,
            verified_amount=int(session.get("amount_total") or 0),
            verified_currency=str(session.get("currency") or "").upper(),
            success=success,
            provider_txn_id=payment_ref,
            channel=channel,
            message=None if success else f"Stripe {event_type}",
            customer_ref=session.get("customer"),
            subscription_ref=session.get("subscription"),
            extra={"stripeSessionId": session.get("id"), "stripeEventId": event.get("id")},
        )

    def subscription_change(self, event: Mapping[str, Any]) -> SubscriptionChange | None:
        """Lifecycle events of an already settled card subscription; None for anything else."""
        event_type = event.get("type")
        if event_type not in LIFECYCLE_EVENTS:
            return None
        obj = (event.get("data") or {}).get("object") or {}
        if event_type == "customer.subscription.updated":
            status = _SUBSCRIPTION_STATUS.get(obj.get("status"), SubscriptionStatus.CANCELED)
            return SubscriptionChange(
                status=status,
                subscription_ref=obj.get("id"),
                customer_ref=obj.get("customer"),
                current_period_end=_from_epoch(obj.get("current_period_end")),
            )
        if event_type == "customer.subscription.deleted":
            return SubscriptionChange(
                status=SubscriptionStatus.CANCELED,
                subscription_ref=obj.get("id"),
                customer_ref=obj.get("customer"),
                plan=Plan.FREE,
            )
        if event_type == "invoice.payment_failed":
            return SubscriptionChange(
                status=SubscriptionStatus.PAST_DUE,
                subscription_ref=obj.get("subscription"),
                customer_ref=obj.get("customer"),
            )
        if event_type == "invoice.paid":
            lines = (obj.get("lines") or {}).get("data") or []
            period_end = _from_epoch(((lines[0] if lines else {}).get("period") or {}).get("end"))
            return SubscriptionChange(
                status=SubscriptionStatus.ACTIVE,
                subscription_ref=obj.get("subscription"),
                customer_ref=obj.get("customer"),
                current_period_end=period_end,
            )
        return None
