"""
Return and IPN handling shared by the VNPay and MoMo routers (and Stripe's webhook).

Every callback goes verify -> translate -> Reconciler.apply. Failures are
answered in the provider's own vocabulary (IPN) or as a redirect to the
billing page (Return); nothing here mutates state except through the reconciler.
"""
import logging
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from fastfolio.core.config import Settings
from fastfolio.payments.errors import (
    AmountMismatch,
    MalformedReference,
    PaymentError,
    UnknownTransaction,
    VerificationFailed,
)
from fastfolio.payments.gateways import Ack, GatewayAdapter
from fastfolio.payments.types import Channel
from fastfolio.services.reconciler import Reconciler, Settlement

log = logging.getLogger("fastfolio.callbacks")

_REJECTION_ACKS: dict[type[PaymentError], Ack] = {
    VerificationFailed: Ack.INVALID_SIGNATURE,
    MalformedReference: Ack.INVALID_ORDER,
    UnknownTransaction: Ack.ORDER_NOT_FOUND,
    AmountMismatch: Ack.INVALID_AMOUNT,
}


async def read_params(request: Request) -> dict[str, Any]:
    """Query string, then form or JSON body; VNPay IPN may arrive as GET or POST."""
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                params.update(body)
        else:
            form = await request.form()
            params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


def acknowledge_notification(gateway: GatewayAdapter, handler: Callable[[], Ack]) -> tuple[dict, int]:
    provider = gateway.provider.value
    try:
        ack = handler()
    except PaymentError as e:
        ack = _REJECTION_ACKS.get(type(e), Ack.ERROR)
        log.warning(
            "%s notification rejected: code=%s ref=%s message=%s",
            provider,
            e.code,
            e.context.get("ref"),
            e.message,
        )
    except Exception:
        # The gateway still gets its documented error answer and retries later
        log.exception("%s notification handler failed", provider)
        ack = Ack.ERROR
    return gateway.acknowledge(ack)


def settlement_ack(settlement: Settlement) -> Ack:
    """A payment that settled FAILED is only received; CONFIRMED is reserved for activations."""
    if settlement.already_settled:
        return Ack.ALREADY_CONFIRMED
    return Ack.CONFIRMED if settlement.succeeded else Ack.RECEIVED


def settle_notification(gateway: GatewayAdapter, db: Session, params: Mapping[str, Any], channel: Channel = Channel.IPN) -> Ack:
    event = gateway.parse_confirmation(params, channel)
    if event is None:
        return Ack.RECEIVED
    return settlement_ack(Reconciler(db).apply(event))


async def handle_ipn(gateway: GatewayAdapter, db: Session, request: Request) -> tuple[dict, int]:
    try:
        params = await read_params(request)
    except (ValueError, HTTPException) as e:
        log.warning("%s notification body unreadable: %s", gateway.provider.value, e)
        return gateway.acknowledge(Ack.ERROR)
    return await run_in_threadpool(
        acknowledge_notification, gateway, lambda: settle_notification(gateway, db, params)
    )


def billing_redirect(settings: Settings, **query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.billing_url}?{urlencode(query)}", status_code=302)


def handle_return(gateway: GatewayAdapter, db: Session, settings: Settings, params: Mapping[str, Any]) -> RedirectResponse:
    provider = gateway.provider.value
    try:
        event = gateway.parse_confirmation(params, Channel.RETURN)
        if event is None:
            return billing_redirect(settings, error="payment_pending", message="Payment is being processed")
        settlement = Reconciler(db).apply(event)
    except PaymentError as e:
        log.warning(
            "%s return rejected: code=%s ref=%s message=%s",
            provider,
            e.code,
            e.context.get("ref"),
            e.message,
        )
        return billing_redirect(settings, error=e.code, message=e.message)
    except Exception:
        log.exception("%s return handler failed", provider)
        return billing_redirect(settings, error="unknown_error", message="Unexpected error")

    if settlement.succeeded:
        return billing_redirect(settings, success="true")
    reason = (settlement.transaction.meta or {}).get("failureReason") or event.message or "Payment failed"
    return billing_redirect(settings, error="payment_failed", message=reason)
