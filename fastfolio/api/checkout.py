import logging

from fastapi import HTTPException, Request, status
from sqlmodel import Session

from fastfolio.core.rate_limit import get_client_ip
from fastfolio.core.security import AuthUser
from fastfolio.payments.errors import (
    DuplicateTransaction,
    GatewayNotConfigured,
    GatewayRejected,
    GatewayUnavailable,
    MalformedReference,
)
from fastfolio.payments.gateways import GatewayAdapter
from fastfolio.payments.types import BillingCycle, Plan
from fastfolio.schemas import CheckoutBody, CheckoutResponse
from fastfolio.services.checkout import CheckoutService, InvalidPlan

log = logging.getLogger("fastfolio.api.checkout")


def run_checkout(
    request: Request,
    body: CheckoutBody,
    user: AuthUser,
    db: Session,
    gateway: GatewayAdapter,
    **gateway_options,
) -> CheckoutResponse:
    service = CheckoutService(db, gateway)
    try:
        txn, session = service.start(
            user,
            Plan(body.plan),
            BillingCycle(body.billing_cycle),
            client_ip=get_client_ip(request),
            **gateway_options,
        )
    except GatewayNotConfigured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{gateway.provider.value} payments are not configured",
        )
    except (InvalidPlan, MalformedReference) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except GatewayRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except GatewayUnavailable:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create payment")
    except DuplicateTransaction:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Checkout already in progress, please retry")
    return CheckoutResponse(
        transactionId=txn.transaction_id,
        redirectUrl=session.redirect_url,
        shortLink=session.short_link,
    )
