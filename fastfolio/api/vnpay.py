from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from fastfolio.api.callbacks import handle_ipn, handle_return
from fastfolio.api.checkout import run_checkout
from fastfolio.api.deps import get_current_user, get_gateways, get_settings
from fastfolio.core.config import Settings
from fastfolio.core.database import get_db
from fastfolio.core.rate_limit import CHECKOUT_RATE_LIMIT, limiter
from fastfolio.core.security import AuthUser
from fastfolio.payments.types import PaymentProvider
from fastfolio.schemas import CheckoutResponse, VNPayCheckoutBody

router = APIRouter(prefix="/api/vnpay", tags=["vnpay"])


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(CHECKOUT_RATE_LIMIT)
def vnpay_checkout(
    request: Request,
    body: VNPayCheckoutBody,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
):
    return run_checkout(
        request,
        body,
        user,
        db,
        gateways[PaymentProvider.VNPAY],
        locale=body.locale,
        bank_code=body.bank_code,
    )


@router.get("/return")
def vnpay_return(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateways=Depends(get_gateways),
):
    """Browser lands here after paying; verified and settled just like the IPN."""
    return handle_return(gateways[PaymentProvider.VNPAY], db, settings, dict(request.query_params))


@router.api_route("/ipn", methods=["GET", "POST"])
async def vnpay_ipn(request: Request, db: Session = Depends(get_db), gateways=Depends(get_gateways)):
    body, status_code = await handle_ipn(gateways[PaymentProvider.VNPAY], db, request)
    return JSONResponse(content=body, status_code=status_code)
