import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# .env from the project root wherever uvicorn is started from
_PROJ_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJ_ROOT / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from fastfolio.api import admin, momo, stripe, subscription, vnpay
from fastfolio.core.config import Settings
from fastfolio.core.database import create_db_engine, init_db, ping_db
from fastfolio.core.rate_limit import get_client_ip, limiter
from fastfolio.logging import setup_logging
from fastfolio.payments.gateways import build_gateways

log = logging.getLogger("fastfolio")


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    rid = getattr(request.state, "request_id", None)
    body = {"error": detail, "status_code": status_code}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    log.warning("Rate limit exceeded: ip=%s path=%s", get_client_ip(request), request.url.path)
    return _error_response(request, 429, "Too many requests. Please wait a minute.")


def _validation_error_message(exc: RequestValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return "Invalid request."
    first = errs[0]
    loc = list(first.get("loc") or [])
    field = str(loc[-1]) if loc else None
    if first.get("type") == "missing" and field:
        return f"Missing field: {field}"
    if field in ("plan", "billingCycle"):
        return f"Invalid {field}."
    return first.get("msg") or "Invalid request."


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    engine = create_db_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        configured = [p.value for p, g in app.state.gateways.items() if g.is_configured()]
        log.info("Payment gateways configured: %s", ", ".join(configured) or "none")
        yield
        engine.dispose()

    app = FastAPI(
        title="Fastfolio Billing API",
        description="Checkout, payment confirmation and subscription state for Stripe, VNPay and MoMo",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.gateways = build_gateways(settings)
    app.state.limiter = limiter

    @app.exception_handler(RequestValidationError)
    def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errs = exc.errors()
        log.warning(
            "Request validation error (422): path=%s method=%s detail=%s",
            request.url.path,
            request.method,
            errs,
        )
        rid = getattr(request.state, "request_id", None)
        body = {"error": _validation_error_message(exc), "status_code": 422, "detail": jsonable_errors(errs)}
        if rid:
            body["request_id"] = rid
        return JSONResponse(status_code=422, content=body)

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

    @app.exception_handler(HTTPException)
    def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return _error_response(request, exc.status_code, exc.detail if isinstance(exc.detail, str) else str(exc.detail))

    @app.exception_handler(Exception)
    def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled exception: path=%s %s", request.url.path, exc)
        return _error_response(request, 500, "Unexpected server error")

    @app.middleware("http")
    async def request_id_and_latency(request: Request, call_next):
        request.state.request_id = str(uuid.uuid4())
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request.state.request_id
        log.info(
            "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
            request.state.request_id,
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(stripe.router)
    app.include_router(vnpay.router)
    app.include_router(momo.router)
    app.include_router(subscription.router)
    app.include_router(admin.router)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "database": "ok" if ping_db(engine) else "error",
            "gateways": {p.value: g.is_configured() for p, g in app.state.gateways.items()},
        }

    return app


def jsonable_errors(errs) -> list[dict]:
    """Pydantic error dicts may carry exception objects under `ctx`."""
    return [{k: v for k, v in err.items() if k in ("type", "loc", "msg")} for err in errs]


setup_logging()
app = create_app()
