"""Pytest fixtures: app built by create_app on in-memory SQLite, JWT headers, gateway payload signers."""
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from fastfolio.core.config import Settings
from fastfolio.core.database import create_db_engine, init_db
from fastfolio.core.rate_limit import limiter
from fastfolio.core.security import create_access_token
from fastfolio.main import create_app
from fastfolio.models import PaymentTransaction
from fastfolio.payments.signatures import SortedQueryHmacSha512, momo_confirmation_verifier

SECRET_KEY = "test-secret-key"
VNPAY_SECRET = "VNPAYTESTSECRET"
MOMO_ACCESS_KEY = "momo-access"
MOMO_SECRET = "momo-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test"


def make_settings(**overrides) -> Settings:
    values = dict(
        secret_key=SECRET_KEY,
        database_url="sqlite:///:memory:",
        app_url="http://testserver",
        admin_emails="admin@example.com",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        stripe_pro_price_id="price_pro",
        stripe_pro_yearly_price_id="price_pro_yearly",
        stripe_lifetime_price_id="price_lifetime",
        vnpay_tmn_code="TESTTMN",
        vnpay_hash_secret=VNPAY_SECRET,
        momo_partner_code="MOMOTEST",
        momo_access_key=MOMO_ACCESS_KEY,
        momo_secret_key=MOMO_SECRET,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(autouse=True)
def _reset_rate_limit():
    """The limiter is process-wide; every test starts with an empty window."""
    limiter.reset()
    yield


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture(scope="function")
def client(app):
    """TestClient; the lifespan creates the tables."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(client, app):
    with Session(app.state.engine) as session:
        yield session


@pytest.fixture
def engine():
    """Standalone in-memory database for service-level tests."""
    eng = create_db_engine("sqlite:///:memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


def bearer(user_id: str = "u1", email: str | None = "user@example.com") -> dict:
    token = create_access_token({"sub": user_id, "email": email}, SECRET_KEY)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> dict:
    return bearer()


@pytest.fixture
def admin_headers() -> dict:
    return bearer("admin1", "admin@example.com")


def add_pending(
    db: Session,
    ref: str = "u1_PRO_1000",
    provider: str = "VNPAY",
    amount: int = 200000,
    currency: str = "VND",
    user_id: str | None = None,
    plan: str | None = None,
    meta: dict | None = None,
) -> PaymentTransaction:
    parts = ref.split("_")
    txn = PaymentTransaction(
        transaction_id=ref,
        provider=provider,
        user_id=user_id or parts[0],
        plan=plan or parts[1],
        amount=amount,
        currency=currency,
        status="PENDING",
        meta=meta if meta is not None else {"billingCycle": "monthly"},
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn


def signed_vnpay_params(ref: str, amount: int, response_code: str = "00", status: str = "00", **extra) -> dict:
    params = {
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_OrderInfo": "Fastfolio PRO Plan",
        "vnp_PayDate": "20240101120000",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": "TESTTMN",
        "vnp_TransactionNo": "14000001",
        "vnp_TransactionStatus": status,
        "vnp_TxnRef": ref,
    }
    params.update(extra)
    params["vnp_SecureHash"] = SortedQueryHmacSha512().sign(params, VNPAY_SECRET)
    return params


def signed_momo_params(ref: str, amount: int, result_code: int = 0, **extra) -> dict:
    params = {
        "partnerCode": "MOMOTEST",
        "orderId": ref,
        "requestId": "1700000000000_abc",
        "amount": amount,
        "orderInfo": "Fastfolio PRO Plan",
        "orderType": "momo_wallet",
        "transId": 4088878653,
        "resultCode": result_code,
        "message": "Successful." if result_code == 0 else "Failed.",
        "payType": "qr",
        "responseTime": 1700000001000,
        "extraData": "",
    }
    params.update(extra)
    params["signature"] = momo_confirmation_verifier(MOMO_ACCESS_KEY).sign(params, MOMO_SECRET)
    return params


def stripe_signature_header(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})
