"""
Message authentication for gateway confirmations.

Each provider signs differently; all of them are exposed through
`SignatureVerifier.verify(params, secret) -> bool`. Verification is pure:
no I/O, no state, constant-time comparison of digests.
"""
import hashlib
import hmac
from collections.abc import Mapping, Sequence
from typing import Any, Protocol
from urllib.parse import quote_plus

import stripe



class SignatureVerifier(Protocol):
    def verify(self, params: Mapping[str, Any], secret: str) -> bool: ...


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def hmac_hex(data: str, secret: str, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), digestmod).hexdigest()


def digests_match(expected: str, received: str | None) -> bool:
    """Constant-time, case-insensitive hex comparison."""
    return hmac.compare_digest(expected.lower().encode(), (received or "").lower().encode())


class FixedOrderHmacSha256:
    """
    HMAC-SHA256 over `k1=v1&k2=v2...` in a fixed field order (MoMo).

    The order is the gateway's public contract; only the listed fields are
    signed. Values that live in configuration rather than in the payload
    (MoMo's accessKey) are passed as `constants`.
    """

    def __init__(self, fields: Sequence[str], signature_field: str = "signature", constants: Mapping[str, str] | None = None):
        self.fields = tuple(fields)
        self.signature_field = signature_field
        self.constants = dict(constants or {})

    def raw_string(self, params: Mapping[str, Any]) -> str:
        values = {**params, **self.constants}
        return "&".join(f"{name}={_as_text(values.get(name))}" for name in self.fields)

    def sign(self, params: Mapping[str, Any], secret: str) -> str:
        return hmac_hex(self.raw_string(params), secret, hashlib.sha256)

    def verify(self, params: Mapping[str, Any], secret: str) -> bool:
        if not secret:
            return False
        received = params.get(self.signature_field)
        if not received:
            return False
        return digests_match(self.sign(params, secret), _as_text(received))


class SortedQueryHmacSha512:
    """
    HMAC-SHA512 over alphabetically sorted, `quote_plus`-encoded pairs (VNPay).

    The hash fields themselves are excluded, and only keys carrying `prefix`
    are signed so that unrelated query parameters never break verification.
    """

    def __init__(self, signature_field: str = "vnp_SecureHash", excluded: Sequence[str] = ("vnp_SecureHash", "vnp_SecureHashType"), prefix: str = "vnp_"):
        self.signature_field = signature_field
        self.excluded = frozenset(excluded)
        self.prefix = prefix

    def query_string(self, params: Mapping[str, Any]) -> str:
        keys = sorted(k for k in params if k.startswith(self.prefix) and k not in self.excluded)
        return "&".join(f"{k}={quote_plus(_as_text(params[k]))}" for k in keys)

    def sign(self, params: Mapping[str, Any], secret: str) -> str:
        return hmac_hex(self.query_string(params), secret, hashlib.sha512)

    def verify(self, params: Mapping[str, Any], secret: str) -> bool:
        if not secret:
            return False
        received = params.get(self.signature_field)
        if not received:
            return False
        return digests_match(self.sign(params, secret), _as_text(received))


class StripeWebhookSignature:
    """
    Stripe-Signature header (`t=...,v1=...`) checked with the SDK.

    `params` carries the raw request body under `payload` and the header
    under `signature`; the body must be the exact bytes Stripe sent.
    """

    def __init__(self, tolerance: int = 300):
        self.tolerance = tolerance

    def verify(self, params: Mapping[str, Any], secret: str) -> bool:
        payload = params.get("payload")
        header = params.get("signature")
        if not secret or not payload or not header:
            return False
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError:
            return False
        return True


MOMO_CREATE_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)

MOMO_CONFIRMATION_FIELDS = (
    "accessKey",
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)


def momo_create_signer(access_key: str) -> FixedOrderHmacSha256:
    return FixedOrderHmacSha256(MOMO_CREATE_FIELDS, constants={"accessKey": access_key})


def momo_confirmation_verifier(access_key: str) -> FixedOrderHmacSha256:
    return FixedOrderHmacSha256(MOMO_CONFIRMATION_FIELDS, constants={"accessKey": access_key})
