"""MoMo e-wallet (VND): create call over HTTPS, HMAC-SHA256 signed IPN and redirect."""
import base64
import json
import logging
import secrets
import time
from collections.abc import Mapping
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request as UrlRequest
from urllib.request import urlopen

from fastfolio.core.config import Settings
from fastfolio.payments.errors import AmountMismatch, GatewayRejected, GatewayUnavailable, VerificationFailed
from fastfolio.payments.gateways.base import Ack, GatewayAdapter
from fastfolio.payments.signatures import SignatureVerifier, momo_confirmation_verifier, momo_create_signer
from fastfolio.payments.types import (
    BillingCycle,
    Channel,
    CheckoutRequest,
    CheckoutSession,
    ConfirmationEvent,
    PaymentProvider,
    Plan,
)

log = logging.getLogger("fastfolio.gateways.momo")

REQUEST_TYPE = "payWithMethod"

MOMO_RESULT_CODES: dict[int, str] = {
    0: "Thành công",
    9000: "Giao dịch được cấp quyền (authorization) thành công",
    8000: "Giao dịch đang ở trạng thái cần được người dùng xác nhận thanh toán lại",
    7000: "Giao dịch đang được xử lý",
    1000: "Hệ thống đang được bảo trì",
    1001: "Tài khoản của bạn không đủ số dư để thực hiện giao dịch",
    1002: "Giao dịch bị từ chối do nhà phát hành tài khoản thanh toán",
    1003: "Giao dịch bị đã bị hủy",
    1004: "Giao dịch thất bại do số tiền thanh toán vượt quá hạn mức thanh toán của bạn",
    1005: "Giao dịch thất bại do url hoặc QR code đã hết hạn",
    1006: "Giao dịch thất bại do bạn đã từ chối xác nhận thanh toán",
    1007: "Giao dịch bị từ chối vì tài khoản không tồn tại hoặc tạm thời bị khóa",
    1017: "Giao dịch bị hủy bởi người dùng",
    1026: "Giao dịch bị hạn chế theo thể lệ chương trình khuyến mãi",
    1080: "Giao dịch hoàn tiền bị từ chối. Giao dịch gốc không được tìm thấy",
    1081: "Giao dịch hoàn tiền bị từ chối. Giao dịch gốc có thể đã được hoàn",
    2019: "Yêu cầu bị từ chối vì requestId bị trùng",
    4001: "Giao dịch bị hạn chế do người dùng chưa hoàn tất xác thực tài khoản",
    4010: "Giao dịch bị từ chối do quá trình xác minh OTP thất bại",
    4015: "Giao dịch bị từ chối do quá trình xác minh 3DS thất bại",
    4100: "Giao dịch thất bại do người dùng không đăng nhập thành công",
    10: "Hệ thống đang được bảo trì",
    99: "Lỗi không xác định",
}

# Still in flight on MoMo's side: settling these as FAILED would block the later success
NON_FINAL_RESULT_CODES = frozenset({7000, 7002, 8000, 9000})


def generate_request_id() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def encode_extra_data(user_id: str, plan: str) -> str:
    return base64.b64encode(json.dumps({"userId": user_id, "plan": plan}).encode()).decode()


def _as_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


class MoMoGateway(GatewayAdapter):
    provider = PaymentProvider.MOMO
    currency = "VND"
    ipn_responses = {
        Ack.CONFIRMED: ({"resultCode": 0, "message": "Confirm Success"}, 200),
        Ack.ALREADY_CONFIRMED: ({"resultCode": 0, "message": "Order already confirmed"}, 200),
        Ack.RECEIVED: ({"resultCode": 0, "message": "Received"}, 200),
        Ack.ORDER_NOT_FOUND: ({"resultCode": 1, "message": "Order not found"}, 200),
        Ack.INVALID_ORDER: ({"resultCode": 1, "message": "Invalid order ID"}, 200),
        Ack.INVALID_AMOUNT: ({"resultCode": 4, "message": "Invalid amount"}, 200),
        Ack.INVALID_SIGNATURE: ({"resultCode": 97, "message": "Invalid signature"}, 200),
        Ack.ERROR: ({"resultCode": 99, "message": "Unknown error"}, 200),
    }

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.partner_code = settings.momo_partner_code
        self.access_key = settings.momo_access_key
        self.secret_key = settings.momo_secret_key
        self.api_endpoint = settings.momo_api_endpoint.rstrip("/")
        self.redirect_url = settings.momo_return_url
        self.ipn_url = settings.momo_ipn_url
        self.timeout = settings.gateway_timeout_seconds
        self.create_signer = momo_create_signer(self.access_key)
        self.verifier: SignatureVerifier = momo_confirmation_verifier(self.access_key)

    def is_configured(self, plan: Plan | None = None, billing_cycle: BillingCycle | None = None) -> bool:
        return bool(self.partner_code and self.access_key and self.secret_key)

    def _post_json(self, url: str, body: dict) -> dict:
        req = UrlRequest(
            url,
            data=json.dumps(body).encode(),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode())
        except HTTPError as e:
            # MoMo answers business errors with 4xx and a JSON body carrying resultCode
            try:
                return json.loads(e.read().decode())
            except ValueError:
                raise GatewayUnavailable(f"MoMo HTTP {e.code}") from e
        except (URLError, TimeoutError, OSError, ValueError) as e:
            raise GatewayUnavailable(f"MoMo connection error: {str(e)[:80]}") from e

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        request_id = generate_request_id()
        body = {
            "partnerCode": self.partner_code,
            "partnerName": self.settings.momo_partner_name,
            "storeId": self.partner_code,
            "requestId": request_id,
            "amount": request.amount,
            "orderId": request.reference,
            "orderInfo": f"Fastfolio {request.plan.value} Plan",
            "redirectUrl": self.redirect_url,
            "ipnUrl": self.ipn_url,
            "lang": "vi",
            "requestType": REQUEST_TYPE,
            "autoCapture": True,
            "extraData": encode_extra_data(request.user_id, request.plan.value),
        }
        body["signature"] = self.create_signer.sign(body, self.secret_key)
        result = self._post_json(f"{self.api_endpoint}/create", body)
        result_code = _as_int(result.get("resultCode"), 99)
        if result_code != 0 or not result.get("payUrl"):
            log.warning("MoMo create rejected: ref=%s resultCode=%s message=%s", request.reference, result_code, result.get("message"))
            raise GatewayRejected(
                result.get("message") or "Failed to create MoMo payment",
                resultCode=result_code,
                requestId=request_id,
            )
        return CheckoutSession(
            redirect_url=result["payUrl"],
            short_link=result.get("shortLink"),
            metadata={"requestId": request_id},
        )

    def parse_confirmation(self, params: Mapping[str, Any], channel: Channel) -> ConfirmationEvent | None:
        if not self.verifier.verify(params, self.secret_key):
            raise VerificationFailed("invalid MoMo signature", ref=params.get("orderId"))
        result_code = _as_int(params.get("resultCode"), 99)
        if result_code in NON_FINAL_RESULT_CODES:
            log.info("MoMo notification not final: ref=%s resultCode=%s", params.get("orderId"), result_code)
            return None
        amount = _as_int(params.get("amount"), -1)
        if amount < 0:
            raise AmountMismatch(f"unparseable MoMo amount {params.get('amount')!r}", ref=params.get("orderId"))
        trans_id = params.get("transId")
        return ConfirmationEvent(
            ref=str(params.get("orderId", "")),
            provider=self.provider,
            verified_amount=amount,
            verified_currency=self.currency,
            success=result_code == 0,
            provider_txn_id=str(trans_id) if trans_id is not None else None,
            channel=channel,
            message=params.get("message") or MOMO_RESULT_CODES.get(result_code, "Unknown error"),
            extra={"momoTransId": str(trans_id) if trans_id is not None else None, "resultCode": result_code},
        )
