"""VNPay (VND): signed redirect URL out, signed query string back on Return and IPN."""
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from fastfolio.core.config import Settings
from fastfolio.payments.errors import AmountMismatch, VerificationFailed
from fastfolio.payments.gateways.base import Ack, GatewayAdapter
from fastfolio.payments.signatures import SortedQueryHmacSha512
from fastfolio.payments.types import (
    BillingCycle,
    Channel,
    CheckoutRequest,
    CheckoutSession,
    ConfirmationEvent,
    PaymentProvider,
    Plan,
)

log = logging.getLogger("fastfolio.gateways.vnpay")

VNPAY_VERSION = "2.1.0"
# VNPay timestamps are GMT+7 regardless of where the server runs
VNPAY_TZ = timezone(timedelta(hours=7))
CHECKOUT_EXPIRY = timedelta(minutes=15)

VNPAY_RESPONSE_CODES: dict[str, str] = {
    "00": "Giao dịch thành công",
    "07": "Trừ tiền thành công. Giao dịch bị nghi ngờ (liên quan tới lừa đảo, giao dịch bất thường).",
    "09": "Giao dịch không thành công do: Thẻ/Tài khoản của khách hàng chưa đăng ký dịch vụ InternetBanking tại ngân hàng.",
    "10": "Giao dịch không thành công do: Khách hàng xác thực thông tin thẻ/tài khoản không đúng quá 3 lần",
    "11": "Giao dịch không thành công do: Đã hết hạn chờ thanh toán. Xin quý khách vui lòng thực hiện lại giao dịch.",
    "12": "Giao dịch không thành công do: Thẻ/Tài khoản của khách hàng bị khóa.",
    "13": "Giao dịch không thành công do Quý khách nhập sai mật khẩu xác thực giao dịch (OTP).",
    "24": "Giao dịch không thành công do: Khách hàng hủy giao dịch",
    "51": "Giao dịch không thành công do: Tài khoản của quý khách không đủ số dư để thực hiện giao dịch.",
    "65": "Giao dịch không thành công do: Tài khoản của Quý khách đã vượt quá hạn mức giao dịch trong ngày.",
    "75": "Ngân hàng thanh toán đang bảo trì.",
    "79": "Giao dịch không thành công do: KH nhập sai mật khẩu thanh toán quá số lần quy định.",
    "99": "Các lỗi khác (lỗi còn lại, không có trong danh sách mã lỗi đã liệt kê)",
}


def format_vnpay_date(value: datetime) -> str:
    """yyyyMMddHHmmss in GMT+7."""
    return value.astimezone(VNPAY_TZ).strftime("%Y%m%d%H%M%S")


def parse_vnpay_amount(raw: Any) -> int:
    """vnp_Amount is the VND amount multiplied by 100."""
    text = str(raw or "").strip()
    if not text.isdigit() or int(text) % 100:
        raise AmountMismatch(f"unparseable vnp_Amount {raw!r}")
    return int(text) // 100


class VNPayGateway(GatewayAdapter):
    provider = PaymentProvider.VNPAY
    currency = "VND"
    ipn_responses = {
        Ack.CONFIRMED: ({"RspCode": "00", "Message": "Confirm Success"}, 200),
        Ack.ALREADY_CONFIRMED: ({"RspCode": "02", "Message": "Order already confirmed"}, 200),
        Ack.RECEIVED: ({"RspCode": "00", "Message": "Confirm Success"}, 200),
        Ack.ORDER_NOT_FOUND: ({"RspCode": "01", "Message": "Order not found"}, 200),
        Ack.INVALID_ORDER: ({"RspCode": "01", "Message": "Invalid order ID"}, 200),
        Ack.INVALID_AMOUNT: ({"RspCode": "04", "Message": "Invalid amount"}, 200),
        Ack.INVALID_SIGNATURE: ({"RspCode": "97", "Message": "Invalid signature"}, 200),
        Ack.ERROR: ({"RspCode": "99", "Message": "Unknown error"}, 200),
    }

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.tmn_code = settings.vnpay_tmn_code
        self.hash_secret = settings.vnpay_hash_secret
        self.url = settings.vnpay_url
        self.return_url = settings.vnpay_return_url
        self.signer = SortedQueryHmacSha512()

    def is_configured(self, plan: Plan | None = None, billing_cycle: BillingCycle | None = None) -> bool:
        return bool(self.tmn_code and self.hash_secret)

    def create_checkout(self, request: CheckoutRequest, locale: str = "vn", bank_code: str | None = None) -> CheckoutSession:
        now = datetime.now(timezone.utc)
        params = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Locale": locale,
            "vnp_CurrCode": self.currency,
            "vnp_TxnRef": request.reference,
            "vnp_OrderInfo": f"Fastfolio {request.plan.value} Plan",
            "vnp_OrderType": "other",
            "vnp_Amount": str(request.amount * 100),
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": request.client_ip,
            "vnp_CreateDate": format_vnpay_date(now),
            "vnp_ExpireDate": format_vnpay_date(now + CHECKOUT_EXPIRY),
        }
        if bank_code:
            params["vnp_BankCode"] = bank_code
        query = self.signer.query_string(params)
        secure_hash = self.signer.sign(params, self.hash_secret)
        # Pure URL signing: VNPay is never called during checkout, so it cannot be unavailable here
        return CheckoutSession(redirect_url=f"{self.url}?{query}&vnp_SecureHash={secure_hash}")

    def parse_confirmation(self, params: Mapping[str, Any], channel: Channel) -> ConfirmationEvent:
        if not self.signer.verify(params, self.hash_secret):
            raise VerificationFailed("invalid VNPay signature", ref=params.get("vnp_TxnRef"))
        response_code = str(params.get("vnp_ResponseCode", ""))
        transaction_status = str(params.get("vnp_TransactionStatus", ""))
        # Return redirects and IPNs carry the same fields
        success = response_code == "00" and transaction_status == "00"
        return ConfirmationEvent(
            ref=str(params.get("vnp_TxnRef", "")),
            provider=self.provider,
            verified_amount=parse_vnpay_amount(params.get("vnp_Amount")),
            verified_currency=self.currency,
            success=success,
            provider_txn_id=params.get("vnp_TransactionNo"),
            channel=channel,
            message=VNPAY_RESPONSE_CODES.get(response_code, "Unknown error"),
            extra={
                "vnpayTransactionNo": params.get("vnp_TransactionNo"),
                "vnpayResponseCode": response_code,
                "bankCode": params.get("vnp_BankCode"),
            },
        )
