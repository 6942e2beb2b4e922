class PaymentError(Exception):
    """Base class for billing failures; `code` is the short machine-readable name."""

    code = "payment_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class MalformedReference(PaymentError):
    code = "invalid_order"


class DuplicateTransaction(PaymentError):
    code = "duplicate_transaction"


class UnknownTransaction(PaymentError):
    code = "order_not_found"


class VerificationFailed(PaymentError):
    code = "invalid_signature"


class AmountMismatch(PaymentError):
    code = "amount_mismatch"


class GatewayUnavailable(PaymentError):
    """Network error or timeout talking to a provider; the order may or may not exist there."""

    code = "gateway_unavailable"


class GatewayRejected(PaymentError):
    """The provider answered and refused to create the checkout."""

    code = "gateway_rejected"


class GatewayNotConfigured(PaymentError):
    code = "gateway_not_configured"
