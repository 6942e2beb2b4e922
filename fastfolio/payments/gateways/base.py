from abc import ABC, abstractmethod
from collections.abc import Mapping
from enum import Enum
from typing import Any

from fastfolio.core.config import Settings
from fastfolio.payments.types import (
    BillingCycle,
    Channel,
    CheckoutRequest,
    CheckoutSession,
    ConfirmationEvent,
    PaymentProvider,
    Plan,
)


class Ack(str, Enum):
    """Result of handling a server-to-server notification, before it is put in the provider's words."""

    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    RECEIVED = "received"  # verified, nothing was activated
    INVALID_SIGNATURE = "invalid_signature"
    ORDER_NOT_FOUND = "order_not_found"
    INVALID_ORDER = "invalid_order"
    INVALID_AMOUNT = "invalid_amount"
    ERROR = "error"


class GatewayAdapter(ABC):
    """
    Translates the common checkout request into one provider's wire format,
    and that provider's callbacks back into a `ConfirmationEvent`.
    """

    provider: PaymentProvider
    currency: str
    # Ack -> (JSON body, HTTP status) in the provider's documented vocabulary
    ipn_responses: dict[Ack, tuple[dict, int]] = {}

    def __init__(self, settings: Settings):
        self.settings = settings

    @abstractmethod
    def is_configured(self, plan: Plan | None = None, billing_cycle: BillingCycle | None = None) -> bool:
        ...

    @abstractmethod
    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Raises GatewayUnavailable (network/timeout) or GatewayRejected (provider said no)."""

    @abstractmethod
    def parse_confirmation(self, params: Mapping[str, Any], channel: Channel) -> ConfirmationEvent | None:
        """
        Verify and translate one callback. Raises VerificationFailed before
        anything else is looked at; returns None for verified notifications
        that do not settle anything.
        """

    def acknowledge(self, ack: Ack) -> tuple[dict, int]:
        return self.ipn_responses.get(ack) or self.ipn_responses[Ack.ERROR]
