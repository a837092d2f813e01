from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from paycore.model.gateway import (
    CardDetails,
    GatewayStatusResponse,
    PaymentCaptureData,
    PaymentIntentData,
    PaymentIntentResponse,
    PaymentRefundData,
    PaymentRefundResponse,
    PaymentResponse,
    SubscriptionCancelData,
    SubscriptionCreateData,
    SubscriptionResponse,
    SubscriptionResumeData,
    SubscriptionSwapData,
)


class PaymentGateway(ABC):
    """
    What every driver must do. Statuses come back in the vendor's own
    vocabulary; mapping them is the orchestrators' job.

    Drivers raise GatewayUnavailable when the provider cannot be reached and
    GatewayRejected (with the raw body) when it answers with an error.
    """

    name: str = "gateway"

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options = options or {}

    @abstractmethod
    async def create_intent(self, data: PaymentIntentData) -> PaymentIntentResponse:
        ...

    @abstractmethod
    async def confirm_intent(self, provider_intent_id: str, context: Dict[str, Any]) -> GatewayStatusResponse:
        ...

    @abstractmethod
    async def cancel_intent(self, provider_intent_id: str, context: Dict[str, Any]) -> GatewayStatusResponse:
        ...

    @abstractmethod
    async def capture_payment(self, data: PaymentCaptureData) -> PaymentResponse:
        ...

    @abstractmethod
    async def refund_payment(self, data: PaymentRefundData) -> PaymentRefundResponse:
        ...

    def supports_token_details(self) -> bool:
        return False

    async def get_payment_token_details(self, provider_token_id: str) -> CardDetails:
        raise NotImplementedError


class SubscriptionGateway(ABC):
    """Optional capability: recurring billing managed by the provider."""

    @abstractmethod
    async def create_subscription(self, data: SubscriptionCreateData) -> SubscriptionResponse:
        ...

    @abstractmethod
    async def cancel_subscription(self, data: SubscriptionCancelData) -> SubscriptionResponse:
        ...

    @abstractmethod
    async def resume_subscription(self, data: SubscriptionResumeData) -> SubscriptionResponse:
        ...

    @abstractmethod
    async def swap_subscription(self, data: SubscriptionSwapData) -> SubscriptionResponse:
        ...
