from __future__ import annotations

import secrets
from typing import Any, Dict, Optional

import structlog

from paycore.common.exception import GatewayRejected
from paycore.common.utility_functions import mask_token
from paycore.gateway.contracts import PaymentGateway, SubscriptionGateway
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

logger = structlog.get_logger()

FAKE_BRANDS = ("visa", "mastercard", "amex", "discover")


def _fake_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


class FakeGateway(PaymentGateway, SubscriptionGateway):
    """
    In-process driver for local development and tests. Resulting statuses
    come from its options, so every orchestrator branch can be driven
    without a provider.
    """

    name = "fake"

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        super().__init__(options)
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}

    def _option(self, key: str, default: str) -> str:
        return self.options.get(key) or default

    def _intent(self, provider_intent_id: str) -> Dict[str, Any]:
        intent = self.intents.get(provider_intent_id)
        if intent is None:
            raise GatewayRejected(
                self.name,
                f"Unknown payment intent [{provider_intent_id}].",
                raw={"provider_intent_id": provider_intent_id},
            )
        return intent

    def _subscription(self, provider_subscription_id: Optional[str]) -> Dict[str, Any]:
        subscription = self.subscriptions.get(provider_subscription_id or "")
        if subscription is None:
            raise GatewayRejected(
                self.name,
                f"Unknown subscription [{provider_subscription_id}].",
                raw={"provider_subscription_id": provider_subscription_id},
            )
        return subscription

    # ------------------------------------------------------------------
    # One-off payments
    # ------------------------------------------------------------------

    async def create_intent(self, data: PaymentIntentData) -> PaymentIntentResponse:
        intent_id = _fake_id("pi_fake")
        status = self._option("intent_status", "requires_confirmation")
        client_secret = self.options.get("client_secret") or f"{intent_id}_secret_{secrets.token_hex(6)}"
        raw = {
            "id": intent_id,
            "amount": data.amount,
            "currency": data.currency,
            "status": status,
            "client_secret": client_secret,
            "metadata": data.metadata,
        }
        self.intents[intent_id] = raw
        return PaymentIntentResponse(
            provider=self.name,
            provider_intent_id=intent_id,
            client_secret=client_secret,
            status=status,
            raw=raw,
        )

    async def confirm_intent(self, provider_intent_id: str, context: Dict[str, Any]) -> GatewayStatusResponse:
        intent = self._intent(provider_intent_id)
        intent["status"] = context.get("status") or "requires_capture"
        return GatewayStatusResponse(status=intent["status"], raw=dict(intent))

    async def cancel_intent(self, provider_intent_id: str, context: Dict[str, Any]) -> GatewayStatusResponse:
        intent = self._intent(provider_intent_id)
        intent["status"] = "cancelled"
        intent["cancellation_reason"] = context.get("reason")
        return GatewayStatusResponse(status="cancelled", raw=dict(intent))

    async def capture_payment(self, data: PaymentCaptureData) -> PaymentResponse:
        intent = self._intent(data.provider_intent_id)
        payment_id = _fake_id("ch_fake")
        status = self._option("capture_status", "captured")
        amount = data.amount or intent["amount"]
        raw = {
            "id": payment_id,
            "payment_intent": data.provider_intent_id,
            "amount": amount,
            "currency": data.currency or intent["currency"],
            "status": status,
        }
        intent["status"] = status
        self.payments[payment_id] = raw
        return PaymentResponse(
            provider_payment_id=payment_id,
            amount=amount,
            currency=raw["currency"],
            status=status,
            raw=raw,
        )

    async def refund_payment(self, data: PaymentRefundData) -> PaymentRefundResponse:
        if data.provider_payment_id not in self.payments:
            raise GatewayRejected(
                self.name,
                f"Unknown payment [{data.provider_payment_id}].",
                raw={"provider_payment_id": data.provider_payment_id},
            )
        refund_id = _fake_id("re_fake")
        status = self._option("refund_status", "succeeded")
        raw = {
            "id": refund_id,
            "payment": data.provider_payment_id,
            "amount": data.amount,
            "currency": data.currency,
            "reason": data.reason,
            "status": status,
        }
        self.refunds[refund_id] = raw
        return PaymentRefundResponse(provider_refund_id=refund_id, amount=data.amount, status=status, raw=raw)

    def supports_token_details(self) -> bool:
        return True

    async def get_payment_token_details(self, provider_token_id: str) -> CardDetails:
        # Deterministic per token so repeated lookups agree
        digits = "".join(ch for ch in provider_token_id if ch.isdigit())
        last_four = (digits[-4:] if len(digits) >= 4 else "4242")
        brand = FAKE_BRANDS[sum(map(ord, provider_token_id)) % len(FAKE_BRANDS)]
        logger.debug("Fake token lookup", token=mask_token(provider_token_id), brand=brand)
        return CardDetails(brand=brand, last_four=last_four, exp_month=12, exp_year=2030, billing_country="US")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(self, data: SubscriptionCreateData) -> SubscriptionResponse:
        subscription_id = _fake_id("sub_fake")
        status = self._option("subscription_status", "active")
        raw = {
            "id": subscription_id,
            "amount": data.amount,
            "currency": data.currency,
            "interval": data.interval,
            "interval_count": data.interval_count,
            "trial_days": data.trial_days,
            "status": status,
        }
        self.subscriptions[subscription_id] = raw
        return SubscriptionResponse(provider=self.name, provider_subscription_id=subscription_id, status=status, raw=raw)

    async def cancel_subscription(self, data: SubscriptionCancelData) -> SubscriptionResponse:
        subscription = self._subscription(data.provider_subscription_id)
        subscription["status"] = "cancelled" if data.immediate else "active"
        subscription["cancel_at_period_end"] = not data.immediate
        return SubscriptionResponse(
            provider=self.name,
            provider_subscription_id=subscription["id"],
            status=subscription["status"],
            raw=dict(subscription),
        )

    async def resume_subscription(self, data: SubscriptionResumeData) -> SubscriptionResponse:
        subscription = self._subscription(data.provider_subscription_id)
        subscription["status"] = "active"
        subscription["cancel_at_period_end"] = False
        return SubscriptionResponse(
            provider=self.name,
            provider_subscription_id=subscription["id"],
            status="active",
            raw=dict(subscription),
        )

    async def swap_subscription(self, data: SubscriptionSwapData) -> SubscriptionResponse:
        subscription = self._subscription(data.provider_subscription_id)
        subscription.update(
            amount=data.amount,
            currency=data.currency,
            interval=data.interval,
            interval_count=data.interval_count,
            plan_id=data.plan_id,
        )
        return SubscriptionResponse(
            provider=self.name,
            provider_subscription_id=subscription["id"],
            status=subscription["status"],
            raw=dict(subscription),
        )
