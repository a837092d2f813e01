from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Tuple

import stripe
import structlog

from paycore.common.exception import GatewayRejected, GatewayUnavailable
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

# internal interval -> (stripe interval, multiplier)
STRIPE_INTERVALS: Dict[str, Tuple[str, int]] = {
    "daily": ("day", 1),
    "weekly": ("week", 1),
    "monthly": ("month", 1),
    "quarterly": ("month", 3),
    "yearly": ("year", 1),
    "annually": ("year", 1),
}


def _raw(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway(PaymentGateway, SubscriptionGateway):
    """
    Stripe driver: manual-capture PaymentIntents, Refunds, Subscriptions.
    The SDK is blocking, so each call runs in a worker thread.
    """

    name = "stripe"

    @property
    def api_key(self) -> str:
        return self.options.get("api_key") or ""

    async def _call(self, fn: Callable[..., Any], **params: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, api_key=self.api_key, **params)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Stripe unreachable", error=str(exc))
            raise GatewayUnavailable(self.name, exc.user_message or str(exc)) from exc
        except (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError) as exc:
            logger.info("Stripe rejected request", error=str(exc), code=getattr(exc, "code", None))
            raise GatewayRejected(self.name, exc.user_message or str(exc), raw=exc.json_body or {}) from exc
        except stripe.StripeError as exc:
            # 5xx style API errors
            logger.warning("Stripe API error", error=str(exc))
            raise GatewayUnavailable(self.name, exc.user_message or str(exc)) from exc

    # ------------------------------------------------------------------
    # One-off payments
    # ------------------------------------------------------------------

    async def create_intent(self, data: PaymentIntentData) -> PaymentIntentResponse:
        metadata = {k: str(v) for k, v in (data.metadata or {}).items()}
        metadata.update(payable_kind=data.payable_kind.value, payable_id=str(data.payable_id))
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=data.amount,
            currency=data.currency.lower(),
            capture_method="manual",
            description=data.description,
            metadata=metadata,
        )
        return PaymentIntentResponse(
            provider=self.name,
            provider_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent["status"],
            raw=_raw(intent),
        )

    async def confirm_intent(self, provider_intent_id: str, context: Dict[str, Any]) -> GatewayStatusResponse:
        params: Dict[str, Any] = {}
        if context.get("payment_method"):
            params["payment_method"] = context["payment_method"]
        if context.get("return_url"):
            params["return_url"] = context["return_url"]
        intent = await self._call(stripe.PaymentIntent.confirm, intent=provider_intent_id, **params)
        return GatewayStatusResponse(status=intent["status"], raw=_raw(intent))

    async def cancel_intent(self, provider_intent_id: str, context: Dict[str, Any]) -> GatewayStatusResponse:
        params: Dict[str, Any] = {}
        if context.get("reason"):
            params["cancellation_reason"] = context["reason"]
        intent = await self._call(stripe.PaymentIntent.cancel, intent=provider_intent_id, **params)
        return GatewayStatusResponse(status=intent["status"], raw=_raw(intent))

    async def capture_payment(self, data: PaymentCaptureData) -> PaymentResponse:
        params: Dict[str, Any] = {}
        if data.amount:
            params["amount_to_capture"] = data.amount
        intent = await self._call(stripe.PaymentIntent.capture, intent=data.provider_intent_id, **params)
        # Refunds and charge webhooks reference the charge, not the intent
        provider_payment_id = intent.get("latest_charge") or intent["id"]
        return PaymentResponse(
            provider_payment_id=provider_payment_id,
            amount=intent.get("amount_received") or intent["amount"],
            currency=(intent.get("currency") or "").upper() or None,
            status=intent["status"],
            raw=_raw(intent),
        )

    async def refund_payment(self, data: PaymentRefundData) -> PaymentRefundResponse:
        params: Dict[str, Any] = {"amount": data.amount, "metadata": {k: str(v) for k, v in data.metadata.items()}}
        if data.provider_payment_id.startswith("pi_"):
            params["payment_intent"] = data.provider_payment_id
        else:
            params["charge"] = data.provider_payment_id
        if data.reason in ("duplicate", "fraudulent", "requested_by_customer"):
            params["reason"] = data.reason
        refund = await self._call(stripe.Refund.create, **params)
        return PaymentRefundResponse(
            provider_refund_id=refund["id"],
            amount=refund["amount"],
            status=refund["status"],
            raw=_raw(refund),
        )

    def supports_token_details(self) -> bool:
        return True

    async def get_payment_token_details(self, provider_token_id: str) -> CardDetails:
        logger.info("Fetching Stripe payment method", token=mask_token(provider_token_id))
        method = await self._call(stripe.PaymentMethod.retrieve, id=provider_token_id)
        card = method.get("card") or {}
        address = (method.get("billing_details") or {}).get("address") or {}
        return CardDetails(
            brand=card.get("brand"),
            last_four=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
            billing_country=address.get("country") or card.get("country"),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _recurring(self, interval: str, interval_count: int) -> Dict[str, Any]:
        stripe_interval, multiplier = STRIPE_INTERVALS.get((interval or "").lower(), ("month", 1))
        return {"interval": stripe_interval, "interval_count": interval_count * multiplier}

    def _price_data(self, amount: int, currency: str, interval: str, interval_count: int,
                    metadata: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "currency": currency.lower(),
            "unit_amount": amount,
            "product": metadata.get("stripe_product_id") or self.options.get("product_id"),
            "recurring": self._recurring(interval, interval_count),
        }

    async def create_subscription(self, data: SubscriptionCreateData) -> SubscriptionResponse:
        params: Dict[str, Any] = {
            "customer": data.metadata.get("stripe_customer_id"),
            "items": [{"price_data": self._price_data(
                data.amount, data.currency, data.interval, data.interval_count, data.metadata,
            )}],
            "metadata": {
                "subscriber_id": str(data.subscriber_id),
                "creator_id": str(data.creator_id),
            },
        }
        if data.trial_days:
            params["trial_period_days"] = data.trial_days
        if data.payment_method_token:
            params["default_payment_method"] = data.payment_method_token
        if not data.auto_renews:
            params["cancel_at_period_end"] = True
        subscription = await self._call(stripe.Subscription.create, **params)
        return self._subscription_response(subscription)

    async def cancel_subscription(self, data: SubscriptionCancelData) -> SubscriptionResponse:
        if data.immediate:
            subscription = await self._call(stripe.Subscription.cancel, subscription_exposed_id=data.provider_subscription_id)
        else:
            subscription = await self._call(
                stripe.Subscription.modify, id=data.provider_subscription_id, cancel_at_period_end=True,
            )
        return self._subscription_response(subscription)

    async def resume_subscription(self, data: SubscriptionResumeData) -> SubscriptionResponse:
        subscription = await self._call(
            stripe.Subscription.modify, id=data.provider_subscription_id, cancel_at_period_end=False,
        )
        return self._subscription_response(subscription)

    async def swap_subscription(self, data: SubscriptionSwapData) -> SubscriptionResponse:
        current = await self._call(stripe.Subscription.retrieve, id=data.provider_subscription_id)
        items = (current.get("items") or {}).get("data") or []
        item: Dict[str, Any] = {"price_data": self._price_data(
            data.amount, data.currency, data.interval, data.interval_count, data.metadata,
        )}
        if items:
            item["id"] = items[0]["id"]
        subscription = await self._call(
            stripe.Subscription.modify,
            id=data.provider_subscription_id,
            items=[item],
            proration_behavior="create_prorations",
        )
        return self._subscription_response(subscription)

    def _subscription_response(self, subscription: Any) -> SubscriptionResponse:
        return SubscriptionResponse(
            provider=self.name,
            provider_subscription_id=subscription["id"],
            status=subscription["status"],
            raw=_raw(subscription),
        )
