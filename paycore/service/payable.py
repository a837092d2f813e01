"""
Payable subjects: what a payment pays for.

A payment carries a tagged kind plus an integer id. The registry maps each
kind to a handler that can load the subject and apply the settled outcome of
its payment (capture, failure, refund).
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.events import EventSink
from paycore.common.payment_enums import PayableKind, PostPurchaseStatus, WebhookEventType
from paycore.data.dbinit import unit_of_work
from paycore.data.payment import Payment
from paycore.data.post_purchase import get_post_purchase, lock_post_purchase
from paycore.data.subscription import get_subscription
from paycore.gateway.manager import PaymentGatewayManager
from paycore.service.subscription import SubscriptionService

logger = structlog.get_logger()


class PayableHandler:
    kind: PayableKind

    async def lookup(self, db: AsyncSession, payable_id: int) -> Optional[Any]:
        return None

    async def settle(self, db: AsyncSession, payment: Payment, outcome: WebhookEventType) -> None:
        logger.info(
            "Payable settled",
            payable_kind=self.kind.value,
            payable_id=payment.payable_id,
            payment_id=payment.id,
            outcome=outcome.value,
        )


class LoggedPayable(PayableHandler):
    """Kinds whose subject lives outside this service; settlement is only logged."""

    def __init__(self, kind: PayableKind):
        self.kind = kind


class SubscriptionChargePayable(PayableHandler):
    kind = PayableKind.SUBSCRIPTION_CHARGE

    def __init__(self, subscriptions: Callable[[AsyncSession], Any]):
        self.subscriptions = subscriptions

    async def lookup(self, db: AsyncSession, payable_id: int):
        return await get_subscription(db, payable_id)

    async def settle(self, db: AsyncSession, payment: Payment, outcome: WebhookEventType) -> None:
        service = self.subscriptions(db)
        if outcome == WebhookEventType.PAYMENT_SUCCEEDED:
            await service.record_successful_payment(payment.payable_id, payment)
        elif outcome == WebhookEventType.PAYMENT_FAILED:
            reason = (payment.metadata_json or {}).get("failure_reason")
            await service.record_failed_payment(payment.payable_id, payment, reason=reason)
        else:
            await super().settle(db, payment, outcome)


class PostPurchasePayable(PayableHandler):
    kind = PayableKind.POST_PURCHASE

    OUTCOME_STATUS = {
        WebhookEventType.PAYMENT_SUCCEEDED: PostPurchaseStatus.COMPLETED,
        WebhookEventType.PAYMENT_FAILED: PostPurchaseStatus.FAILED,
        WebhookEventType.PAYMENT_REFUNDED: PostPurchaseStatus.REFUNDED,
    }

    async def lookup(self, db: AsyncSession, payable_id: int):
        return await get_post_purchase(db, payable_id)

    async def settle(self, db: AsyncSession, payment: Payment, outcome: WebhookEventType) -> None:
        target = self.OUTCOME_STATUS.get(outcome)
        if target is None:
            return
        async with unit_of_work(db):
            purchase = await lock_post_purchase(db, payment.payable_id)
            if purchase.status == target.value:
                return
            if purchase.status == PostPurchaseStatus.REFUNDED.value:
                logger.warning("Refunded post purchase not reopened", post_purchase_id=purchase.id, outcome=outcome.value)
                return
            purchase.status = target.value
            if purchase.payment_id is None:
                purchase.payment_id = payment.id
        logger.info("Post purchase settled", post_purchase_id=purchase.id, status=target.value, payment_id=payment.id)


class PayableRegistry:
    def __init__(self):
        self._handlers: Dict[str, PayableHandler] = {}

    def register(self, handler: PayableHandler) -> "PayableRegistry":
        self._handlers[handler.kind.value] = handler
        return self

    def handler_for(self, kind: str) -> Optional[PayableHandler]:
        return self._handlers.get(kind)

    async def lookup(self, db: AsyncSession, kind: str, payable_id: int) -> Optional[Any]:
        handler = self.handler_for(kind)
        if handler is None:
            return None
        return await handler.lookup(db, payable_id)

    async def settle(self, db: AsyncSession, payment: Payment, outcome: WebhookEventType) -> None:
        handler = self.handler_for(payment.payable_kind)
        if handler is None:
            logger.warning("No payable handler registered", payable_kind=payment.payable_kind, payment_id=payment.id)
            return
        await handler.settle(db, payment, outcome)


def build_payable_registry(gateways: PaymentGatewayManager, events: Optional[EventSink] = None) -> PayableRegistry:
    registry = PayableRegistry()
    registry.register(SubscriptionChargePayable(lambda db: SubscriptionService(db, gateways, events)))
    registry.register(PostPurchasePayable())
    for kind in (PayableKind.TIP, PayableKind.WISHLIST_PURCHASE, PayableKind.MESSAGE_UNLOCK):
        registry.register(LoggedPayable(kind))
    return registry
