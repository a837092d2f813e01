from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.date_functions import utc_now
from paycore.common.events import DomainEvent, EventSink, LoggingEventSink, event
from paycore.common.exception import (
    InvalidPaymentState,
    OwnershipMismatch,
    RecordNotFoundException,
)
from paycore.common.payment_enums import (
    DomainEventName,
    PaymentIntentStatus,
    PaymentMethodStatus,
    PaymentStatus,
    WebhookEventType,
)
from paycore.common.utility_functions import merge_metadata
from paycore.config.config import settings
from paycore.data.dbinit import add_row, end_read_transaction, unit_of_work
from paycore.data.payment import (
    Payment,
    PaymentIntent,
    PaymentRefund,
    get_intent,
    get_payment,
    get_refund_by_provider_id,
    lock_intent,
    lock_payment,
    refunded_total,
    with_locked_payment,
)
from paycore.data.payment_method import get_payment_method
from paycore.gateway.manager import PaymentGatewayManager
from paycore.model.gateway import PaymentCaptureData, PaymentIntentData, PaymentRefundData
from paycore.service.status_mapping import (
    map_intent_status,
    map_payment_status,
    map_refund_status,
)

logger = structlog.get_logger()

# A payment in one of these states has money that can still be cancelled
CANCELLABLE_PAYMENT_STATUSES = {PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value}
REFUNDABLE_PAYMENT_STATUSES = {
    PaymentStatus.CAPTURED.value,
    PaymentStatus.SETTLED.value,
    PaymentStatus.REFUNDED.value,
}


def platform_fee(amount: int) -> int:
    """Configured platform cut for an amount in minor units, never above the amount."""
    fee = int(round(amount * settings.PAYMENTS_PLATFORM_PERCENT / 100.0)) + settings.PAYMENTS_PLATFORM_FIXED
    return max(0, min(fee, amount))


def resolve_fee(data: PaymentIntentData) -> int:
    if data.fee_amount is not None:
        return data.fee_amount
    if data.metadata.get("fee_amount") is not None:
        return min(int(data.metadata["fee_amount"]), data.amount)
    return platform_fee(data.amount)


def payment_event(name: DomainEventName, payment: Payment, **extra: Any) -> DomainEvent:
    return event(
        name,
        "payment",
        payment.id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        payable_kind=payment.payable_kind,
        payable_id=payment.payable_id,
        payer_id=payment.payer_id,
        payee_id=payment.payee_id,
        **extra,
    )


def intent_event(name: DomainEventName, intent: PaymentIntent, **extra: Any) -> DomainEvent:
    return event(
        name,
        "payment_intent",
        intent.id,
        status=intent.status,
        payment_id=intent.payment_id,
        provider=intent.provider,
        **extra,
    )


class PaymentService:
    """
    Intents, capture and refunds.

    Every operation follows the same shape: load what the gateway needs, end
    the read transaction, call the gateway, then apply the result in one unit
    of work with the payment row locked. Events go out after the commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateways: PaymentGatewayManager,
        events: Optional[EventSink] = None,
        payables=None,
    ):
        self.db = db
        self.gateways = gateways
        self.events = events or LoggingEventSink()
        self.payables = payables

    async def _load_intent(self, intent_id: int) -> PaymentIntent:
        intent = await get_intent(self.db, intent_id)
        if intent is None:
            raise RecordNotFoundException("Payment intent not found", context={"intent_id": intent_id})
        return intent

    async def _load_payment(self, payment_id: int) -> Payment:
        payment = await get_payment(self.db, payment_id)
        if payment is None:
            raise RecordNotFoundException("Payment not found", context={"payment_id": payment_id})
        return payment

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def create_intent(self, data: PaymentIntentData, gateway: Optional[str] = None) -> PaymentIntent:
        name = gateway or self.gateways.get_default_driver()
        driver = self.gateways.driver(name)

        await end_read_transaction(self.db)
        response = await self.gateways.call(name, "create_intent", driver.create_intent(data))

        fee_amount = resolve_fee(data)
        events: List[DomainEvent] = []

        async with unit_of_work(self.db):
            payment = Payment(
                payable_kind=data.payable_kind.value,
                payable_id=data.payable_id,
                payer_id=data.payer_id,
                payee_id=data.payee_id,
                type=data.type.value,
                status=PaymentStatus.PENDING.value,
                amount=data.amount,
                fee_amount=fee_amount,
                net_amount=data.amount - fee_amount,
                currency=data.currency,
                method=data.method,
                provider=response.provider,
                payment_method_id=data.payment_method_id,
                metadata_json=merge_metadata(data.metadata, {"intent_reference": response.provider_intent_id}),
            )
            await add_row(self.db, payment, "payment")
            events.append(payment_event(DomainEventName.PAYMENT_INITIATED, payment))

            intent = PaymentIntent(
                payment_id=payment.id,
                payable_kind=data.payable_kind.value,
                payable_id=data.payable_id,
                payer_id=data.payer_id,
                payee_id=data.payee_id,
                amount=data.amount,
                currency=data.currency,
                type=data.type.value,
                method=data.method,
                status=map_intent_status(response.status).value,
                provider=response.provider,
                provider_intent_id=response.provider_intent_id,
                client_secret=response.client_secret,
                metadata_json=dict(data.metadata),
            )
            await add_row(self.db, intent, "payment intent")
            events.append(intent_event(DomainEventName.PAYMENT_INTENT_CREATED, intent))

        logger.info(
            "Payment intent created",
            payment_id=payment.id,
            intent_id=intent.id,
            gateway=name,
            amount=data.amount,
            fee_amount=fee_amount,
        )
        await self.events.emit(events)
        return intent

    async def confirm_intent(
        self,
        intent_id: int,
        context: Optional[Dict[str, Any]] = None,
        gateway: Optional[str] = None,
    ) -> PaymentIntent:
        context = context or {}
        intent = await self._load_intent(intent_id)
        name = gateway or intent.provider or self.gateways.get_default_driver()
        driver = self.gateways.driver(name)
        provider_intent_id = intent.provider_intent_id

        await end_read_transaction(self.db)
        response = await self.gateways.call(name, "confirm_intent", driver.confirm_intent(provider_intent_id, context))

        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            intent = await lock_intent(self.db, intent_id)
            status = map_intent_status(response.status)
            intent.status = status.value
            intent.metadata_json = merge_metadata(intent.metadata_json, {"confirmation": response.raw})
            intent.confirmed_at = utc_now()

            if status == PaymentIntentStatus.CANCELLED:
                events.append(intent_event(DomainEventName.PAYMENT_INTENT_CANCELLED, intent))
            elif status == PaymentIntentStatus.SUCCEEDED:
                events.append(intent_event(DomainEventName.PAYMENT_INTENT_SUCCEEDED, intent))

        await self.events.emit(events)
        return intent

    async def cancel_intent(
        self,
        intent_id: int,
        context: Optional[Dict[str, Any]] = None,
        gateway: Optional[str] = None,
    ) -> PaymentIntent:
        context = context or {}
        intent = await self._load_intent(intent_id)
        if intent.payment_id is not None:
            payment = await self._load_payment(intent.payment_id)
            if payment.status not in CANCELLABLE_PAYMENT_STATUSES:
                raise InvalidPaymentState(
                    f"Payment in status [{payment.status}] cannot be cancelled",
                    payment_id=payment.id,
                )

        name = gateway or intent.provider or self.gateways.get_default_driver()
        driver = self.gateways.driver(name)
        provider_intent_id = intent.provider_intent_id

        await end_read_transaction(self.db)
        response = await self.gateways.call(name, "cancel_intent", driver.cancel_intent(provider_intent_id, context))

        events: List[DomainEvent] = []
        now = utc_now()
        async with unit_of_work(self.db):
            intent = await lock_intent(self.db, intent_id)
            intent.status = map_intent_status(response.status).value
            intent.cancelled_at = now
            intent.metadata_json = merge_metadata(intent.metadata_json, {"cancellation": response.raw})

            if intent.payment_id is not None:
                payment = await lock_payment(self.db, intent.payment_id)
                if payment.status not in CANCELLABLE_PAYMENT_STATUSES:
                    # A capture committed between the pre-check and the lock
                    logger.error(
                        "Intent cancelled at gateway after local capture",
                        payment_id=payment.id,
                        payment_status=payment.status,
                    )
                    raise InvalidPaymentState(
                        f"Payment in status [{payment.status}] cannot be cancelled",
                        payment_id=payment.id,
                    )
                payment.status = PaymentStatus.CANCELLED.value
                payment.cancelled_at = now
                payment.metadata_json = merge_metadata(payment.metadata_json, {"cancellation": response.raw})
                events.append(payment_event(DomainEventName.PAYMENT_CANCELLED, payment))

            events.append(intent_event(DomainEventName.PAYMENT_INTENT_CANCELLED, intent))

        await self.events.emit(events)
        return intent

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture(
        self,
        intent_id: int,
        data: Optional[PaymentCaptureData] = None,
        gateway: Optional[str] = None,
        payment_method_id: Optional[int] = None,
    ) -> Payment:
        intent = await self._load_intent(intent_id)
        if intent.payment_id is None:
            raise InvalidPaymentState("Payment intent has no payment to capture", intent_id=intent_id)
        payment = await self._load_payment(intent.payment_id)
        if payment.status not in CANCELLABLE_PAYMENT_STATUSES:
            raise InvalidPaymentState(
                f"Payment in status [{payment.status}] cannot be captured",
                payment_id=payment.id,
            )

        data = data or PaymentCaptureData(provider_intent_id=intent.provider_intent_id)
        updates: Dict[str, Any] = {}
        if not data.currency:
            updates["currency"] = intent.currency
        if payment_method_id is not None:
            method = await get_payment_method(self.db, payment_method_id)
            if method is None or method.status != PaymentMethodStatus.ACTIVE.value:
                raise RecordNotFoundException(
                    "Payment method not found",
                    context={"payment_method_id": payment_method_id},
                )
            if method.user_id != payment.payer_id:
                raise OwnershipMismatch(payment.payer_id, "payment_method")
            updates["payment_method_id"] = payment_method_id
            updates["payment_method_token"] = method.provider_token_id
            updates["metadata"] = merge_metadata(data.metadata, {"payment_method_id": payment_method_id})
        if updates:
            data = data.model_copy(update=updates)

        name = gateway or intent.provider or self.gateways.get_default_driver()
        driver = self.gateways.driver(name)

        await end_read_transaction(self.db)
        response = await self.gateways.call(name, "capture_payment", driver.capture_payment(data))

        events: List[DomainEvent] = []

        async def apply(locked: Payment) -> Payment:
            if locked.status not in CANCELLABLE_PAYMENT_STATUSES:
                raise InvalidPaymentState(
                    f"Payment in status [{locked.status}] cannot be captured",
                    payment_id=locked.id,
                )
            now = utc_now()
            status = map_payment_status(response.status)
            locked.provider_payment_id = response.provider_payment_id
            locked.status = status.value
            locked.amount = response.amount
            locked.currency = (response.currency or locked.currency).upper()
            locked.fee_amount = min(locked.fee_amount or 0, response.amount)
            locked.net_amount = response.amount - locked.fee_amount
            if payment_method_id is not None:
                locked.payment_method_id = payment_method_id
            locked.metadata_json = merge_metadata(locked.metadata_json, {"capture": response.raw})

            locked_intent = await lock_intent(self.db, intent_id)
            locked_intent.metadata_json = merge_metadata(
                locked_intent.metadata_json, {"captured_with": response.provider_payment_id}
            )

            if status == PaymentStatus.FAILED:
                locked_intent.status = PaymentIntentStatus.FAILED.value
                events.append(payment_event(DomainEventName.PAYMENT_FAILED, locked))
            else:
                locked.captured_at = now
                locked.succeeded_at = now
                locked_intent.status = PaymentIntentStatus.SUCCEEDED.value
                events.append(payment_event(DomainEventName.PAYMENT_CAPTURED, locked))
                events.append(intent_event(DomainEventName.PAYMENT_INTENT_SUCCEEDED, locked_intent))
            return locked

        payment = await with_locked_payment(self.db, payment.id, apply)

        logger.info(
            "Payment captured",
            payment_id=payment.id,
            status=payment.status,
            provider_status=response.status,
            gateway=name,
        )
        await self.events.emit(events)
        await self._settle(payment)
        return payment

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(
        self,
        payment_id: int,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        gateway: Optional[str] = None,
    ) -> PaymentRefund:
        payment = await self._load_payment(payment_id)
        if payment.status not in REFUNDABLE_PAYMENT_STATUSES or not payment.provider_payment_id:
            raise InvalidPaymentState(
                f"Payment in status [{payment.status}] cannot be refunded",
                payment_id=payment_id,
            )

        remaining = payment.amount - await refunded_total(self.db, payment_id)
        amount = amount if amount is not None else remaining
        if amount <= 0 or amount > remaining:
            raise InvalidPaymentState(
                f"Refund amount {amount} exceeds refundable balance {remaining}",
                payment_id=payment_id,
            )

        data = PaymentRefundData(
            provider_payment_id=payment.provider_payment_id,
            amount=amount,
            currency=payment.currency,
            reason=reason,
            metadata=metadata or {},
        )
        name = gateway or payment.provider or self.gateways.get_default_driver()
        driver = self.gateways.driver(name)

        await end_read_transaction(self.db)
        response = await self.gateways.call(name, "refund_payment", driver.refund_payment(data))

        events: List[DomainEvent] = []

        async def apply(locked: Payment) -> PaymentRefund:
            now = utc_now()
            # A refund webhook may have recorded this refund already
            refund = await get_refund_by_provider_id(self.db, locked.provider, response.provider_refund_id)
            if refund is None:
                refund = PaymentRefund(
                    payment_id=locked.id,
                    amount=response.amount,
                    currency=locked.currency,
                    status=map_refund_status(response.status).value,
                    reason=reason,
                    provider=locked.provider,
                    provider_refund_id=response.provider_refund_id,
                    metadata_json=dict(response.raw),
                    processed_at=now,
                )
                await add_row(self.db, refund, "payment refund")
            else:
                refund.status = map_refund_status(response.status).value
                refund.reason = refund.reason or reason
                refund.metadata_json = merge_metadata(refund.metadata_json, response.raw)
                refund.processed_at = refund.processed_at or now

            await self.db.flush()
            # Partial refunds leave the payment captured
            if await refunded_total(self.db, locked.id) >= locked.amount:
                locked.status = PaymentStatus.REFUNDED.value
                locked.refunded_at = now
            locked.metadata_json = merge_metadata(locked.metadata_json, {"refund": response.raw})
            events.append(payment_event(
                DomainEventName.PAYMENT_REFUNDED,
                locked,
                refund_id=refund.id,
                refund_amount=refund.amount,
            ))
            return refund

        refund = await with_locked_payment(self.db, payment_id, apply)

        logger.info("Payment refunded", payment_id=payment_id, refund_id=refund.id, amount=refund.amount)
        await self.events.emit(events)
        payment = await self._load_payment(payment_id)
        if payment.status == PaymentStatus.REFUNDED.value:
            await self._settle(payment)
        return refund

    async def _settle(self, payment: Payment) -> None:
        if self.payables is None:
            return
        if payment.status in (PaymentStatus.CAPTURED.value, PaymentStatus.SETTLED.value):
            outcome = WebhookEventType.PAYMENT_SUCCEEDED
        elif payment.status == PaymentStatus.FAILED.value:
            outcome = WebhookEventType.PAYMENT_FAILED
        elif payment.status == PaymentStatus.REFUNDED.value:
            outcome = WebhookEventType.PAYMENT_REFUNDED
        else:
            return
        await self.payables.settle(self.db, payment, outcome)
