"""
Gateway webhook processing.

Each stored delivery goes through: signature check, dedup claim, event
mapping, dispatch against the located payment, payable settlement. A
delivery never raises out of `process`; failures are recorded on the row.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.date_functions import utc_now
from paycore.common.events import DomainEvent, EventSink, LoggingEventSink
from paycore.common.exception import (
    IntegrityException,
    InvalidWebhookSignature,
    RecordNotFoundException,
    WebhookPayloadError,
)
from paycore.common.payment_enums import (
    DomainEventName,
    PaymentIntentStatus,
    PaymentRefundStatus,
    PaymentStatus,
    PaymentWebhookStatus,
    WebhookEventType,
)
from paycore.common.utility_functions import merge_metadata, signatures_match
from paycore.config.config import settings
from paycore.data.dbinit import add_row, unit_of_work
from paycore.data.payment import (
    Payment,
    PaymentRefund,
    get_intent_for_payment,
    get_payment_by_provider_id,
    get_payment_by_provider_intent_id,
    get_refund_by_provider_id,
    lock_intent,
    refunded_total,
    with_locked_payment,
)
from paycore.data.webhook import (
    PaymentWebhook,
    finish_webhook,
    get_webhook,
    get_webhook_by_dedup_key,
    list_failed_webhooks,
)
from paycore.gateway.manager import PaymentGatewayManager
from paycore.model.webhook import WebhookReference
from paycore.service.payable import PayableRegistry, build_payable_registry
from paycore.service.payment import intent_event, payment_event
from paycore.service.status_mapping import map_webhook_event

logger = structlog.get_logger()

INVALID_SIGNATURE = "Invalid signature"
DUPLICATE_IN_PROGRESS = "duplicate delivery in progress"

# Statuses a late success or failure notification must not overwrite
SETTLED_PAYMENT_STATUSES = {PaymentStatus.REFUNDED.value, PaymentStatus.SETTLED.value}


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    INVALID_SIGNATURE = "invalid_signature"
    FAILED = "failed"


def dedup_key_for(payload: Dict[str, Any], event_type: WebhookEventType) -> Optional[str]:
    event_id = payload.get("eventId") or payload.get("id")
    if event_id:
        return f"event:{event_id}"
    transaction_id = payload.get("transactionId")
    if transaction_id:
        return f"{event_type.value}:txn:{transaction_id}"
    return None


def _text(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def payload_reference(payload: Dict[str, Any], event_type: WebhookEventType) -> WebhookReference:
    """Flat notification bodies: transactionId, refundId, amount at the top level."""
    if event_type == WebhookEventType.PAYMENT_REFUNDED:
        transaction_id = payload.get("transactionId") or payload.get("paymentId")
    else:
        transaction_id = payload.get("transactionId") or payload.get("id")
    amount = payload.get("amount")
    return WebhookReference(
        transaction_id=_text(transaction_id),
        refund_id=_text(payload.get("refundId") or payload.get("id")),
        amount=int(amount) if amount is not None else None,
        currency=payload.get("currency"),
        failure_reason=payload.get("failureReason") or payload.get("error"),
    )


def stripe_reference(payload: Dict[str, Any], event_type: WebhookEventType) -> WebhookReference:
    """
    Stripe events wrap the charge, payment intent or refund in data.object;
    the top-level id is the event id.
    """
    obj = (payload.get("data") or {}).get("object") or {}
    kind = obj.get("object") or (payload.get("type") or "").rsplit(".", 1)[0]

    if kind == "payment_intent":
        transaction_id, intent_id = obj.get("latest_charge"), obj.get("id")
    elif kind == "refund":
        transaction_id, intent_id = obj.get("charge"), obj.get("payment_intent")
    else:
        transaction_id, intent_id = obj.get("id"), obj.get("payment_intent")

    refund_id, amount, fully_refunded = None, None, None
    if kind == "refund":
        refund_id, amount = obj.get("id"), obj.get("amount")
    elif event_type == WebhookEventType.PAYMENT_REFUNDED:
        refunds = (obj.get("refunds") or {}).get("data") or []
        if refunds:
            refund_id, amount = refunds[0].get("id"), refunds[0].get("amount")
        fully_refunded = obj.get("refunded")

    error = obj.get("last_payment_error") or {}
    return WebhookReference(
        transaction_id=_text(transaction_id),
        intent_id=_text(intent_id),
        refund_id=_text(refund_id),
        amount=amount,
        currency=obj.get("currency"),
        failure_reason=obj.get("failure_message") or error.get("message") or error.get("code"),
        fully_refunded=fully_refunded,
    )


REFERENCE_READERS: Dict[str, Callable[[Dict[str, Any], WebhookEventType], WebhookReference]] = {
    "stripe": stripe_reference,
}


def driver_for_provider(provider: str) -> str:
    return settings.gateway_config().get(provider, {}).get("driver", provider)


class WebhookProcessor:
    def __init__(
        self,
        db: AsyncSession,
        provider: str,
        events: Optional[EventSink] = None,
        payables: Optional[PayableRegistry] = None,
        secret: Optional[str] = None,
        verify_signature: Optional[bool] = None,
    ):
        self.db = db
        self.provider = provider
        self.events = events or LoggingEventSink()
        self.payables = payables
        self.secret = secret if secret is not None else settings.WEBHOOK_SECRETS.get(provider, "")
        self.verify_signature = settings.WEBHOOK_VERIFY_SIGNATURE if verify_signature is None else verify_signature
        self.driver = driver_for_provider(provider)

    def verify(self, webhook: PaymentWebhook) -> None:
        if not self.verify_signature or not self.secret:
            logger.warning("Webhook signature verification skipped", provider=self.provider)
            return
        if self.driver == "stripe":
            try:
                stripe.Webhook.construct_event(
                    payload=webhook.payload,
                    sig_header=webhook.signature or "",
                    secret=self.secret,
                )
            except (ValueError, stripe.SignatureVerificationError) as exc:
                raise InvalidWebhookSignature(self.provider, INVALID_SIGNATURE) from exc
            return
        if not signatures_match(webhook.payload, webhook.signature, self.secret):
            raise InvalidWebhookSignature(self.provider, INVALID_SIGNATURE)

    def reference(self, payload: Dict[str, Any], event_type: WebhookEventType) -> WebhookReference:
        return REFERENCE_READERS.get(self.driver, payload_reference)(payload, event_type)

    async def _load(self, webhook_id: int) -> PaymentWebhook:
        webhook = await get_webhook(self.db, webhook_id)
        if webhook is None:
            raise RecordNotFoundException("Webhook not found", context={"webhook_id": webhook_id})
        return webhook

    async def _finish(self, webhook_id: int, status: PaymentWebhookStatus, error: Optional[str] = None,
                      event_type: Optional[WebhookEventType] = None) -> PaymentWebhook:
        async with unit_of_work(self.db):
            webhook = await self._load(webhook_id)
            if event_type is not None:
                webhook.event_type = event_type.value
            finish_webhook(webhook, status=status, processed_at=utc_now(), error=error)
        return webhook

    async def process(self, webhook_id: int) -> WebhookOutcome:
        correlation_id = str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id, webhook_id=webhook_id):
            webhook = await self._load(webhook_id)
            logger.info("Processing webhook", provider=self.provider, webhook_event=webhook.event)

            if webhook.status == PaymentWebhookStatus.PROCESSED.value:
                logger.info("Webhook already processed")
                return WebhookOutcome.PROCESSED

            try:
                self.verify(webhook)
            except InvalidWebhookSignature as exc:
                logger.warning("Invalid webhook signature")
                await self._finish(webhook_id, PaymentWebhookStatus.FAILED, error=exc.reason)
                return WebhookOutcome.INVALID_SIGNATURE

            payload = dict(webhook.payload_json or {})
            event_type = map_webhook_event(webhook.event or payload.get("type") or payload.get("event"))

            key = dedup_key_for(payload, event_type)
            if key is None:
                async with unit_of_work(self.db):
                    webhook.event_type = event_type.value
            else:
                outcome = await self._claim(webhook_id, key, event_type)
                if outcome is not None:
                    return outcome

            try:
                await self._dispatch(event_type, payload)
            except Exception as exc:  # noqa: BLE001
                await self.db.rollback()
                logger.error("Error processing webhook", event_type=event_type.value, error=str(exc))
                await self._finish(webhook_id, PaymentWebhookStatus.FAILED, error=str(exc) or type(exc).__name__)
                return WebhookOutcome.FAILED

            await self._finish(webhook_id, PaymentWebhookStatus.PROCESSED)
            logger.info("Webhook processed", event_type=event_type.value)
            return WebhookOutcome.PROCESSED

    # ------------------------------------------------------------------
    # Dedup claim
    # ------------------------------------------------------------------

    async def _claim(self, webhook_id: int, key: str, event_type: WebhookEventType) -> Optional[WebhookOutcome]:
        """
        Commit the dedup key on this row before any side effect. Returns None
        when this delivery owns the key, otherwise the outcome it ended with.
        """
        for _ in range(3):
            try:
                async with unit_of_work(self.db):
                    webhook = await self._load(webhook_id)
                    webhook.event_type = event_type.value
                    if webhook.dedup_key == key:
                        return None
                    webhook.dedup_key = key
                    await add_row(self.db, webhook, "payment webhook")
                return None
            except IntegrityException:
                logger.info("Dedup key already claimed", dedup_key=key)

            holder = await get_webhook_by_dedup_key(self.db, provider=self.provider, dedup_key=key)
            if holder is None:
                continue

            if holder.status == PaymentWebhookStatus.PROCESSED.value:
                logger.info("Duplicate webhook delivery", holder_id=holder.id)
                await self._finish(webhook_id, PaymentWebhookStatus.PROCESSED, event_type=event_type)
                return WebhookOutcome.DUPLICATE

            if holder.status == PaymentWebhookStatus.RECEIVED.value:
                logger.warning("Duplicate webhook delivery still in flight", holder_id=holder.id)
                await self._finish(webhook_id, PaymentWebhookStatus.FAILED, error=DUPLICATE_IN_PROGRESS,
                                   event_type=event_type)
                return WebhookOutcome.IN_FLIGHT

            # A failed holder hands its key over to this delivery
            try:
                async with unit_of_work(self.db):
                    holder.dedup_key = None
                    await add_row(self.db, holder, "payment webhook")
                    webhook = await self._load(webhook_id)
                    webhook.event_type = event_type.value
                    webhook.dedup_key = key
                    await add_row(self.db, webhook, "payment webhook")
                logger.info("Dedup key taken over from failed delivery", holder_id=holder.id)
                return None
            except IntegrityException:
                logger.info("Dedup key takeover lost a race", dedup_key=key)

        await self._finish(webhook_id, PaymentWebhookStatus.FAILED, error=DUPLICATE_IN_PROGRESS, event_type=event_type)
        return WebhookOutcome.IN_FLIGHT

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, event_type: WebhookEventType, payload: Dict[str, Any]) -> None:
        if event_type == WebhookEventType.PAYMENT_TOKEN_CREATED:
            logger.info("Payment token created event received", payload=payload)
            return
        if event_type == WebhookEventType.UNKNOWN:
            logger.warning("Unknown webhook event type", payload=payload)
            return

        ref = self.reference(payload, event_type)
        if not ref.transaction_id and not ref.intent_id:
            raise WebhookPayloadError("Transaction ID not found in webhook payload")

        payment = await self._locate(ref)
        if payment is None:
            logger.warning("Payment not found for webhook", transaction_id=ref.transaction_id,
                           intent_id=ref.intent_id, event_type=event_type.value)
            return

        events: List[DomainEvent] = []
        handlers = {
            WebhookEventType.PAYMENT_SUCCEEDED: self._payment_succeeded,
            WebhookEventType.PAYMENT_FAILED: self._payment_failed,
            WebhookEventType.PAYMENT_REFUNDED: self._payment_refunded,
        }
        apply = handlers[event_type]
        payment = await with_locked_payment(self.db, payment.id, lambda locked: apply(locked, payload, ref, events))

        await self.events.emit(events)
        if event_type == WebhookEventType.PAYMENT_REFUNDED and payment.status != PaymentStatus.REFUNDED.value:
            logger.info("Partial refund recorded", payment_id=payment.id)
            return
        if self.payables is not None:
            await self.payables.settle(self.db, payment, event_type)

    async def _locate(self, ref: WebhookReference) -> Optional[Payment]:
        if ref.transaction_id:
            payment = await get_payment_by_provider_id(self.db, self.provider, ref.transaction_id)
            if payment is not None:
                return payment
        if ref.intent_id:
            payment = await get_payment_by_provider_id(self.db, self.provider, ref.intent_id)
            if payment is not None:
                return payment
            return await get_payment_by_provider_intent_id(self.db, self.provider, ref.intent_id)
        return None

    def _stamp(self, locked: Payment, payload: Dict[str, Any], **extra: Any) -> None:
        locked.metadata_json = merge_metadata(locked.metadata_json, {
            "webhook_processed": utc_now().isoformat(),
            "webhook_payload": payload,
        }, extra)

    async def _sync_intent(self, locked: Payment, status: PaymentIntentStatus, events: List[DomainEvent],
                           name: Optional[DomainEventName] = None) -> None:
        intent = await get_intent_for_payment(self.db, locked.id)
        if intent is None:
            return
        intent = await lock_intent(self.db, intent.id)
        intent.metadata_json = merge_metadata(intent.metadata_json, {"webhook_processed": utc_now().isoformat()})
        if intent.status != status.value:
            intent.status = status.value
            if name is not None:
                events.append(intent_event(name, intent))

    async def _payment_succeeded(self, locked: Payment, payload: Dict[str, Any], ref: WebhookReference,
                                 events: List[DomainEvent]) -> Payment:
        if locked.status in SETTLED_PAYMENT_STATUSES:
            logger.warning("Success notification for settled payment ignored", payment_id=locked.id, status=locked.status)
            self._stamp(locked, payload)
            return locked

        now = utc_now()
        locked.provider_payment_id = locked.provider_payment_id or ref.transaction_id
        if locked.status != PaymentStatus.CAPTURED.value:
            locked.status = PaymentStatus.CAPTURED.value
            locked.succeeded_at = locked.succeeded_at or now
            locked.captured_at = locked.captured_at or now
            events.append(payment_event(DomainEventName.PAYMENT_CAPTURED, locked))
        self._stamp(locked, payload)
        await self._sync_intent(locked, PaymentIntentStatus.SUCCEEDED, events, DomainEventName.PAYMENT_INTENT_SUCCEEDED)
        return locked

    async def _payment_failed(self, locked: Payment, payload: Dict[str, Any], ref: WebhookReference,
                              events: List[DomainEvent]) -> Payment:
        if locked.status in SETTLED_PAYMENT_STATUSES:
            logger.warning("Failure notification for settled payment ignored", payment_id=locked.id, status=locked.status)
            self._stamp(locked, payload)
            return locked

        reason = ref.failure_reason or "Unknown"
        if locked.status != PaymentStatus.FAILED.value:
            locked.status = PaymentStatus.FAILED.value
            events.append(payment_event(DomainEventName.PAYMENT_FAILED, locked, reason=reason))
        self._stamp(locked, payload, failure_reason=reason)
        await self._sync_intent(locked, PaymentIntentStatus.FAILED, events)
        return locked

    async def _payment_refunded(self, locked: Payment, payload: Dict[str, Any], ref: WebhookReference,
                                events: List[DomainEvent]) -> Payment:
        now = utc_now()
        changed = False
        refund_id = ref.refund_id
        refund: Optional[PaymentRefund] = None

        if refund_id and await get_refund_by_provider_id(self.db, locked.provider, refund_id) is None:
            amount = ref.amount if ref.amount is not None else locked.amount - await refunded_total(self.db, locked.id)
            refund = PaymentRefund(
                payment_id=locked.id,
                amount=amount,
                currency=(ref.currency or locked.currency).upper(),
                status=PaymentRefundStatus.SUCCEEDED.value,
                provider=locked.provider,
                provider_refund_id=refund_id,
                metadata_json=dict(payload),
                processed_at=now,
            )
            await add_row(self.db, refund, "payment refund")
            changed = True

        if ref.fully_refunded is not None:
            fully_refunded = ref.fully_refunded
        elif refund_id is None:
            # No refund id: the notification speaks for the whole payment
            fully_refunded = True
        else:
            fully_refunded = await refunded_total(self.db, locked.id) >= locked.amount

        if fully_refunded and locked.status != PaymentStatus.REFUNDED.value:
            locked.status = PaymentStatus.REFUNDED.value
            locked.refunded_at = now
            changed = True
        self._stamp(locked, payload, refund_id=refund_id)

        if changed:
            events.append(payment_event(
                DomainEventName.PAYMENT_REFUNDED,
                locked,
                refund_id=refund.id if refund else None,
                refund_amount=refund.amount if refund else None,
            ))
        return locked


def processor_for(
    db: AsyncSession,
    provider: str,
    gateways: PaymentGatewayManager,
    events: Optional[EventSink] = None,
) -> WebhookProcessor:
    return WebhookProcessor(db, provider, events=events, payables=build_payable_registry(gateways, events))


async def reprocess_failed(
    db: AsyncSession,
    gateways: PaymentGatewayManager,
    events: Optional[EventSink] = None,
    provider: Optional[str] = None,
    limit: int = 50,
) -> Dict[str, int]:
    """Retry failed deliveries. Rows rejected for their signature are left alone."""
    rows = await list_failed_webhooks(db, provider=provider, limit=limit, exclude_errors=[INVALID_SIGNATURE])
    targets = [(row.id, row.provider) for row in rows]
    counts: Dict[str, int] = {}
    for webhook_id, row_provider in targets:
        outcome = await processor_for(db, row_provider, gateways, events).process(webhook_id)
        counts[outcome.value] = counts.get(outcome.value, 0) + 1
    logger.info("Webhook reprocess finished", provider=provider, attempted=len(targets), **counts)
    return counts
