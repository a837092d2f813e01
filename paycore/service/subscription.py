from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.date_functions import as_utc, calculate_next_renewal, utc_now
from paycore.common.events import DomainEvent, EventSink, LoggingEventSink, event
from paycore.common.exception import (
    InvalidPaymentState,
    OwnershipMismatch,
    RecordNotFoundException,
)
from paycore.common.payment_enums import (
    DomainEventName,
    PaymentMethodStatus,
    PaymentSubscriptionStatus,
)
from paycore.common.utility_functions import merge_metadata
from paycore.config.config import settings
from paycore.data.dbinit import add_row, end_read_transaction, unit_of_work
from paycore.data.payment import Payment
from paycore.data.payment_method import get_payment_method
from paycore.data.subscription import (
    PaymentSubscription,
    SubscriptionPlan,
    get_plan,
    get_subscription,
    list_subscription_ids_due,
    lock_subscription,
)
from paycore.gateway.manager import PaymentGatewayManager
from paycore.model.gateway import (
    SubscriptionCancelData,
    SubscriptionCreateData,
    SubscriptionResumeData,
    SubscriptionSwapData,
)
from paycore.service.status_mapping import map_subscription_status

logger = structlog.get_logger()

# Renewal charge results never reopen these
CLOSED_SUBSCRIPTION_STATUSES = {
    PaymentSubscriptionStatus.EXPIRED.value,
    PaymentSubscriptionStatus.CANCELLED.value,
}


def subscription_event(name: DomainEventName, subscription: PaymentSubscription, **extra: Any) -> DomainEvent:
    return event(
        name,
        "subscription",
        subscription.id,
        status=subscription.status,
        subscriber_id=subscription.subscriber_id,
        creator_id=subscription.creator_id,
        ends_at=as_utc(subscription.ends_at).isoformat() if subscription.ends_at else None,
        **extra,
    )


class SubscriptionService:
    def __init__(
        self,
        db: AsyncSession,
        gateways: PaymentGatewayManager,
        events: Optional[EventSink] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.events = events or LoggingEventSink()

    async def load(self, subscription_id: int) -> PaymentSubscription:
        subscription = await get_subscription(self.db, subscription_id)
        if subscription is None:
            raise RecordNotFoundException("Subscription not found", context={"subscription_id": subscription_id})
        return subscription

    async def load_plan(self, plan_id: int) -> SubscriptionPlan:
        plan = await get_plan(self.db, plan_id)
        if plan is None or not plan.is_active:
            raise RecordNotFoundException("Subscription plan not found", context={"plan_id": plan_id})
        return plan

    # ------------------------------------------------------------------
    # Gateway-backed transitions
    # ------------------------------------------------------------------

    async def create(
        self,
        data: SubscriptionCreateData,
        gateway: Optional[str] = None,
    ) -> PaymentSubscription:
        if data.payment_method_id is not None and data.payment_method_token is None:
            method = await get_payment_method(self.db, data.payment_method_id)
            if method is None or method.status != PaymentMethodStatus.ACTIVE.value:
                raise RecordNotFoundException(
                    "Payment method not found",
                    context={"payment_method_id": data.payment_method_id},
                )
            if method.user_id != data.subscriber_id:
                raise OwnershipMismatch(data.subscriber_id, "payment_method")
            data = data.model_copy(update={"payment_method_token": method.provider_token_id})

        name = gateway or self.gateways.get_default_driver()
        driver = self.gateways.subscription_driver(name)

        await end_read_transaction(self.db)
        response = await self.gateways.call(name, "create_subscription", driver.create_subscription(data))

        now = utc_now()
        trial_ends_at = now + timedelta(days=data.trial_days) if data.trial_days else None
        anchor = trial_ends_at or now
        events: List[DomainEvent] = []

        async with unit_of_work(self.db):
            subscription = PaymentSubscription(
                subscriber_id=data.subscriber_id,
                creator_id=data.creator_id,
                plan_id=data.plan_id,
                payment_method_id=data.payment_method_id,
                status=map_subscription_status(response.status).value,
                amount=data.amount,
                currency=data.currency,
                interval=data.interval,
                interval_count=data.interval_count,
                auto_renews=data.auto_renews,
                provider=response.provider,
                provider_subscription_id=response.provider_subscription_id,
                trial_ends_at=trial_ends_at,
                starts_at=now,
                ends_at=calculate_next_renewal(anchor, data.interval, data.interval_count),
                metadata_json=merge_metadata(data.metadata, {"provider_payload": response.raw}),
            )
            await add_row(self.db, subscription, "subscription")
            events.append(subscription_event(DomainEventName.SUBSCRIPTION_STARTED, subscription))

        logger.info(
            "Subscription started",
            subscription_id=subscription.id,
            status=subscription.status,
            gateway=name,
        )
        await self.events.emit(events)
        return subscription

    async def cancel(
        self,
        subscription_id: int,
        immediate: bool = False,
        reason: Optional[str] = None,
        gateway: Optional[str] = None,
    ) -> PaymentSubscription:
        subscription = await self.load(subscription_id)
        await self._call_gateway(
            subscription,
            gateway,
            "cancel_subscription",
            lambda driver, provider_id: driver.cancel_subscription(SubscriptionCancelData(
                provider_subscription_id=provider_id,
                immediate=immediate,
                reason=reason,
            )),
        )

        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            now = utc_now()
            if immediate:
                subscription.status = PaymentSubscriptionStatus.CANCELLED.value
                self._end_now(subscription, now)
            subscription.auto_renews = False
            subscription.cancelled_at = now
            subscription.cancel_reason = reason
            subscription.metadata_json = merge_metadata(subscription.metadata_json, {
                "cancel_reason": reason,
                "cancel_immediate": immediate,
            })
            events.append(subscription_event(DomainEventName.SUBSCRIPTION_CANCELLED, subscription, immediate=immediate))

        await self.events.emit(events)
        return subscription

    async def resume(self, subscription_id: int, gateway: Optional[str] = None) -> PaymentSubscription:
        subscription = await self.load(subscription_id)
        if subscription.status == PaymentSubscriptionStatus.EXPIRED.value:
            raise InvalidPaymentState("Expired subscriptions cannot be resumed", subscription_id=subscription_id)

        await self._call_gateway(
            subscription,
            gateway,
            "resume_subscription",
            lambda driver, provider_id: driver.resume_subscription(
                SubscriptionResumeData(provider_subscription_id=provider_id)
            ),
        )

        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            subscription.status = PaymentSubscriptionStatus.ACTIVE.value
            subscription.auto_renews = True
            subscription.grace_ends_at = None
            subscription.cancelled_at = None
            subscription.cancel_reason = None
            events.append(subscription_event(DomainEventName.SUBSCRIPTION_RENEWED, subscription, resumed=True))

        await self.events.emit(events)
        return subscription

    async def swap(
        self,
        subscription_id: int,
        amount: int,
        currency: str,
        interval: str,
        interval_count: int = 1,
        plan_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        gateway: Optional[str] = None,
    ) -> PaymentSubscription:
        subscription = await self.load(subscription_id)
        if plan_id is not None:
            await self.load_plan(plan_id)

        await self._call_gateway(
            subscription,
            gateway,
            "swap_subscription",
            lambda driver, provider_id: driver.swap_subscription(SubscriptionSwapData(
                provider_subscription_id=provider_id,
                plan_id=plan_id,
                amount=amount,
                currency=currency,
                interval=interval,
                interval_count=interval_count,
                metadata=metadata or {},
            )),
        )

        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            subscription.amount = amount
            subscription.currency = currency.upper()
            subscription.interval = interval
            subscription.interval_count = interval_count
            if plan_id is not None:
                subscription.plan_id = plan_id
            subscription.metadata_json = merge_metadata(subscription.metadata_json, metadata)
            events.append(subscription_event(DomainEventName.SUBSCRIPTION_RENEWED, subscription, swapped=True))

        await self.events.emit(events)
        return subscription

    async def _call_gateway(self, subscription: PaymentSubscription, gateway: Optional[str], operation: str, invoke):
        """Provider-side call for subscriptions that live at a provider; local-only ones skip it."""
        provider_id = subscription.provider_subscription_id
        name = gateway or subscription.provider or self.gateways.get_default_driver()
        if not provider_id:
            logger.info("Subscription has no provider id, skipping gateway", subscription_id=subscription.id, operation=operation)
            return None
        driver = self.gateways.subscription_driver(name)
        await end_read_transaction(self.db)
        return await self.gateways.call(name, operation, invoke(driver, provider_id))

    # ------------------------------------------------------------------
    # Local transitions
    # ------------------------------------------------------------------

    async def renew(
        self,
        subscription_id: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
        skip_closed: bool = False,
    ) -> PaymentSubscription:
        """
        Replace the current period. Without an explicit start the new period
        begins at the later of now and the current period end, so ends_at
        always moves forward. With skip_closed, an expired or cancelled
        subscription is left as it is.
        """
        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            if skip_closed and subscription.status in CLOSED_SUBSCRIPTION_STATUSES:
                logger.warning("Renewal for closed subscription ignored", subscription_id=subscription_id,
                               status=subscription.status)
                return subscription
            now = utc_now()
            current_end = as_utc(subscription.ends_at)
            if period_start is not None:
                start = as_utc(period_start)
            elif current_end is not None and current_end > now:
                start = current_end
            else:
                start = now
            end = as_utc(period_end) if period_end else calculate_next_renewal(
                start, subscription.interval, subscription.interval_count
            )
            if current_end is not None and end <= current_end:
                # ends_at only moves forward; a stale anchor renews from the current period end
                logger.info("Renewal anchor behind current period", subscription_id=subscription_id)
                start = current_end
                end = calculate_next_renewal(start, subscription.interval, subscription.interval_count)

            subscription.status = PaymentSubscriptionStatus.ACTIVE.value
            subscription.starts_at = start
            subscription.ends_at = end
            subscription.grace_ends_at = None
            if extra_metadata:
                subscription.metadata_json = merge_metadata(subscription.metadata_json, extra_metadata)
            events.append(subscription_event(DomainEventName.SUBSCRIPTION_RENEWED, subscription))

        await self.events.emit(events)
        return subscription

    async def mark_grace(self, subscription_id: int, grace_ends_at: datetime) -> PaymentSubscription:
        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            grace_ends_at = as_utc(grace_ends_at)
            ends_at = as_utc(subscription.ends_at)
            if ends_at is not None and grace_ends_at < ends_at:
                logger.warning(
                    "Grace boundary before period end, clamping",
                    subscription_id=subscription_id,
                    requested=grace_ends_at.isoformat(),
                )
                grace_ends_at = ends_at
            subscription.status = PaymentSubscriptionStatus.GRACE.value
            subscription.grace_ends_at = grace_ends_at
            events.append(subscription_event(
                DomainEventName.SUBSCRIPTION_ENTERED_GRACE,
                subscription,
                grace_ends_at=grace_ends_at.isoformat(),
            ))

        await self.events.emit(events)
        return subscription

    async def expire(self, subscription_id: int) -> PaymentSubscription:
        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            subscription.status = PaymentSubscriptionStatus.EXPIRED.value
            subscription.auto_renews = False
            self._end_now(subscription, utc_now())
            events.append(subscription_event(DomainEventName.SUBSCRIPTION_EXPIRED, subscription))

        await self.events.emit(events)
        return subscription

    @staticmethod
    def _end_now(subscription: PaymentSubscription, now: datetime) -> None:
        subscription.ends_at = now
        grace = as_utc(subscription.grace_ends_at)
        if grace is not None and grace < now:
            subscription.grace_ends_at = None

    # ------------------------------------------------------------------
    # Payment bridges
    # ------------------------------------------------------------------

    async def record_successful_payment(self, subscription_id: int, payment: Payment) -> PaymentSubscription:
        subscription = await self.load(subscription_id)
        if (subscription.metadata_json or {}).get("last_renewal_payment_id") == payment.id:
            logger.info("Subscription already renewed for payment", subscription_id=subscription_id, payment_id=payment.id)
            return subscription
        return await self.renew(
            subscription_id,
            period_start=payment.captured_at or utc_now(),
            extra_metadata={"last_renewal_payment_id": payment.id},
            skip_closed=True,
        )

    async def record_failed_payment(
        self,
        subscription_id: int,
        payment: Optional[Payment] = None,
        reason: Optional[str] = None,
    ) -> PaymentSubscription:
        events: List[DomainEvent] = []
        async with unit_of_work(self.db):
            subscription = await lock_subscription(self.db, subscription_id)
            if subscription.status in CLOSED_SUBSCRIPTION_STATUSES:
                logger.warning("Failed charge for closed subscription ignored", subscription_id=subscription_id,
                               status=subscription.status)
                return subscription
            subscription.status = PaymentSubscriptionStatus.PAST_DUE.value
            subscription.metadata_json = merge_metadata(subscription.metadata_json, {
                "last_failed_payment_id": payment.id if payment else None,
                "failure_reason": reason,
            })
            events.append(subscription_event(
                DomainEventName.SUBSCRIPTION_PAYMENT_FAILED,
                subscription,
                payment_id=payment.id if payment else None,
                reason=reason,
            ))

        await self.events.emit(events)
        return subscription

    # ------------------------------------------------------------------
    # Scheduled sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Entry point for the external scheduler: expire lapsed subscriptions
        and move overdue ones into grace. Each row is re-checked under lock.
        """
        now = as_utc(now) or utc_now()
        due = await list_subscription_ids_due(self.db, now=now)
        counts = {"expired": 0, "grace": 0}

        for subscription_id in due["expire"]:
            subscription = await self.load(subscription_id)
            if self._should_expire(subscription, now):
                await self.expire(subscription_id)
                counts["expired"] += 1

        grace_until = now + timedelta(days=settings.SUBSCRIPTION_GRACE_DAYS)
        for subscription_id in due["grace"]:
            subscription = await self.load(subscription_id)
            if subscription.status == PaymentSubscriptionStatus.PAST_DUE.value:
                await self.mark_grace(subscription_id, grace_until)
                counts["grace"] += 1

        logger.info("Subscription sweep finished", **counts)
        return counts

    @staticmethod
    def _should_expire(subscription: PaymentSubscription, now: datetime) -> bool:
        if subscription.status == PaymentSubscriptionStatus.GRACE.value:
            grace = as_utc(subscription.grace_ends_at)
            return grace is not None and grace <= now
        ends_at = as_utc(subscription.ends_at)
        return (
            not subscription.auto_renews
            and ends_at is not None
            and ends_at <= now
            and subscription.status in (
                PaymentSubscriptionStatus.ACTIVE.value,
                PaymentSubscriptionStatus.TRIALING.value,
                PaymentSubscriptionStatus.PAST_DUE.value,
            )
        )
