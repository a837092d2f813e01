from fastapi import APIRouter, Depends, status

from paycore.api.deps import get_current_user_id, get_subscription_service
from paycore.common.exception import OwnershipMismatch
from paycore.config.config import settings
from paycore.data.subscription import PaymentSubscription
from paycore.model.gateway import SubscriptionCreateData
from paycore.model.subscription import (
    SubscriptionCancelRequest,
    SubscriptionCreateRequest,
    SubscriptionOut,
    SubscriptionSwapRequest,
)
from paycore.service.subscription import SubscriptionService

router = APIRouter()


async def _subscriber_owned(service: SubscriptionService, subscription_id: int, user_id: int) -> PaymentSubscription:
    subscription = await service.load(subscription_id)
    if subscription.subscriber_id != user_id:
        raise OwnershipMismatch(user_id, "subscription")
    return subscription


@router.post("", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    payload: SubscriptionCreateRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    user_id: int = Depends(get_current_user_id),
):
    """
    Subscribe the caller to a creator. Terms not given in the request are
    taken from the plan when `plan_id` is set.
    """
    plan = await service.load_plan(payload.plan_id) if payload.plan_id is not None else None

    def pick(field: str, default):
        value = getattr(payload, field)
        if value is not None:
            return value
        if plan is not None:
            return getattr(plan, field)
        return default

    data = SubscriptionCreateData(
        subscriber_id=user_id,
        creator_id=payload.creator_id,
        plan_id=payload.plan_id,
        amount=pick("amount", 0),
        currency=pick("currency", settings.PAYMENTS_DEFAULT_CURRENCY),
        interval=pick("interval", "monthly"),
        interval_count=pick("interval_count", 1),
        trial_days=pick("trial_days", 0),
        auto_renews=payload.auto_renews,
        payment_method_id=payload.payment_method_id,
        metadata=payload.metadata,
    )
    subscription = await service.create(data, payload.gateway)
    return SubscriptionOut.model_validate(subscription)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    subscription_id: int,
    payload: SubscriptionCancelRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    user_id: int = Depends(get_current_user_id),
):
    await _subscriber_owned(service, subscription_id, user_id)
    subscription = await service.cancel(subscription_id, immediate=payload.immediate, reason=payload.reason)
    return SubscriptionOut.model_validate(subscription)


@router.post("/{subscription_id}/resume", response_model=SubscriptionOut)
async def resume_subscription(
    subscription_id: int,
    service: SubscriptionService = Depends(get_subscription_service),
    user_id: int = Depends(get_current_user_id),
):
    await _subscriber_owned(service, subscription_id, user_id)
    subscription = await service.resume(subscription_id)
    return SubscriptionOut.model_validate(subscription)


@router.post("/{subscription_id}/swap", response_model=SubscriptionOut)
async def swap_subscription(
    subscription_id: int,
    payload: SubscriptionSwapRequest,
    service: SubscriptionService = Depends(get_subscription_service),
    user_id: int = Depends(get_current_user_id),
):
    current = await _subscriber_owned(service, subscription_id, user_id)
    plan = await service.load_plan(payload.plan_id) if payload.plan_id is not None else None
    source = plan or current

    subscription = await service.swap(
        subscription_id,
        amount=payload.amount if payload.amount is not None else source.amount,
        currency=payload.currency or source.currency,
        interval=payload.interval or source.interval,
        interval_count=payload.interval_count or source.interval_count,
        plan_id=payload.plan_id,
        metadata=payload.metadata,
    )
    return SubscriptionOut.model_validate(subscription)
