from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta

from paycore.common.date_functions import as_utc, utc_now
from paycore.common.exception import InvalidPaymentState, OwnershipMismatch, RecordNotFoundException
from paycore.common.payment_enums import DomainEventName, PaymentSubscriptionStatus
from paycore.data.dbinit import unit_of_work
from paycore.data.subscription import create_plan, get_subscription, lock_subscription
from paycore.model.gateway import SubscriptionCreateData


def create_data(**overrides):
    values = dict(subscriber_id=10, creator_id=20, amount=500, currency="usd", interval="monthly")
    values.update(overrides)
    return SubscriptionCreateData(**values)


async def shift_period(db, subscription_id, ends_at, **values):
    """Move a subscription's period around as if time had passed."""
    async with unit_of_work(db):
        subscription = await lock_subscription(db, subscription_id)
        subscription.ends_at = ends_at
        for key, value in values.items():
            setattr(subscription, key, value)


async def test_create_monthly_subscription(subscription_service, events):
    before = utc_now()
    subscription = await subscription_service.create(create_data())

    assert subscription.status == PaymentSubscriptionStatus.ACTIVE.value
    assert subscription.provider == "fake"
    assert subscription.provider_subscription_id.startswith("sub_fake")
    assert subscription.currency == "USD"
    starts_at = as_utc(subscription.starts_at)
    assert starts_at >= before
    assert as_utc(subscription.ends_at) == starts_at + relativedelta(months=1)
    assert events.names() == ["SubscriptionStarted"]


async def test_create_with_trial_anchors_period_after_trial(subscription_service):
    subscription = await subscription_service.create(create_data(trial_days=7, interval="weekly"))

    trial_end = as_utc(subscription.trial_ends_at)
    assert trial_end - as_utc(subscription.starts_at) == timedelta(days=7)
    assert as_utc(subscription.ends_at) == trial_end + timedelta(weeks=1)


async def test_create_with_foreign_payment_method(subscription_service, method_service):
    method = await method_service.vault(99, "tok_someone_else")
    with pytest.raises(OwnershipMismatch):
        await subscription_service.create(create_data(payment_method_id=method.id))


async def test_renew_moves_ends_at_forward(subscription_service, events):
    subscription = await subscription_service.create(create_data())
    previous_end = as_utc(subscription.ends_at)

    renewed = await subscription_service.renew(subscription.id)

    assert as_utc(renewed.starts_at) == previous_end
    assert as_utc(renewed.ends_at) > previous_end
    assert events.count(DomainEventName.SUBSCRIPTION_RENEWED) == 1


async def test_renew_with_stale_start_still_moves_forward(subscription_service):
    subscription = await subscription_service.create(create_data())
    previous_end = as_utc(subscription.ends_at)

    renewed = await subscription_service.renew(subscription.id, period_start=utc_now() - timedelta(days=60))

    assert as_utc(renewed.ends_at) > previous_end


async def test_renew_lapsed_subscription_starts_now(subscription_service, db):
    subscription = await subscription_service.create(create_data(interval="daily"))
    await shift_period(db, subscription.id, utc_now() - timedelta(days=3),
                       status=PaymentSubscriptionStatus.PAST_DUE.value)

    before = utc_now()
    renewed = await subscription_service.renew(subscription.id)

    assert renewed.status == PaymentSubscriptionStatus.ACTIVE.value
    assert as_utc(renewed.starts_at) >= before
    assert as_utc(renewed.ends_at) == as_utc(renewed.starts_at) + timedelta(days=1)


async def test_mark_grace_clamps_to_period_end(subscription_service, events):
    subscription = await subscription_service.create(create_data())
    ends_at = as_utc(subscription.ends_at)

    graced = await subscription_service.mark_grace(subscription.id, ends_at - timedelta(days=5))

    assert graced.status == PaymentSubscriptionStatus.GRACE.value
    assert as_utc(graced.grace_ends_at) == ends_at
    assert events.count(DomainEventName.SUBSCRIPTION_ENTERED_GRACE) == 1


async def test_expire(subscription_service, events):
    subscription = await subscription_service.create(create_data())
    expired = await subscription_service.expire(subscription.id)

    assert expired.status == PaymentSubscriptionStatus.EXPIRED.value
    assert expired.auto_renews is False
    assert as_utc(expired.ends_at) <= utc_now()
    assert events.count(DomainEventName.SUBSCRIPTION_EXPIRED) == 1


async def test_cancel_at_period_end_keeps_access(subscription_service):
    subscription = await subscription_service.create(create_data())
    period_end = as_utc(subscription.ends_at)

    cancelled = await subscription_service.cancel(subscription.id, reason="too expensive")

    assert cancelled.status == PaymentSubscriptionStatus.ACTIVE.value
    assert cancelled.auto_renews is False
    assert cancelled.cancelled_at is not None
    assert cancelled.cancel_reason == "too expensive"
    assert as_utc(cancelled.ends_at) == period_end
    assert cancelled.metadata_json["cancel_immediate"] is False


async def test_cancel_immediately_ends_period(subscription_service, events):
    subscription = await subscription_service.create(create_data())
    cancelled = await subscription_service.cancel(subscription.id, immediate=True)

    assert cancelled.status == PaymentSubscriptionStatus.CANCELLED.value
    assert as_utc(cancelled.ends_at) <= utc_now()
    assert events.count(DomainEventName.SUBSCRIPTION_CANCELLED) == 1


async def test_resume_after_cancel(subscription_service):
    subscription = await subscription_service.create(create_data())
    await subscription_service.cancel(subscription.id)

    resumed = await subscription_service.resume(subscription.id)

    assert resumed.status == PaymentSubscriptionStatus.ACTIVE.value
    assert resumed.auto_renews is True
    assert resumed.cancelled_at is None


async def test_resume_expired_is_rejected(subscription_service):
    subscription = await subscription_service.create(create_data())
    await subscription_service.expire(subscription.id)

    with pytest.raises(InvalidPaymentState):
        await subscription_service.resume(subscription.id)


async def test_swap_to_plan(subscription_service, db, gateways):
    subscription = await subscription_service.create(create_data())
    async with unit_of_work(db):
        plan = await create_plan(db, creator_id=20, name="Gold", amount=1500, currency="USD", interval="yearly")

    swapped = await subscription_service.swap(subscription.id, amount=plan.amount, currency="usd",
                                              interval=plan.interval, plan_id=plan.id)

    assert swapped.amount == 1500
    assert swapped.interval == "yearly"
    assert swapped.plan_id == plan.id
    fake = gateways.driver("fake")
    assert fake.subscriptions[subscription.provider_subscription_id]["amount"] == 1500


async def test_swap_to_missing_plan(subscription_service):
    subscription = await subscription_service.create(create_data())
    with pytest.raises(RecordNotFoundException):
        await subscription_service.swap(subscription.id, amount=100, currency="USD", interval="monthly", plan_id=404)


async def test_local_subscription_skips_gateway(subscription_service, db, gateways, mocker):
    subscription = await subscription_service.create(create_data())
    async with unit_of_work(db):
        locked = await lock_subscription(db, subscription.id)
        locked.provider_subscription_id = None
    cancel = mocker.spy(gateways.driver("fake"), "cancel_subscription")

    await subscription_service.cancel(subscription.id)

    cancel.assert_not_called()


async def test_sweep_expires_and_moves_to_grace(subscription_service, db):
    now = utc_now()
    lapsed = await subscription_service.create(create_data(subscriber_id=1))
    await shift_period(db, lapsed.id, now - timedelta(hours=1), auto_renews=False)

    overdue = await subscription_service.create(create_data(subscriber_id=2))
    await shift_period(db, overdue.id, now - timedelta(hours=1), status=PaymentSubscriptionStatus.PAST_DUE.value)

    grace_over = await subscription_service.create(create_data(subscriber_id=3))
    await shift_period(db, grace_over.id, now - timedelta(days=5), status=PaymentSubscriptionStatus.GRACE.value,
                       grace_ends_at=now - timedelta(days=1))

    healthy = await subscription_service.create(create_data(subscriber_id=4))

    counts = await subscription_service.sweep(now)

    assert counts == {"expired": 2, "grace": 1}
    assert (await get_subscription(db, lapsed.id)).status == PaymentSubscriptionStatus.EXPIRED.value
    assert (await get_subscription(db, grace_over.id)).status == PaymentSubscriptionStatus.EXPIRED.value
    graced = await get_subscription(db, overdue.id)
    assert graced.status == PaymentSubscriptionStatus.GRACE.value
    assert as_utc(graced.grace_ends_at) > now
    assert (await get_subscription(db, healthy.id)).status == PaymentSubscriptionStatus.ACTIVE.value


async def test_record_successful_payment_is_idempotent(subscription_service, mocker):
    subscription = await subscription_service.create(create_data())
    payment = mocker.Mock(id=77, captured_at=utc_now())

    first = await subscription_service.record_successful_payment(subscription.id, payment)
    ends_at = as_utc(first.ends_at)
    second = await subscription_service.record_successful_payment(subscription.id, payment)

    assert as_utc(second.ends_at) == ends_at
    assert second.metadata_json["last_renewal_payment_id"] == 77


async def test_record_failed_payment(subscription_service, events, mocker):
    subscription = await subscription_service.create(create_data())
    failed = await subscription_service.record_failed_payment(subscription.id, mocker.Mock(id=5), reason="insufficient_funds")

    assert failed.status == PaymentSubscriptionStatus.PAST_DUE.value
    assert failed.metadata_json["failure_reason"] == "insufficient_funds"
    assert events.count(DomainEventName.SUBSCRIPTION_PAYMENT_FAILED) == 1


async def close_subscription(subscription_service, status):
    subscription = await subscription_service.create(create_data())
    if status == PaymentSubscriptionStatus.EXPIRED:
        return await subscription_service.expire(subscription.id)
    return await subscription_service.cancel(subscription.id, immediate=True)


@pytest.mark.parametrize("status", [PaymentSubscriptionStatus.EXPIRED, PaymentSubscriptionStatus.CANCELLED])
async def test_late_renewal_charge_does_not_reopen_closed_subscription(subscription_service, events, mocker, status):
    closed = await close_subscription(subscription_service, status)
    ends_at = as_utc(closed.ends_at)
    events.clear()

    result = await subscription_service.record_successful_payment(
        closed.id, mocker.Mock(id=88, captured_at=utc_now()),
    )

    assert result.status == status.value
    assert as_utc(result.ends_at) == ends_at
    assert "last_renewal_payment_id" not in result.metadata_json
    assert events.count(DomainEventName.SUBSCRIPTION_RENEWED) == 0


@pytest.mark.parametrize("status", [PaymentSubscriptionStatus.EXPIRED, PaymentSubscriptionStatus.CANCELLED])
async def test_failed_charge_does_not_reopen_closed_subscription(subscription_service, events, mocker, status):
    closed = await close_subscription(subscription_service, status)
    events.clear()

    result = await subscription_service.record_failed_payment(closed.id, mocker.Mock(id=6), reason="card_declined")

    assert result.status == status.value
    assert "failure_reason" not in result.metadata_json
    assert events.count(DomainEventName.SUBSCRIPTION_PAYMENT_FAILED) == 0
