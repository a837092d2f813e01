from datetime import timedelta

from paycore.common.date_functions import utc_now
from paycore.common.payment_enums import PostPurchaseStatus
from paycore.data.dbinit import unit_of_work
from paycore.data.post_purchase import create_post_purchase, lock_post_purchase
from paycore.data.subscription import lock_subscription
from paycore.model.gateway import SubscriptionCreateData
from paycore.service.entitlement import EntitlementResolver, PostRef

POST = PostRef(id=5, author_id=20)


async def subscribe(subscription_service, subscriber_id=10, creator_id=20):
    return await subscription_service.create(SubscriptionCreateData(
        subscriber_id=subscriber_id, creator_id=creator_id, amount=500, currency="USD",
    ))


async def purchase(db, status=PostPurchaseStatus.PENDING, expires_at=None, user_id=10):
    async with unit_of_work(db):
        row = await create_post_purchase(db, post_id=POST.id, user_id=user_id, amount=300, currency="USD",
                                         expires_at=expires_at)
        row.status = status.value
    return row


async def test_author_always_sees_own_post(db):
    assert await EntitlementResolver(db).has_unlocked_post(20, POST) is True


async def test_no_subscription_no_purchase(db):
    resolver = EntitlementResolver(db)
    assert await resolver.has_active_subscription(10, 20) is False
    assert await resolver.has_unlocked_post(10, POST) is False


async def test_active_subscription_unlocks_creator_posts(db, subscription_service):
    subscription = await subscribe(subscription_service)
    resolver = EntitlementResolver(db)

    assert (await resolver.active_subscription(10, 20)).id == subscription.id
    assert await resolver.has_unlocked_post(10, POST) is True
    assert await resolver.has_active_subscription(10, 99) is False


async def test_grace_subscription_still_entitled(db, subscription_service):
    subscription = await subscribe(subscription_service)
    await subscription_service.mark_grace(subscription.id, utc_now() + timedelta(days=40))

    assert await EntitlementResolver(db).has_active_subscription(10, 20) is True


async def test_lapsed_or_expired_subscription_is_not_entitled(db, subscription_service):
    lapsed = await subscribe(subscription_service)
    async with unit_of_work(db):
        row = await lock_subscription(db, lapsed.id)
        row.ends_at = utc_now() - timedelta(minutes=1)

    expired = await subscribe(subscription_service, creator_id=30)
    await subscription_service.expire(expired.id)

    resolver = EntitlementResolver(db)
    assert await resolver.has_active_subscription(10, 20) is False
    assert await resolver.has_active_subscription(10, 30) is False


async def test_past_due_subscription_is_not_entitled(db, subscription_service):
    subscription = await subscribe(subscription_service)
    await subscription_service.record_failed_payment(subscription.id, reason="card_declined")

    assert await EntitlementResolver(db).has_active_subscription(10, 20) is False


async def test_entitlement_at_a_given_instant(db, subscription_service):
    subscription = await subscribe(subscription_service)
    resolver = EntitlementResolver(db)

    assert await resolver.has_active_subscription(10, 20, now=subscription.ends_at - timedelta(seconds=1)) is True
    assert await resolver.has_active_subscription(10, 20, now=subscription.ends_at + timedelta(seconds=1)) is False


async def test_pending_and_completed_purchases_unlock(db):
    resolver = EntitlementResolver(db)

    await purchase(db, PostPurchaseStatus.PENDING)
    assert await resolver.has_unlocked_post(10, POST) is True

    await purchase(db, PostPurchaseStatus.COMPLETED, user_id=11)
    assert await resolver.has_unlocked_post(11, POST) is True


async def test_failed_refunded_or_expired_purchases_do_not_unlock(db):
    resolver = EntitlementResolver(db)

    await purchase(db, PostPurchaseStatus.FAILED, user_id=10)
    await purchase(db, PostPurchaseStatus.REFUNDED, user_id=11)
    await purchase(db, PostPurchaseStatus.COMPLETED, user_id=12, expires_at=utc_now() - timedelta(hours=1))

    for user_id in (10, 11, 12):
        assert await resolver.has_unlocked_post(user_id, POST) is False


async def test_purchase_of_another_post_does_not_unlock(db):
    row = await purchase(db, PostPurchaseStatus.COMPLETED)
    async with unit_of_work(db):
        locked = await lock_post_purchase(db, row.id)
        locked.post_id = 6

    assert await EntitlementResolver(db).has_unlocked_post(10, POST) is False
