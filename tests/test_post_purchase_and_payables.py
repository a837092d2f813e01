import pytest

from paycore.common.events import InMemoryEventSink, event
from paycore.common.exception import GatewayRejected, InvalidPaymentState
from paycore.common.messaging import RabbitMQEventSink
from paycore.common.payment_enums import DomainEventName, PayableKind, PostPurchaseStatus, WebhookEventType
from paycore.data.post_purchase import get_post_purchase
from paycore.data.subscription import PaymentSubscription
from paycore.model.gateway import SubscriptionCreateData
from paycore.service.payable import LoggedPayable, PayableRegistry, PostPurchasePayable


async def test_start_post_purchase(post_purchase_service, db):
    purchase, intent = await post_purchase_service.start_post_purchase(
        buyer_id=10, post_id=5, author_id=20, amount=300, currency="eur",
    )

    assert purchase.status == PostPurchaseStatus.PENDING.value
    assert purchase.currency == "EUR"
    assert purchase.payment_id == intent.payment_id
    assert intent.payable_kind == PayableKind.POST_PURCHASE.value
    assert intent.payable_id == purchase.id
    assert intent.payee_id == 20


async def test_post_purchase_fails_when_gateway_refuses(post_purchase_service, gateways, db, mocker):
    mocker.patch.object(gateways.driver("fake"), "create_intent", side_effect=GatewayRejected("fake", "blocked"))

    with pytest.raises(GatewayRejected):
        await post_purchase_service.start_post_purchase(buyer_id=10, post_id=5, author_id=20, amount=300)

    purchase = await get_post_purchase(db, 1)
    assert purchase.status == PostPurchaseStatus.FAILED.value


async def test_author_cannot_buy_own_post(post_purchase_service):
    with pytest.raises(InvalidPaymentState):
        await post_purchase_service.start_post_purchase(buyer_id=20, post_id=5, author_id=20, amount=300)


async def test_capture_completes_purchase_and_refund_reverses_it(post_purchase_service, payment_service, db):
    purchase, intent = await post_purchase_service.start_post_purchase(buyer_id=10, post_id=5, author_id=20, amount=300)

    payment = await payment_service.capture(intent.id)
    assert (await get_post_purchase(db, purchase.id)).status == PostPurchaseStatus.COMPLETED.value

    await payment_service.refund(payment.id)
    assert (await get_post_purchase(db, purchase.id)).status == PostPurchaseStatus.REFUNDED.value



async def test_partial_refund_leaves_purchase_completed(post_purchase_service, payment_service, db):
    purchase, intent = await post_purchase_service.start_post_purchase(buyer_id=10, post_id=5, author_id=20, amount=300)
    payment = await payment_service.capture(intent.id)

    await payment_service.refund(payment.id, amount=100)
    assert (await get_post_purchase(db, purchase.id)).status == PostPurchaseStatus.COMPLETED.value

    await payment_service.refund(payment.id)
    assert (await get_post_purchase(db, purchase.id)).status == PostPurchaseStatus.REFUNDED.value

async def test_refunded_purchase_is_not_reopened(post_purchase_service, payment_service, db):
    purchase, intent = await post_purchase_service.start_post_purchase(buyer_id=10, post_id=5, author_id=20, amount=300)
    payment = await payment_service.capture(intent.id)
    await payment_service.refund(payment.id)

    await PostPurchasePayable().settle(db, payment, WebhookEventType.PAYMENT_SUCCEEDED)

    assert (await get_post_purchase(db, purchase.id)).status == PostPurchaseStatus.REFUNDED.value


async def test_registry_dispatches_by_kind(db, mocker):
    tip = LoggedPayable(PayableKind.TIP)
    settle = mocker.spy(tip, "settle")
    registry = PayableRegistry().register(tip)
    payment = mocker.Mock(id=1, payable_kind="tip", payable_id=3)

    await registry.settle(db, payment, WebhookEventType.PAYMENT_SUCCEEDED)
    await registry.settle(db, mocker.Mock(id=2, payable_kind="bounty", payable_id=4), WebhookEventType.PAYMENT_SUCCEEDED)

    settle.assert_called_once_with(db, payment, WebhookEventType.PAYMENT_SUCCEEDED)
    assert registry.handler_for("bounty") is None


async def test_registry_lookup(payables, subscription_service, db):
    subscription = await subscription_service.create(SubscriptionCreateData(
        subscriber_id=10, creator_id=20, amount=500, currency="USD",
    ))

    found = await payables.lookup(db, PayableKind.SUBSCRIPTION_CHARGE.value, subscription.id)
    assert isinstance(found, PaymentSubscription)
    assert await payables.lookup(db, PayableKind.TIP.value, 1) is None


async def test_event_sink_never_raises(mocker):
    sink = InMemoryEventSink()
    mocker.patch.object(sink, "publish", side_effect=RuntimeError("broker down"))

    await sink.emit([event(DomainEventName.PAYMENT_CAPTURED, "payment", 1)])


async def test_rabbitmq_sink_publishes_json(mocker):
    manager = mocker.Mock()
    manager.get_connection = mocker.AsyncMock(return_value="connection")
    publish = mocker.patch("paycore.common.messaging.publish_message", new_callable=mocker.AsyncMock)
    sink = RabbitMQEventSink(manager, queue_name="payment_events_test")

    await sink.emit([event(DomainEventName.SUBSCRIPTION_RENEWED, "subscription", 7, status="active")])

    message, connection, queue = publish.call_args.args
    assert message["name"] == "SubscriptionRenewed"
    assert message["aggregate_id"] == 7
    assert message["payload"] == {"status": "active"}
    assert connection == "connection"
    assert queue == "payment_events_test"
