import pytest
from sqlalchemy import func, select

from paycore.common.exception import (
    GatewayRejected,
    InvalidPaymentState,
    OwnershipMismatch,
    RecordNotFoundException,
)
from paycore.common.payment_enums import (
    DomainEventName,
    PayableKind,
    PaymentIntentStatus,
    PaymentStatus,
)
from paycore.config.config import settings
from paycore.data.payment import Payment, PaymentRefund, get_intent, get_payment, list_refunds_for_payment
from paycore.model.gateway import PaymentIntentData
from paycore.service.payment import platform_fee


def intent_data(**overrides):
    values = dict(
        payable_kind=PayableKind.TIP,
        payable_id=1,
        payer_id=10,
        payee_id=20,
        amount=1000,
        currency="usd",
    )
    values.update(overrides)
    return PaymentIntentData(**values)


async def test_create_intent_persists_payment_and_intent(payment_service, db, events):
    intent = await payment_service.create_intent(intent_data(fee_amount=100))

    assert intent.status == PaymentIntentStatus.REQUIRES_CONFIRMATION.value
    assert intent.provider == "fake"
    assert intent.provider_intent_id.startswith("pi_fake")
    assert intent.client_secret

    payment = await get_payment(db, intent.payment_id)
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.currency == "USD"
    assert payment.fee_amount == 100
    assert payment.net_amount == 900
    assert events.names() == ["PaymentInitiated", "PaymentIntentCreated"]


async def test_capture_computes_net_amount(captured_payment, events):
    _, payment = await captured_payment(amount=1000, fee_amount=100)

    assert payment.status == PaymentStatus.CAPTURED.value
    assert payment.amount == 1000
    assert payment.fee_amount == 100
    assert payment.net_amount == 900
    assert payment.provider_payment_id.startswith("ch_fake")
    assert payment.captured_at is not None


async def test_capture_with_paid_status_emits_events_once(fake_options, captured_payment, db, events):
    fake_options["capture_status"] = "paid"
    intent, payment = await captured_payment()

    assert payment.status == PaymentStatus.CAPTURED.value
    assert events.count(DomainEventName.PAYMENT_CAPTURED) == 1
    assert events.count(DomainEventName.PAYMENT_INTENT_SUCCEEDED) == 1
    assert (await get_intent(db, intent.id)).status == PaymentIntentStatus.SUCCEEDED.value


async def test_failed_capture_marks_intent_failed(fake_options, captured_payment, db, events):
    fake_options["capture_status"] = "failed"
    intent, payment = await captured_payment()

    assert payment.status == PaymentStatus.FAILED.value
    assert (await get_intent(db, intent.id)).status == PaymentIntentStatus.FAILED.value
    assert events.count(DomainEventName.PAYMENT_FAILED) == 1
    assert events.count(DomainEventName.PAYMENT_CAPTURED) == 0


async def test_capture_twice_is_rejected(captured_payment, payment_service):
    intent, _ = await captured_payment()
    with pytest.raises(InvalidPaymentState):
        await payment_service.capture(intent.id)


async def test_capture_with_foreign_payment_method(payment_service, method_service):
    method = await method_service.vault(99, "tok_other_4242")
    intent = await payment_service.create_intent(intent_data())

    with pytest.raises(OwnershipMismatch):
        await payment_service.capture(intent.id, payment_method_id=method.id)


async def test_capture_with_own_payment_method(payment_service, method_service):
    method = await method_service.vault(10, "tok_mine_1111")
    intent = await payment_service.create_intent(intent_data())

    payment = await payment_service.capture(intent.id, payment_method_id=method.id)
    assert payment.payment_method_id == method.id


async def test_confirm_intent(payment_service, db):
    intent = await payment_service.create_intent(intent_data())
    confirmed = await payment_service.confirm_intent(intent.id)

    assert confirmed.status == PaymentIntentStatus.PROCESSING.value
    assert confirmed.confirmed_at is not None


async def test_cancel_intent_cancels_pending_payment(payment_service, db, events):
    intent = await payment_service.create_intent(intent_data())
    events.clear()

    cancelled = await payment_service.cancel_intent(intent.id, {"reason": "abandoned"})

    assert cancelled.status == PaymentIntentStatus.CANCELLED.value
    payment = await get_payment(db, intent.payment_id)
    assert payment.status == PaymentStatus.CANCELLED.value
    assert payment.cancelled_at is not None
    assert events.names() == ["PaymentCancelled", "PaymentIntentCancelled"]


async def test_cancel_after_capture_is_rejected(captured_payment, payment_service):
    intent, _ = await captured_payment()
    with pytest.raises(InvalidPaymentState):
        await payment_service.cancel_intent(intent.id)


async def test_unknown_intent(payment_service):
    with pytest.raises(RecordNotFoundException):
        await payment_service.capture(12345)


async def test_partial_then_full_refund(captured_payment, payment_service, db, events):
    _, payment = await captured_payment(amount=1000)

    first = await payment_service.refund(payment.id, amount=400, reason="requested_by_customer")
    assert first.amount == 400
    assert first.status == "succeeded"
    after_first = await get_payment(db, payment.id)
    assert after_first.status == PaymentStatus.CAPTURED.value
    assert after_first.refunded_at is None

    rest = await payment_service.refund(payment.id)
    assert rest.amount == 600

    refunded = await get_payment(db, payment.id)
    assert refunded.status == PaymentStatus.REFUNDED.value
    assert refunded.refunded_at is not None
    assert len(await list_refunds_for_payment(db, payment.id)) == 2
    assert events.count(DomainEventName.PAYMENT_REFUNDED) == 2


async def test_refund_above_balance_is_rejected(captured_payment, payment_service):
    _, payment = await captured_payment(amount=1000)
    await payment_service.refund(payment.id, amount=800)

    with pytest.raises(InvalidPaymentState):
        await payment_service.refund(payment.id, amount=300)


async def test_refund_of_pending_payment_is_rejected(payment_service):
    intent = await payment_service.create_intent(intent_data())
    with pytest.raises(InvalidPaymentState):
        await payment_service.refund(intent.payment_id)


async def test_refund_then_refund_webhook_records_one_row(captured_payment, payment_service, processor,
                                                         store_webhook, db):
    _, payment = await captured_payment()
    refund = await payment_service.refund(payment.id)

    webhook_id = await store_webhook({
        "type": "transaction.refunded",
        "eventId": "evt_refund_1",
        "transactionId": payment.provider_payment_id,
        "refundId": refund.provider_refund_id,
        "amount": refund.amount,
    })
    await processor.process(webhook_id)

    count = await db.scalar(select(func.count()).select_from(PaymentRefund).where(PaymentRefund.payment_id == payment.id))
    assert count == 1


async def test_gateway_rejection_leaves_no_rows(payment_service, gateways, db, mocker):
    driver = gateways.driver("fake")
    mocker.patch.object(driver, "create_intent", side_effect=GatewayRejected("fake", "declined", raw={"code": "card_declined"}))

    with pytest.raises(GatewayRejected) as exc_info:
        await payment_service.create_intent(intent_data())

    assert exc_info.value.raw == {"code": "card_declined"}
    assert await db.scalar(select(func.count()).select_from(Payment)) == 0


def test_platform_fee_never_exceeds_amount(mocker):
    mocker.patch.object(settings, "PAYMENTS_PLATFORM_PERCENT", 10.0)
    mocker.patch.object(settings, "PAYMENTS_PLATFORM_FIXED", 30)

    assert platform_fee(1000) == 130
    assert platform_fee(20) == 20
