import asyncio

import pytest
import stripe

from paycore.common.exception import (
    CapabilityUnsupported,
    GatewayNotConfigured,
    GatewayRejected,
    GatewayUnavailable,
)
from paycore.gateway.contracts import PaymentGateway
from paycore.gateway.fake import FakeGateway
from paycore.gateway.manager import PaymentGatewayManager
from paycore.gateway.stripe_gateway import StripeGateway
from paycore.model.gateway import PaymentCaptureData, PaymentIntentData, PaymentRefundData


class PaymentsOnlyGateway(PaymentGateway):
    name = "payments_only"

    async def create_intent(self, data):
        raise NotImplementedError

    async def confirm_intent(self, provider_intent_id, context):
        raise NotImplementedError

    async def cancel_intent(self, provider_intent_id, context):
        raise NotImplementedError

    async def capture_payment(self, data):
        raise NotImplementedError

    async def refund_payment(self, data):
        raise NotImplementedError


def test_default_driver_is_resolved_and_cached(gateways):
    driver = gateways.driver()
    assert isinstance(driver, FakeGateway)
    assert gateways.driver("fake") is driver
    assert gateways.get_default_driver() == "fake"


def test_unknown_gateway_is_not_configured(gateways):
    with pytest.raises(GatewayNotConfigured):
        gateways.driver("paypal")


def test_unsupported_driver_name():
    manager = PaymentGatewayManager(config={"acme": {"driver": "acme"}}, default="acme")
    with pytest.raises(GatewayNotConfigured):
        manager.driver()


def test_extend_registers_custom_driver(gateways):
    gateways.extend("payments_only", PaymentsOnlyGateway)

    assert isinstance(gateways.driver("payments_only"), PaymentsOnlyGateway)
    with pytest.raises(CapabilityUnsupported):
        gateways.subscription_driver("payments_only")


def test_extend_subscription_driver_only(gateways):
    custom = FakeGateway({"subscription_status": "trialing"})
    gateways.extend("fake.subscription", lambda options: custom)

    assert gateways.subscription_driver("fake") is custom
    assert gateways.driver("fake") is not custom


def test_configured_stripe_driver():
    manager = PaymentGatewayManager(
        config={"stripe": {"driver": "stripe", "options": {"api_key": "sk_test_123"}}},
        default="stripe",
    )
    driver = manager.driver()
    assert isinstance(driver, StripeGateway)
    assert driver.api_key == "sk_test_123"


async def test_timeout_becomes_gateway_unavailable():
    manager = PaymentGatewayManager(config={}, default="fake", timeout_seconds=0.01)

    with pytest.raises(GatewayUnavailable) as exc_info:
        await manager.call("fake", "create_intent", asyncio.sleep(1))

    assert exc_info.value.gateway == "fake"


async def test_fake_gateway_rejects_unknown_intent(gateways):
    with pytest.raises(GatewayRejected):
        await gateways.driver().confirm_intent("pi_missing", {})


async def test_fake_gateway_refund_requires_known_payment(gateways):
    with pytest.raises(GatewayRejected):
        await gateways.driver().refund_payment(PaymentRefundData(provider_payment_id="ch_missing", amount=100, currency="usd"))


async def test_stripe_card_error_is_rejected(mocker):
    error = stripe.CardError("Your card was declined.", "number", "card_declined",
                             json_body={"error": {"code": "card_declined"}})
    mocker.patch("stripe.PaymentIntent.create", side_effect=error)
    driver = StripeGateway({"api_key": "sk_test_123"})

    with pytest.raises(GatewayRejected) as exc_info:
        await driver.create_intent(PaymentIntentData(
            payable_kind="tip", payable_id=1, payer_id=1, amount=500, currency="usd",
        ))

    assert exc_info.value.gateway == "stripe"
    assert exc_info.value.raw == {"error": {"code": "card_declined"}}


async def test_stripe_connection_error_is_unavailable(mocker):
    mocker.patch("stripe.Refund.create", side_effect=stripe.APIConnectionError("network down"))
    driver = StripeGateway({"api_key": "sk_test_123"})

    with pytest.raises(GatewayUnavailable):
        await driver.refund_payment(PaymentRefundData(provider_payment_id="ch_1", amount=100, currency="usd"))


async def test_stripe_capture_uses_latest_charge(mocker):
    capture = mocker.patch("stripe.PaymentIntent.capture", return_value={
        "id": "pi_1",
        "latest_charge": "ch_1",
        "amount": 1000,
        "amount_received": 1000,
        "currency": "usd",
        "status": "succeeded",
    })
    driver = StripeGateway({"api_key": "sk_test_123"})

    response = await driver.capture_payment(PaymentCaptureData(provider_intent_id="pi_1"))

    assert response.provider_payment_id == "ch_1"
    assert response.currency == "USD"
    assert response.status == "succeeded"
    capture.assert_called_once_with(api_key="sk_test_123", intent="pi_1")
