import json

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from paycore.common.events import InMemoryEventSink
from paycore.common.payment_enums import PayableKind
from paycore.common.utility_functions import compute_signature
from paycore.data.dbinit import Base, unit_of_work
from paycore.data.webhook import create_webhook
from paycore.gateway.manager import PaymentGatewayManager
from paycore.model.gateway import PaymentIntentData
from paycore.service.payable import build_payable_registry
from paycore.service.payment import PaymentService
from paycore.service.payment_method import PaymentMethodService
from paycore.service.post_purchase import PostPurchaseService
from paycore.service.subscription import SubscriptionService
from paycore.service.webhook import WebhookProcessor

WEBHOOK_SECRET = "whsec_test"

FAKE_OPTIONS = {
    "intent_status": "requires_confirmation",
    "capture_status": "captured",
    "refund_status": "succeeded",
    "subscription_status": "active",
}


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def fake_options():
    # Tests tweak this dict before the driver is first resolved
    return dict(FAKE_OPTIONS)


@pytest.fixture
def gateways(fake_options):
    return PaymentGatewayManager(
        config={"fake": {"driver": "fake", "options": fake_options}},
        default="fake",
        timeout_seconds=5,
    )


@pytest.fixture
def payables(gateways, events):
    return build_payable_registry(gateways, events)


@pytest.fixture
def payment_service(db, gateways, events, payables):
    return PaymentService(db, gateways, events, payables=payables)


@pytest.fixture
def subscription_service(db, gateways, events):
    return SubscriptionService(db, gateways, events)


@pytest.fixture
def method_service(db, gateways):
    return PaymentMethodService(db, gateways)


@pytest.fixture
def post_purchase_service(db, payment_service):
    return PostPurchaseService(db, payment_service)


@pytest.fixture
def processor(db, events, payables):
    return WebhookProcessor(db, "fake", events=events, payables=payables, secret=WEBHOOK_SECRET,
                            verify_signature=True)


@pytest.fixture
def store_webhook(db):
    """Persist a delivery the way the webhook endpoint does; signs it unless told otherwise."""

    async def _store(payload, provider="fake", signature=None, sign=True, event=None):
        raw = json.dumps(payload)
        if signature is None and sign:
            signature = compute_signature(raw, WEBHOOK_SECRET)
        async with unit_of_work(db):
            webhook = await create_webhook(
                db,
                provider=provider,
                payload=raw,
                payload_json=payload,
                event=event or payload.get("type") or payload.get("event"),
                signature=signature,
                headers={},
            )
        return webhook.id

    return _store


@pytest.fixture
def captured_payment(payment_service):
    """Create and capture a payment; returns (intent, payment)."""

    async def _capture(amount=1000, fee_amount=100, payable_kind=PayableKind.TIP, payable_id=1,
                       payer_id=10, payee_id=20):
        intent = await payment_service.create_intent(PaymentIntentData(
            payable_kind=payable_kind,
            payable_id=payable_id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            currency="usd",
            fee_amount=fee_amount,
        ))
        payment = await payment_service.capture(intent.id)
        return intent, payment

    return _capture
