from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from paycore.data.dbinit import Base, JSONType, unit_of_work
from paycore.common.exception import RecordNotFoundException
from paycore.common.payment_enums import (
    PaymentIntentStatus,
    PaymentRefundStatus,
    PaymentStatus,
    PaymentType,
)

T = TypeVar("T")


# ----------------------------------------------------------------------
# Payment – one money movement
# ----------------------------------------------------------------------


class Payment(Base):
    """
    One money movement between a payer and an (optional) payee.
    Never deleted; status only moves forward through the payment state machine.
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_provider_payment", "provider", "provider_payment_id"),
        Index("ix_payments_payer_status", "payer_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Polymorphic subject: (kind, id) resolved through the payable registry
    payable_kind = Column(String, nullable=False)
    payable_id = Column(Integer, nullable=False)

    payer_id = Column(Integer, nullable=False, index=True)
    payee_id = Column(Integer, nullable=True, index=True)

    type = Column(String, nullable=False, default=PaymentType.ONE_TIME.value)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)

    # Integer minor units
    amount = Column(Integer, nullable=False)
    fee_amount = Column(Integer, nullable=False, default=0)
    net_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)

    method = Column(String, nullable=True)
    provider = Column(String, nullable=True)
    provider_payment_id = Column(String, nullable=True)
    provider_customer_id = Column(String, nullable=True)
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=True)

    metadata_json = Column(JSONType, nullable=False, default=dict)

    authorized_at = Column(DateTime(timezone=True), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    intent = relationship("PaymentIntent", back_populates="payment", uselist=False)
    refunds = relationship("PaymentRefund", back_populates="payment", order_by="PaymentRefund.id")


class PaymentIntent(Base):
    """Pre-capture negotiation record, tied 1:1 to its Payment."""
    __tablename__ = "payment_intents"
    __table_args__ = (
        Index("ix_payment_intents_provider_intent", "provider", "provider_intent_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)

    payable_kind = Column(String, nullable=False)
    payable_id = Column(Integer, nullable=False)
    payer_id = Column(Integer, nullable=False)
    payee_id = Column(Integer, nullable=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(String, nullable=True)
    method = Column(String, nullable=True)
    status = Column(String, nullable=False, default=PaymentIntentStatus.PENDING.value)

    provider = Column(String, nullable=True)
    provider_intent_id = Column(String, nullable=True)
    # Opaque, handed to the client-side SDK
    client_secret = Column(String, nullable=True)

    metadata_json = Column(JSONType, nullable=False, default=dict)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="intent")


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"
    __table_args__ = (
        UniqueConstraint("provider", "provider_refund_id", name="uq_payment_refunds_provider_refund"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PaymentRefundStatus.PENDING.value)
    reason = Column(String, nullable=True)

    provider = Column(String, nullable=True)
    provider_refund_id = Column(String, nullable=True)

    metadata_json = Column(JSONType, nullable=False, default=dict)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="refunds")


# ----------------------------------------------------------------------
# Payment helpers
# ----------------------------------------------------------------------


async def get_payment(db: AsyncSession, payment_id: int) -> Optional[Payment]:
    result = await db.execute(select(Payment).where(Payment.id == payment_id))
    return result.scalar_one_or_none()


async def get_payment_by_provider_id(
    db: AsyncSession,
    provider: str,
    provider_payment_id: str,
) -> Optional[Payment]:
    """Locate a payment from a gateway's own identifier (webhook lookups)."""
    result = await db.execute(
        select(Payment)
        .where(Payment.provider == provider)
        .where(Payment.provider_payment_id == provider_payment_id)
        .order_by(Payment.id.asc())
    )
    return result.scalars().first()


async def lock_payment(db: AsyncSession, payment_id: int) -> Payment:
    """
    SELECT ... FOR UPDATE on one payment row. Must be called inside a unit
    of work; the lock is held until it commits or rolls back.
    """
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise RecordNotFoundException(
            "Payment not found",
            context={"payment_id": payment_id},
        )
    return payment


async def with_locked_payment(
    db: AsyncSession,
    payment_id: int,
    fn: Callable[[Payment], Awaitable[T]],
) -> T:
    """
    Run `fn` against the row-locked payment inside one unit of work.
    Concurrent capture / cancel / refund calls on the same payment serialize here.
    """
    async with unit_of_work(db):
        payment = await lock_payment(db, payment_id)
        return await fn(payment)


async def get_intent(db: AsyncSession, intent_id: int) -> Optional[PaymentIntent]:
    result = await db.execute(select(PaymentIntent).where(PaymentIntent.id == intent_id))
    return result.scalar_one_or_none()


async def lock_intent(db: AsyncSession, intent_id: int) -> PaymentIntent:
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    intent = result.scalar_one_or_none()
    if intent is None:
        raise RecordNotFoundException(
            "Payment intent not found",
            context={"intent_id": intent_id},
        )
    return intent


async def get_intent_for_payment(db: AsyncSession, payment_id: int) -> Optional[PaymentIntent]:
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.payment_id == payment_id)
        .order_by(PaymentIntent.id.asc())
    )
    return result.scalars().first()


async def get_refund_by_provider_id(
    db: AsyncSession,
    provider: Optional[str],
    provider_refund_id: str,
) -> Optional[PaymentRefund]:
    result = await db.execute(
        select(PaymentRefund)
        .where(PaymentRefund.provider == provider)
        .where(PaymentRefund.provider_refund_id == provider_refund_id)
    )
    return result.scalar_one_or_none()


async def list_refunds_for_payment(db: AsyncSession, payment_id: int) -> List[PaymentRefund]:
    result = await db.execute(
        select(PaymentRefund)
        .where(PaymentRefund.payment_id == payment_id)
        .order_by(PaymentRefund.id.asc())
    )
    return result.scalars().all()

async def get_payment_by_provider_intent_id(
    db: AsyncSession,
    provider: str,
    provider_intent_id: str,
) -> Optional[Payment]:
    """Payment behind a gateway intent id, for notifications sent before capture."""
    result = await db.execute(
        select(Payment)
        .join(PaymentIntent, PaymentIntent.payment_id == Payment.id)
        .where(PaymentIntent.provider == provider)
        .where(PaymentIntent.provider_intent_id == provider_intent_id)
        .order_by(Payment.id.asc())
    )
    return result.scalars().first()


async def refunded_total(db: AsyncSession, payment_id: int) -> int:
    """Amount already given back on a payment; failed refunds do not count."""
    result = await db.execute(
        select(func.coalesce(func.sum(PaymentRefund.amount), 0))
        .where(PaymentRefund.payment_id == payment_id)
        .where(PaymentRefund.status != PaymentRefundStatus.FAILED.value)
    )
    return int(result.scalar_one())
