from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Index,
    or_,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from paycore.data.dbinit import Base, JSONType, add_row
from paycore.common.exception import RecordNotFoundException
from paycore.common.payment_enums import (
    ENTITLED_SUBSCRIPTION_STATUSES,
    PaymentSubscriptionStatus,
)


# ----------------------------------------------------------------------
# SubscriptionPlan – creator-owned catalog entry
# ----------------------------------------------------------------------


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    creator_id = Column(Integer, nullable=False, index=True)

    name = Column(String, nullable=False)
    slug = Column(String, nullable=True, unique=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    interval = Column(String, nullable=False, default="monthly")
    interval_count = Column(Integer, nullable=False, default=1)
    trial_days = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    metadata_json = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


# ----------------------------------------------------------------------
# PaymentSubscription – subscriber -> creator recurring relationship
# ----------------------------------------------------------------------


class PaymentSubscription(Base):
    """
    ends_at is the end of the current paid period; renewal replaces it.
    grace_ends_at, when set, is never before ends_at.
    """
    __tablename__ = "payment_subscriptions"
    __table_args__ = (
        Index("ix_payment_subscriptions_pair_status", "subscriber_id", "creator_id", "status"),
        Index("ix_payment_subscriptions_provider_sub", "provider", "provider_subscription_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(Integer, nullable=False)
    creator_id = Column(Integer, nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    payment_method_id = Column(Integer, ForeignKey("payment_methods.id"), nullable=True)

    status = Column(String, nullable=False, default=PaymentSubscriptionStatus.PENDING.value)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    interval = Column(String, nullable=False, default="monthly")
    interval_count = Column(Integer, nullable=False, default=1)
    auto_renews = Column(Boolean, nullable=False, default=True)

    provider = Column(String, nullable=True)
    provider_subscription_id = Column(String, nullable=True)

    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    grace_ends_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String, nullable=True)

    metadata_json = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    plan = relationship("SubscriptionPlan", lazy="selectin")


# ----------------------------------------------------------------------
# Plan helpers
# ----------------------------------------------------------------------


async def create_plan(
    db: AsyncSession,
    *,
    creator_id: int,
    name: str,
    amount: int,
    currency: str,
    interval: str = "monthly",
    interval_count: int = 1,
    trial_days: int = 0,
    slug: Optional[str] = None,
    metadata_json: Optional[Dict[str, Any]] = None,
) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        creator_id=creator_id,
        name=name,
        slug=slug,
        amount=amount,
        currency=currency,
        interval=interval,
        interval_count=interval_count,
        trial_days=trial_days,
        is_active=True,
        metadata_json=metadata_json or {},
    )
    return await add_row(db, plan, "subscription plan")


async def get_plan(db: AsyncSession, plan_id: int) -> Optional[SubscriptionPlan]:
    result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id))
    return result.scalar_one_or_none()


# ----------------------------------------------------------------------
# Subscription helpers
# ----------------------------------------------------------------------


async def get_subscription(db: AsyncSession, subscription_id: int) -> Optional[PaymentSubscription]:
    result = await db.execute(
        select(PaymentSubscription).where(PaymentSubscription.id == subscription_id)
    )
    return result.scalar_one_or_none()


async def lock_subscription(db: AsyncSession, subscription_id: int) -> PaymentSubscription:
    """SELECT ... FOR UPDATE; call inside a unit of work."""
    result = await db.execute(
        select(PaymentSubscription)
        .where(PaymentSubscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise RecordNotFoundException(
            "Subscription not found",
            context={"subscription_id": subscription_id},
        )
    return subscription


def entitled_filter(now: datetime):
    """Status in the entitled set and neither ends_at nor grace_ends_at in the past."""
    return (
        PaymentSubscription.status.in_([s.value for s in ENTITLED_SUBSCRIPTION_STATUSES]),
        or_(PaymentSubscription.ends_at.is_(None), PaymentSubscription.ends_at > now),
        or_(PaymentSubscription.grace_ends_at.is_(None), PaymentSubscription.grace_ends_at > now),
    )


async def find_entitled_subscription(
    db: AsyncSession,
    *,
    subscriber_id: int,
    creator_id: int,
    now: datetime,
) -> Optional[PaymentSubscription]:
    result = await db.execute(
        select(PaymentSubscription)
        .where(PaymentSubscription.subscriber_id == subscriber_id)
        .where(PaymentSubscription.creator_id == creator_id)
        .where(*entitled_filter(now))
        .order_by(PaymentSubscription.ends_at.desc(), PaymentSubscription.id.desc())
    )
    return result.scalars().first()


async def list_subscription_ids_due(
    db: AsyncSession,
    *,
    now: datetime,
    limit: int = 500,
) -> Dict[str, List[int]]:
    """
    Ids the sweep has work for, bucketed by what should happen to them.
    Rows are re-checked under lock before mutation.
    """
    non_renewing = await db.execute(
        select(PaymentSubscription.id)
        .where(PaymentSubscription.status.in_([
            PaymentSubscriptionStatus.ACTIVE.value,
            PaymentSubscriptionStatus.TRIALING.value,
            PaymentSubscriptionStatus.PAST_DUE.value,
        ]))
        .where(PaymentSubscription.auto_renews.is_(False))
        .where(PaymentSubscription.ends_at.is_not(None))
        .where(PaymentSubscription.ends_at <= now)
        .order_by(PaymentSubscription.id.asc())
        .limit(limit)
    )
    grace_over = await db.execute(
        select(PaymentSubscription.id)
        .where(PaymentSubscription.status == PaymentSubscriptionStatus.GRACE.value)
        .where(PaymentSubscription.grace_ends_at.is_not(None))
        .where(PaymentSubscription.grace_ends_at <= now)
        .order_by(PaymentSubscription.id.asc())
        .limit(limit)
    )
    past_due = await db.execute(
        select(PaymentSubscription.id)
        .where(PaymentSubscription.status == PaymentSubscriptionStatus.PAST_DUE.value)
        .where(PaymentSubscription.auto_renews.is_(True))
        .where(PaymentSubscription.ends_at.is_not(None))
        .where(PaymentSubscription.ends_at <= now)
        .order_by(PaymentSubscription.id.asc())
        .limit(limit)
    )
    return {
        "expire": list(non_renewing.scalars().all()) + list(grace_over.scalars().all()),
        "grace": list(past_due.scalars().all()),
    }
