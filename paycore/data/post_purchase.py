from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
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
from sqlalchemy.sql import func

from paycore.data.dbinit import Base, JSONType, add_row
from paycore.common.exception import RecordNotFoundException
from paycore.common.payment_enums import PostPurchaseStatus


# ----------------------------------------------------------------------
# PostPurchase – pay-to-view unlock of a single post
# ----------------------------------------------------------------------


class PostPurchase(Base):
    __tablename__ = "post_purchases"
    __table_args__ = (
        Index("ix_post_purchases_post_user", "post_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    post_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PostPurchaseStatus.PENDING.value)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    metadata_json = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


async def create_post_purchase(
    db: AsyncSession,
    *,
    post_id: int,
    user_id: int,
    amount: int,
    currency: str,
    expires_at: Optional[datetime] = None,
    metadata_json: Optional[Dict[str, Any]] = None,
) -> PostPurchase:
    purchase = PostPurchase(
        post_id=post_id,
        user_id=user_id,
        amount=amount,
        currency=currency,
        status=PostPurchaseStatus.PENDING.value,
        expires_at=expires_at,
        metadata_json=metadata_json or {},
    )
    return await add_row(db, purchase, "post purchase")


async def get_post_purchase(db: AsyncSession, purchase_id: int) -> Optional[PostPurchase]:
    result = await db.execute(select(PostPurchase).where(PostPurchase.id == purchase_id))
    return result.scalar_one_or_none()


async def lock_post_purchase(db: AsyncSession, purchase_id: int) -> PostPurchase:
    result = await db.execute(
        select(PostPurchase)
        .where(PostPurchase.id == purchase_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    purchase = result.scalar_one_or_none()
    if purchase is None:
        raise RecordNotFoundException(
            "Post purchase not found",
            context={"post_purchase_id": purchase_id},
        )
    return purchase


async def find_unlocking_purchase(
    db: AsyncSession,
    *,
    post_id: int,
    user_id: int,
    now: datetime,
) -> Optional[PostPurchase]:
    """A completed or still-pending purchase that has not expired."""
    result = await db.execute(
        select(PostPurchase)
        .where(PostPurchase.post_id == post_id)
        .where(PostPurchase.user_id == user_id)
        .where(PostPurchase.status.in_([
            PostPurchaseStatus.COMPLETED.value,
            PostPurchaseStatus.PENDING.value,
        ]))
        .where(or_(PostPurchase.expires_at.is_(None), PostPurchase.expires_at > now))
        .limit(1)
    )
    return result.scalars().first()
