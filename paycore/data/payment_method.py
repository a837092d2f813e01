from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Index,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql import func

from paycore.common.exception import IntegrityException
from paycore.data.dbinit import Base, JSONType, add_row
from paycore.common.payment_enums import PaymentMethodStatus


# ----------------------------------------------------------------------
# PaymentMethod – tokenized reusable instrument
# ----------------------------------------------------------------------


class PaymentMethod(Base):
    """
    A card (or other instrument) vaulted at the gateway. Only the provider
    token and display details are stored here, never the PAN.
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        # One active row per vaulted token and at most one active default per user
        Index(
            "uq_payment_methods_user_provider_token",
            "user_id", "provider", "provider_token_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "uq_payment_methods_user_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default IS TRUE AND status = 'active'"),
            sqlite_where=text("is_default = 1 AND status = 'active'"),
        ),
        Index("ix_payment_methods_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)

    provider = Column(String, nullable=False)
    provider_token_id = Column(String, nullable=False)

    brand = Column(String, nullable=True)
    last_four = Column(String(4), nullable=True)
    exp_month = Column(Integer, nullable=True)
    exp_year = Column(Integer, nullable=True)
    billing_country = Column(String(2), nullable=True)

    is_default = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default=PaymentMethodStatus.ACTIVE.value)

    metadata_json = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


# ----------------------------------------------------------------------
# PaymentMethod helpers
# ----------------------------------------------------------------------


async def create_payment_method(
    db: AsyncSession,
    *,
    user_id: int,
    provider: str,
    provider_token_id: str,
    brand: Optional[str] = None,
    last_four: Optional[str] = None,
    exp_month: Optional[int] = None,
    exp_year: Optional[int] = None,
    billing_country: Optional[str] = None,
    is_default: bool = False,
    metadata_json: Optional[Dict[str, Any]] = None,
) -> PaymentMethod:
    method = PaymentMethod(
        user_id=user_id,
        provider=provider,
        provider_token_id=provider_token_id,
        brand=brand,
        last_four=last_four,
        exp_month=exp_month,
        exp_year=exp_year,
        billing_country=billing_country,
        is_default=is_default,
        status=PaymentMethodStatus.ACTIVE.value,
        metadata_json=metadata_json or {},
    )
    return await add_row(db, method, "payment method")


async def get_payment_method(db: AsyncSession, method_id: int) -> Optional[PaymentMethod]:
    result = await db.execute(select(PaymentMethod).where(PaymentMethod.id == method_id))
    return result.scalar_one_or_none()


async def find_by_token(
    db: AsyncSession,
    *,
    user_id: int,
    provider: str,
    provider_token_id: str,
) -> Optional[PaymentMethod]:
    """Active method for (user, provider, token); removed rows never dedup."""
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.provider == provider)
        .where(PaymentMethod.provider_token_id == provider_token_id)
        .where(PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
        .order_by(PaymentMethod.id.asc())
    )
    return result.scalars().first()


async def list_active_methods(db: AsyncSession, user_id: int) -> List[PaymentMethod]:
    """Default first, then newest."""
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
    )
    return result.scalars().all()


async def get_default_method(db: AsyncSession, user_id: int) -> Optional[PaymentMethod]:
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
        .where(PaymentMethod.is_default.is_(True))
        .order_by(PaymentMethod.id.asc())
    )
    return result.scalars().first()


async def has_active_method(db: AsyncSession, user_id: int) -> bool:
    result = await db.execute(
        select(PaymentMethod.id)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def lock_user_methods(db: AsyncSession, user_id: int) -> List[PaymentMethod]:
    """
    SELECT ... FOR UPDATE on the user's active methods. Vault, set-default
    and delete for one user serialize here; the lock is held until the
    caller's unit of work ends.
    """
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
        .order_by(PaymentMethod.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


async def make_default(db: AsyncSession, *, user_id: int, method_id: int) -> None:
    """
    Clear every other default of the user, then set this one. Both
    statements are scoped by user id and run in the caller's transaction;
    callers hold lock_user_methods so the clear sees committed defaults.
    """
    try:
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .where(PaymentMethod.id != method_id)
            .where(PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .where(PaymentMethod.id == method_id)
            .values(is_default=True)
        )
    except IntegrityError as exc:
        raise IntegrityException(
            "Integrity error when changing default payment method",
            context={"user_id": user_id, "payment_method_id": method_id, "detail": str(exc.orig)},
        ) from exc


async def first_active_method(db: AsyncSession, user_id: int) -> Optional[PaymentMethod]:
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.status == PaymentMethodStatus.ACTIVE.value)
        .order_by(PaymentMethod.id.asc())
    )
    return result.scalars().first()
