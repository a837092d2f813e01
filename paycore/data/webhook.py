from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql import func

from paycore.data.dbinit import Base, JSONType, add_row
from paycore.common.payment_enums import PaymentWebhookStatus


# ----------------------------------------------------------------------
# PaymentWebhook – append-only ledger + idempotency for gateway webhooks
# ----------------------------------------------------------------------


class PaymentWebhook(Base):
    __tablename__ = "payment_webhooks"
    __table_args__ = (
        # One claim per canonical event per provider; NULL keys never collide
        UniqueConstraint("provider", "dedup_key", name="uq_payment_webhooks_provider_dedup"),
        Index("ix_payment_webhooks_provider_status", "provider", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    provider = Column(String, nullable=False)
    event = Column(String, nullable=True)          # vendor event name, e.g. "transaction.succeeded"
    event_type = Column(String, nullable=True)     # mapped event type

    # Exact bytes the signature covers
    payload = Column(Text, nullable=False)
    payload_json = Column(JSONType, nullable=False, default=dict)
    signature = Column(String, nullable=True)
    headers = Column(JSONType, nullable=False, default=dict)

    status = Column(String, nullable=False, default=PaymentWebhookStatus.RECEIVED.value)
    error = Column(Text, nullable=True)
    dedup_key = Column(String, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


# ----------------------------------------------------------------------
# PaymentWebhook helpers
# ----------------------------------------------------------------------


async def create_webhook(
    db: AsyncSession,
    *,
    provider: str,
    payload: str,
    payload_json: Optional[Dict[str, Any]] = None,
    event: Optional[str] = None,
    signature: Optional[str] = None,
    headers: Optional[Dict[str, Any]] = None,
) -> PaymentWebhook:
    """Store a delivery exactly as received, before any processing."""
    webhook = PaymentWebhook(
        provider=provider,
        event=event,
        payload=payload,
        payload_json=payload_json or {},
        signature=signature,
        headers=headers or {},
        status=PaymentWebhookStatus.RECEIVED.value,
    )
    return await add_row(db, webhook, "payment webhook")


async def get_webhook(db: AsyncSession, webhook_id: int) -> Optional[PaymentWebhook]:
    result = await db.execute(select(PaymentWebhook).where(PaymentWebhook.id == webhook_id))
    return result.scalar_one_or_none()


async def get_webhook_by_dedup_key(
    db: AsyncSession,
    *,
    provider: str,
    dedup_key: str,
) -> Optional[PaymentWebhook]:
    result = await db.execute(
        select(PaymentWebhook)
        .where(PaymentWebhook.provider == provider)
        .where(PaymentWebhook.dedup_key == dedup_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_failed_webhooks(
    db: AsyncSession,
    *,
    provider: Optional[str] = None,
    limit: int = 50,
    exclude_errors: Optional[List[str]] = None,
) -> List[PaymentWebhook]:
    stmt = (
        select(PaymentWebhook)
        .where(PaymentWebhook.status == PaymentWebhookStatus.FAILED.value)
        .order_by(PaymentWebhook.id.asc())
        .limit(limit)
    )
    if provider:
        stmt = stmt.where(PaymentWebhook.provider == provider)
    if exclude_errors:
        stmt = stmt.where(
            (PaymentWebhook.error.is_(None)) | (PaymentWebhook.error.not_in(exclude_errors))
        )
    result = await db.execute(stmt)
    return result.scalars().all()


def finish_webhook(
    webhook: PaymentWebhook,
    *,
    status: PaymentWebhookStatus,
    processed_at: datetime,
    error: Optional[str] = None,
) -> PaymentWebhook:
    webhook.status = status.value
    webhook.error = error[:2000] if error else None
    webhook.processed_at = processed_at
    return webhook
