from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.exception import InvalidPaymentState, PaymentDomainException
from paycore.common.payment_enums import PayableKind, PaymentType, PostPurchaseStatus
from paycore.config.config import settings
from paycore.data.dbinit import unit_of_work
from paycore.data.payment import PaymentIntent
from paycore.data.post_purchase import PostPurchase, create_post_purchase, lock_post_purchase
from paycore.model.gateway import PaymentIntentData
from paycore.service.payment import PaymentService

logger = structlog.get_logger()


class PostPurchaseService:
    def __init__(self, db: AsyncSession, payments: PaymentService):
        self.db = db
        self.payments = payments

    async def start_post_purchase(
        self,
        buyer_id: int,
        post_id: int,
        author_id: int,
        amount: int,
        currency: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        gateway: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[PostPurchase, PaymentIntent]:
        """
        Open a pay-to-view purchase: a pending PostPurchase plus the intent
        that pays for it. If the gateway refuses the intent the purchase is
        marked failed so it never unlocks the post.
        """
        if buyer_id == author_id:
            raise InvalidPaymentState("Creators cannot purchase their own content", post_id=post_id)
        currency = (currency or settings.PAYMENTS_DEFAULT_CURRENCY).upper()

        async with unit_of_work(self.db):
            purchase = await create_post_purchase(
                self.db,
                post_id=post_id,
                user_id=buyer_id,
                amount=amount,
                currency=currency,
                expires_at=expires_at,
                metadata_json=metadata,
            )

        data = PaymentIntentData(
            payable_kind=PayableKind.POST_PURCHASE,
            payable_id=purchase.id,
            payer_id=buyer_id,
            payee_id=author_id,
            amount=amount,
            currency=currency,
            type=PaymentType.ONE_TIME,
            description=f"Unlock post {post_id}",
            metadata=metadata or {},
        )
        try:
            intent = await self.payments.create_intent(data, gateway)
        except PaymentDomainException:
            async with unit_of_work(self.db):
                purchase = await lock_post_purchase(self.db, purchase.id)
                purchase.status = PostPurchaseStatus.FAILED.value
            logger.warning("Post purchase intent failed", post_purchase_id=purchase.id, post_id=post_id)
            raise

        async with unit_of_work(self.db):
            purchase = await lock_post_purchase(self.db, purchase.id)
            purchase.payment_id = intent.payment_id

        logger.info(
            "Post purchase started",
            post_purchase_id=purchase.id,
            post_id=post_id,
            buyer_id=buyer_id,
            payment_id=intent.payment_id,
        )
        return purchase, intent
