from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.date_functions import as_utc, utc_now
from paycore.data.post_purchase import find_unlocking_purchase
from paycore.data.subscription import PaymentSubscription, find_entitled_subscription

logger = structlog.get_logger()


@dataclass(frozen=True)
class PostRef:
    id: int
    author_id: int


class EntitlementResolver:
    """Read-only access checks over committed subscriptions and purchases."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def active_subscription(
        self,
        subscriber_id: int,
        creator_id: int,
        now: Optional[datetime] = None,
    ) -> Optional[PaymentSubscription]:
        return await find_entitled_subscription(
            self.db,
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            now=as_utc(now) or utc_now(),
        )

    async def has_active_subscription(self, subscriber_id: int, creator_id: int,
                                      now: Optional[datetime] = None) -> bool:
        return await self.active_subscription(subscriber_id, creator_id, now) is not None

    async def has_unlocked_post(self, user_id: int, post: PostRef, now: Optional[datetime] = None) -> bool:
        if user_id == post.author_id:
            return True
        now = as_utc(now) or utc_now()
        if await self.has_active_subscription(user_id, post.author_id, now):
            return True
        purchase = await find_unlocking_purchase(self.db, post_id=post.id, user_id=user_id, now=now)
        if purchase is not None:
            logger.debug("Post unlocked by purchase", post_id=post.id, user_id=user_id, post_purchase_id=purchase.id)
        return purchase is not None
