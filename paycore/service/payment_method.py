from __future__ import annotations

from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.date_functions import utc_now
from paycore.common.exception import (
    CapabilityUnsupported,
    IntegrityException,
    OwnershipMismatch,
    RecordNotFoundException,
)
from paycore.common.payment_enums import PaymentMethodStatus
from paycore.common.utility_functions import mask_token
from paycore.data.dbinit import end_read_transaction, unit_of_work
from paycore.data.payment_method import (
    PaymentMethod,
    create_payment_method,
    find_by_token,
    first_active_method,
    get_default_method,
    get_payment_method,
    has_active_method,
    list_active_methods,
    lock_user_methods,
    make_default,
)
from paycore.gateway.manager import PaymentGatewayManager
from paycore.model.gateway import CardDetails

logger = structlog.get_logger()


class PaymentMethodService:
    """Tokenized, reusable payment instruments. One active default per user."""

    def __init__(self, db: AsyncSession, gateways: PaymentGatewayManager):
        self.db = db
        self.gateways = gateways

    async def _owned(self, method_id: int, user_id: Optional[int]) -> PaymentMethod:
        method = await get_payment_method(self.db, method_id)
        if method is None or method.status != PaymentMethodStatus.ACTIVE.value:
            raise RecordNotFoundException("Payment method not found", context={"payment_method_id": method_id})
        if user_id is not None and method.user_id != user_id:
            raise OwnershipMismatch(user_id, "payment_method")
        return method

    async def vault(
        self,
        user_id: int,
        provider_token_id: str,
        gateway: Optional[str] = None,
        card: Optional[CardDetails] = None,
    ) -> PaymentMethod:
        name = gateway or self.gateways.get_default_driver()
        existing = await find_by_token(self.db, user_id=user_id, provider=name, provider_token_id=provider_token_id)
        if existing is not None:
            logger.info("Payment method already vaulted", method_id=existing.id, token=mask_token(provider_token_id))
            return existing

        if card is None:
            driver = self.gateways.driver(name)
            if not driver.supports_token_details():
                raise CapabilityUnsupported(name, "payment token details")
            await end_read_transaction(self.db)
            card = await self.gateways.call(
                name, "get_payment_token_details", driver.get_payment_token_details(provider_token_id)
            )

        for attempt in range(2):
            try:
                async with unit_of_work(self.db):
                    await lock_user_methods(self.db, user_id)
                    # Another request may have vaulted the same token meanwhile
                    existing = await find_by_token(
                        self.db, user_id=user_id, provider=name, provider_token_id=provider_token_id
                    )
                    if existing is not None:
                        return existing
                    is_default = not await has_active_method(self.db, user_id)
                    method = await create_payment_method(
                        self.db,
                        user_id=user_id,
                        provider=name,
                        provider_token_id=provider_token_id,
                        brand=card.brand,
                        last_four=card.last_four,
                        exp_month=card.exp_month,
                        exp_year=card.exp_year,
                        billing_country=card.billing_country,
                        is_default=is_default,
                        metadata_json={"gateway": name, "vaulted_at": utc_now().isoformat()},
                    )
                break
            except IntegrityException:
                # A concurrent first vault took the default or the token; re-read and retry once
                if attempt:
                    raise
                logger.info("Concurrent vault for user, retrying", user_id=user_id,
                            token=mask_token(provider_token_id))

        logger.info(
            "Payment method vaulted",
            method_id=method.id,
            user_id=user_id,
            token=mask_token(provider_token_id),
            is_default=is_default,
        )
        return method

    async def set_default(self, user_id: int, method_id: int) -> PaymentMethod:
        method = await self._owned(method_id, user_id)
        async with unit_of_work(self.db):
            await lock_user_methods(self.db, user_id)
            if method.status != PaymentMethodStatus.ACTIVE.value:
                raise RecordNotFoundException("Payment method not found", context={"payment_method_id": method_id})
            await make_default(self.db, user_id=user_id, method_id=method.id)
        await self.db.refresh(method)
        logger.info("Default payment method changed", user_id=user_id, method_id=method.id)
        return method

    async def delete(self, method_id: int, user_id: Optional[int] = None) -> PaymentMethod:
        method = await self._owned(method_id, user_id)
        promoted: Optional[PaymentMethod] = None
        async with unit_of_work(self.db):
            await lock_user_methods(self.db, method.user_id)
            if method.status != PaymentMethodStatus.ACTIVE.value:
                raise RecordNotFoundException("Payment method not found", context={"payment_method_id": method_id})
            was_default = bool(method.is_default)
            method.status = PaymentMethodStatus.REMOVED.value
            method.is_default = False
            method.deleted_at = utc_now()
            await self.db.flush()
            if was_default:
                promoted = await first_active_method(self.db, method.user_id)
                if promoted is not None:
                    await make_default(self.db, user_id=method.user_id, method_id=promoted.id)

        logger.info(
            "Payment method removed",
            method_id=method.id,
            token=mask_token(method.provider_token_id),
            promoted_id=promoted.id if promoted else None,
        )
        return method

    async def list_methods(self, user_id: int) -> List[PaymentMethod]:
        return await list_active_methods(self.db, user_id)

    async def get_default(self, user_id: int) -> Optional[PaymentMethod]:
        return await get_default_method(self.db, user_id)
