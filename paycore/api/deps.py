from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.common.events import EventSink
from paycore.common.messaging import build_event_sink
from paycore.data.dbinit import get_db
from paycore.gateway.manager import PaymentGatewayManager
from paycore.service.entitlement import EntitlementResolver
from paycore.service.payable import build_payable_registry
from paycore.service.payment import PaymentService
from paycore.service.payment_method import PaymentMethodService
from paycore.service.post_purchase import PostPurchaseService
from paycore.service.subscription import SubscriptionService

_gateway_manager: Optional[PaymentGatewayManager] = None
_event_sink: Optional[EventSink] = None


def get_gateway_manager() -> PaymentGatewayManager:
    global _gateway_manager
    if _gateway_manager is None:
        _gateway_manager = PaymentGatewayManager()
    return _gateway_manager


def get_event_sink() -> EventSink:
    global _event_sink
    if _event_sink is None:
        _event_sink = build_event_sink()
    return _event_sink


async def get_current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    """Identity as forwarded by the auth layer in front of this service."""
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayManager = Depends(get_gateway_manager),
    events: EventSink = Depends(get_event_sink),
) -> PaymentService:
    return PaymentService(db, gateways, events, payables=build_payable_registry(gateways, events))


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayManager = Depends(get_gateway_manager),
    events: EventSink = Depends(get_event_sink),
) -> SubscriptionService:
    return SubscriptionService(db, gateways, events)


def get_payment_method_service(
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayManager = Depends(get_gateway_manager),
) -> PaymentMethodService:
    return PaymentMethodService(db, gateways)


def get_post_purchase_service(
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
) -> PostPurchaseService:
    return PostPurchaseService(db, payments)


def get_entitlement_resolver(db: AsyncSession = Depends(get_db)) -> EntitlementResolver:
    return EntitlementResolver(db)
