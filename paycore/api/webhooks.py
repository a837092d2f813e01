import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import get_event_sink, get_gateway_manager
from paycore.common.events import EventSink
from paycore.common.exception import DataLayerException
from paycore.data.dbinit import get_db, unit_of_work
from paycore.data.webhook import create_webhook
from paycore.gateway.manager import PaymentGatewayManager
from paycore.model.webhook import WebhookAccepted
from paycore.service.webhook import WebhookOutcome, processor_for

logger = structlog.get_logger()

router = APIRouter()

SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-CCBill-Signature", "Stripe-Signature")


@router.post("/{provider}", response_model=WebhookAccepted, status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: PaymentGatewayManager = Depends(get_gateway_manager),
    events: EventSink = Depends(get_event_sink),
):
    """
    Store a gateway notification exactly as received, then process it.
    The provider always gets 202 once the delivery is stored; processing
    failures are recorded on the webhook row for the reprocessor.
    """
    raw = (await request.body()).decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    event_name = payload.get("type") or payload.get("event") or request.headers.get("X-Event-Type")

    async with unit_of_work(db):
        webhook = await create_webhook(
            db,
            provider=provider,
            payload=raw,
            payload_json=payload,
            event=event_name,
            signature=signature,
            headers=dict(request.headers),
        )
    webhook_id = webhook.id
    stored_status = webhook.status
    logger.info("Webhook stored", provider=provider, webhook_id=webhook_id, webhook_event=event_name)

    try:
        outcome = await processor_for(db, provider, gateways, events).process(webhook_id)
        await db.refresh(webhook, ["status"])
    except (SQLAlchemyError, DataLayerException):
        # The delivery is stored; the provider still gets its acknowledgement
        logger.exception("Webhook processing aborted", provider=provider, webhook_id=webhook_id)
        await db.rollback()
        return WebhookAccepted(webhook_id=webhook_id, status=stored_status, outcome=WebhookOutcome.FAILED.value)
    return WebhookAccepted(webhook_id=webhook_id, status=webhook.status, outcome=outcome.value)
