from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import get_current_user_id, get_payment_service, get_post_purchase_service
from paycore.common.exception import OwnershipMismatch, RecordNotFoundException
from paycore.config.config import settings
from paycore.data.dbinit import get_db
from paycore.data.payment import Payment, PaymentIntent, get_intent, get_intent_for_payment, get_payment, list_refunds_for_payment
from paycore.model.gateway import PaymentCaptureData, PaymentIntentData
from paycore.model.payment import (
    IntentCaptureRequest,
    IntentConfirmRequest,
    PaymentDetail,
    PaymentIntentCreate,
    PaymentIntentCreated,
    PaymentIntentOut,
    PaymentOut,
    PaymentRefundOut,
    PostPurchaseOut,
    PostPurchaseRequest,
    PostPurchaseStarted,
    RefundRequest,
)
from paycore.service.payment import PaymentService
from paycore.service.post_purchase import PostPurchaseService

router = APIRouter()


async def _payer_intent(db: AsyncSession, intent_id: int, user_id: int) -> PaymentIntent:
    intent = await get_intent(db, intent_id)
    if intent is None:
        raise RecordNotFoundException("Payment intent not found", context={"intent_id": intent_id})
    if intent.payer_id != user_id:
        raise OwnershipMismatch(user_id, "payment_intent")
    return intent


async def _payment_for(db: AsyncSession, payment_id: int, user_id: int) -> Payment:
    payment = await get_payment(db, payment_id)
    if payment is None:
        raise RecordNotFoundException("Payment not found", context={"payment_id": payment_id})
    if user_id not in (payment.payer_id, payment.payee_id):
        raise OwnershipMismatch(user_id, "payment")
    return payment


@router.post("/intents", response_model=PaymentIntentCreated, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
    user_id: int = Depends(get_current_user_id),
):
    try:
        data = PaymentIntentData(
            payer_id=user_id,
            currency=payload.currency or settings.PAYMENTS_DEFAULT_CURRENCY,
            **payload.model_dump(exclude={"gateway", "currency"}),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors(include_context=False))

    intent = await service.create_intent(data, payload.gateway)
    payment = await get_payment(db, intent.payment_id)
    return PaymentIntentCreated(
        payment=PaymentOut.model_validate(payment),
        intent=PaymentIntentOut.model_validate(intent),
    )


@router.post("/intents/{intent_id}/confirm", response_model=PaymentIntentOut)
async def confirm_payment_intent(
    intent_id: int,
    payload: IntentConfirmRequest,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
    user_id: int = Depends(get_current_user_id),
):
    await _payer_intent(db, intent_id, user_id)
    intent = await service.confirm_intent(intent_id, payload.context)
    return PaymentIntentOut.model_validate(intent)


@router.post("/intents/{intent_id}/cancel", response_model=PaymentIntentOut)
async def cancel_payment_intent(
    intent_id: int,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
    user_id: int = Depends(get_current_user_id),
):
    await _payer_intent(db, intent_id, user_id)
    intent = await service.cancel_intent(intent_id)
    return PaymentIntentOut.model_validate(intent)


@router.post("/intents/{intent_id}/capture", response_model=PaymentOut)
async def capture_payment_intent(
    intent_id: int,
    payload: IntentCaptureRequest,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
    user_id: int = Depends(get_current_user_id),
):
    intent = await _payer_intent(db, intent_id, user_id)
    data = PaymentCaptureData(
        provider_intent_id=intent.provider_intent_id,
        amount=payload.amount,
        metadata=payload.metadata,
    )
    payment = await service.capture(intent_id, data, payment_method_id=payload.payment_method_id)
    return PaymentOut.model_validate(payment)


@router.post("/post-purchases", response_model=PostPurchaseStarted, status_code=status.HTTP_201_CREATED)
async def start_post_purchase(
    payload: PostPurchaseRequest,
    service: PostPurchaseService = Depends(get_post_purchase_service),
    user_id: int = Depends(get_current_user_id),
):
    purchase, intent = await service.start_post_purchase(
        buyer_id=user_id,
        post_id=payload.post_id,
        author_id=payload.author_id,
        amount=payload.amount,
        currency=payload.currency,
        expires_at=payload.expires_at,
        gateway=payload.gateway,
    )
    return PostPurchaseStarted(
        purchase=PostPurchaseOut.model_validate(purchase),
        intent=PaymentIntentOut.model_validate(intent),
    )


@router.post("/{payment_id}/refund", response_model=PaymentRefundOut)
async def refund_payment(
    payment_id: int,
    payload: RefundRequest,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
    user_id: int = Depends(get_current_user_id),
):
    """Refunds are issued by the payee; omit `amount` to refund the remaining balance."""
    payment = await _payment_for(db, payment_id, user_id)
    if payment.payee_id != user_id:
        raise OwnershipMismatch(user_id, "payment", reason="Only the payee can refund a payment")
    refund = await service.refund(payment_id, payload.amount, payload.reason, payload.metadata)
    return PaymentRefundOut.model_validate(refund)


@router.get("/{payment_id}", response_model=PaymentDetail)
async def get_payment_detail(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    payment = await _payment_for(db, payment_id, user_id)
    intent = await get_intent_for_payment(db, payment_id)
    refunds = await list_refunds_for_payment(db, payment_id)
    return PaymentDetail(
        **PaymentOut.model_validate(payment).model_dump(),
        intent=PaymentIntentOut.model_validate(intent) if intent else None,
        refunds=[PaymentRefundOut.model_validate(r) for r in refunds],
    )
