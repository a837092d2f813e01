from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from paycore.common.payment_enums import PayableKind, PaymentType


class PaymentIntentCreate(BaseModel):
    payable_kind: PayableKind
    payable_id: int
    payee_id: Optional[int] = None
    amount: int = Field(..., gt=0)
    currency: Optional[str] = None
    fee_amount: Optional[int] = Field(None, ge=0)
    type: PaymentType = PaymentType.ONE_TIME
    method: Optional[str] = None
    description: Optional[str] = None
    gateway: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IntentConfirmRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)


class IntentCaptureRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0)
    payment_method_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PostPurchaseRequest(BaseModel):
    post_id: int
    author_id: int
    amount: int = Field(..., gt=0)
    currency: Optional[str] = None
    expires_at: Optional[datetime] = None
    gateway: Optional[str] = None


class PaymentIntentOut(BaseModel):
    id: int
    payment_id: Optional[int] = None
    status: str
    amount: int
    currency: str
    provider: Optional[str] = None
    provider_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentRefundOut(BaseModel):
    id: int
    payment_id: int
    amount: int
    currency: str
    status: str
    reason: Optional[str] = None
    provider_refund_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentOut(BaseModel):
    id: int
    payable_kind: str
    payable_id: int
    payer_id: int
    payee_id: Optional[int] = None
    type: str
    status: str
    amount: int
    fee_amount: int
    net_amount: int
    currency: str
    provider: Optional[str] = None
    provider_payment_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentDetail(PaymentOut):
    intent: Optional[PaymentIntentOut] = None
    refunds: List[PaymentRefundOut] = []


class PaymentIntentCreated(BaseModel):
    payment: PaymentOut
    intent: PaymentIntentOut


class PostPurchaseOut(BaseModel):
    id: int
    post_id: int
    user_id: int
    payment_id: Optional[int] = None
    amount: int
    currency: str
    status: str
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PostPurchaseStarted(BaseModel):
    purchase: PostPurchaseOut
    intent: PaymentIntentOut
