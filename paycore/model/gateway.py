from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from paycore.common.payment_enums import PayableKind, PaymentType
from paycore.model.common import normalize_currency


# ----------------------------------------------------------------------
# Requests handed to gateway drivers
# ----------------------------------------------------------------------


class PaymentIntentData(BaseModel):
    payable_kind: PayableKind
    payable_id: int
    payer_id: int
    payee_id: Optional[int] = None
    amount: int = Field(..., gt=0)
    currency: str
    fee_amount: Optional[int] = Field(None, ge=0)
    type: PaymentType = PaymentType.ONE_TIME
    method: Optional[str] = None
    description: Optional[str] = None
    payment_method_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return normalize_currency(value)

    @model_validator(mode="after")
    def fee_within_amount(self):
        if self.fee_amount is not None and self.fee_amount > self.amount:
            raise ValueError("fee_amount cannot exceed amount")
        return self


class PaymentCaptureData(BaseModel):
    provider_intent_id: str
    amount: Optional[int] = Field(None, gt=0)
    currency: Optional[str] = None
    payment_method_id: Optional[int] = None
    payment_method_token: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentRefundData(BaseModel):
    provider_payment_id: str
    amount: int = Field(..., gt=0)
    currency: str
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return normalize_currency(value)


class SubscriptionCreateData(BaseModel):
    subscriber_id: int
    creator_id: int
    plan_id: Optional[int] = None
    amount: int = Field(..., ge=0)
    currency: str
    interval: str = "monthly"
    interval_count: int = Field(1, ge=1)
    trial_days: int = Field(0, ge=0)
    auto_renews: bool = True
    payment_method_id: Optional[int] = None
    payment_method_token: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return normalize_currency(value)


class SubscriptionCancelData(BaseModel):
    provider_subscription_id: Optional[str] = None
    immediate: bool = False
    reason: Optional[str] = None


class SubscriptionResumeData(BaseModel):
    provider_subscription_id: Optional[str] = None


class SubscriptionSwapData(BaseModel):
    provider_subscription_id: Optional[str] = None
    plan_id: Optional[int] = None
    amount: int = Field(..., ge=0)
    currency: str
    interval: str = "monthly"
    interval_count: int = Field(1, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return normalize_currency(value)


# ----------------------------------------------------------------------
# Driver responses
# ----------------------------------------------------------------------


class CardDetails(BaseModel):
    brand: Optional[str] = None
    last_four: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    billing_country: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    provider: str
    provider_intent_id: str
    client_secret: Optional[str] = None
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayStatusResponse(BaseModel):
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentResponse(BaseModel):
    provider_payment_id: str
    amount: int
    currency: Optional[str] = None
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentRefundResponse(BaseModel):
    provider_refund_id: str
    amount: int
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionResponse(BaseModel):
    provider: str
    provider_subscription_id: str
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)
