from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SubscriptionCreateRequest(BaseModel):
    creator_id: int
    plan_id: Optional[int] = None
    amount: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = None
    interval: Optional[str] = None
    interval_count: Optional[int] = Field(None, ge=1)
    trial_days: Optional[int] = Field(None, ge=0)
    auto_renews: bool = True
    payment_method_id: Optional[int] = None
    gateway: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionCancelRequest(BaseModel):
    immediate: bool = False
    reason: Optional[str] = None


class SubscriptionSwapRequest(BaseModel):
    plan_id: Optional[int] = None
    amount: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = None
    interval: Optional[str] = None
    interval_count: Optional[int] = Field(None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionOut(BaseModel):
    id: int
    subscriber_id: int
    creator_id: int
    plan_id: Optional[int] = None
    status: str
    amount: int
    currency: str
    interval: str
    interval_count: int
    auto_renews: bool
    provider: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreatorEntitlement(BaseModel):
    creator_id: int
    has_access: bool
    subscription: Optional[SubscriptionOut] = None


class PostEntitlement(BaseModel):
    post_id: int
    unlocked: bool
