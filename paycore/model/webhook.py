from typing import Optional

from pydantic import BaseModel


class WebhookAccepted(BaseModel):
    received: bool = True
    webhook_id: int
    status: str
    outcome: str


class WebhookReference(BaseModel):
    """Gateway identifiers and amounts read out of one notification."""
    transaction_id: Optional[str] = None
    intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    fully_refunded: Optional[bool] = None
