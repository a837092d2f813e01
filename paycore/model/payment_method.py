from typing import Optional

from pydantic import BaseModel

from paycore.model.gateway import CardDetails


class PaymentMethodVault(BaseModel):
    provider_token_id: str
    gateway: Optional[str] = None
    card: Optional[CardDetails] = None


class PaymentMethodOut(BaseModel):
    id: int
    provider: str
    brand: Optional[str] = None
    last_four: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool
    status: str

    class Config:
        from_attributes = True
