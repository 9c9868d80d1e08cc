from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime
from escrow_service.models import EventType, PaymentStatus
from escrow_service.orders import is_order_id

class PaymentCreate(BaseModel):
    order_id: str = Field(..., example="0x" + "ab" * 32)
    payer: str = Field(..., example="0xPayerWallet")
    amount: int = Field(..., gt=0, example=10)

    @field_validator('order_id')
    @classmethod
    def check_order_id(cls, v: str) -> str:
        if not is_order_id(v):
            raise ValueError("order_id must be 0x followed by 64 lowercase hex characters")
        return v


class SettleRequest(BaseModel):
    caller: str = Field(..., min_length=1, example="backend")


class PaymentRead(BaseModel):
    order_id: str
    payer: str
    amount: int
    created_at: Optional[datetime] = None
    status: PaymentStatus
    expired: bool = False
    expires_at: Optional[datetime] = None
    seconds_remaining: Optional[float] = None

    class Config:
        from_attributes = True


class ReceiptRead(BaseModel):
    tx_ref: str
    block: int
    event_type: EventType
    order_id: str
    payer: str
    amount: int
    actor: str
    created_at: datetime

    class Config:
        from_attributes = True


class EventsRead(BaseModel):
    head: int
    events: List[ReceiptRead]


class AccountRead(BaseModel):
    identity: str
    balance: int


class LedgerInfo(BaseModel):
    merchant: str
    timeout_seconds: int
    head: int


class ErrorRead(BaseModel):
    error: str
    detail: str
