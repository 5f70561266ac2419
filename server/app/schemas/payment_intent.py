from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

MethodType = Literal["card", "bank_transfer"]
IntentStatus = Literal["pending", "processing", "succeeded", "failed", "canceled"]


class PaymentIntentCreate(BaseModel):
    member_dues_id: int
    method_type: str = Field("card", min_length=1, max_length=30)
    amount: Optional[Decimal] = None


class PaymentIntentOut(BaseModel):
    id: int
    member_dues_id: int
    member_id: int
    chapter_id: int
    installment_payment_id: Optional[int]
    processor_intent_id: str
    client_secret: Optional[str]
    amount: Decimal
    charge_amount: Decimal
    processor_fee: Decimal
    platform_fee: Decimal
    transfer_amount: Decimal
    currency: str
    method_type: MethodType
    status: IntentStatus
    failure_reason: Optional[str]
    created_at: datetime
    succeeded_at: Optional[datetime]
    canceled_at: Optional[datetime]

    class Config:
        from_attributes = True


class PaymentIntentResponse(BaseModel):
    intent: PaymentIntentOut
    reused: bool
    canceled_intent_id: Optional[int] = None


class FeePreviewOut(BaseModel):
    method_type: MethodType
    amount: Decimal
    charge_amount: Decimal
    processor_fee: Decimal
    platform_fee: Decimal
    transfer_amount: Decimal


class WebhookAck(BaseModel):
    received: bool = True
    payment_intent_id: Optional[int] = None
    status: Optional[str] = None
