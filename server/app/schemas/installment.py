from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

PlanStatus = Literal["active", "completed", "cancelled"]
InstallmentStatus = Literal["scheduled", "processing", "paid", "failed", "cancelled"]


class EligibilityOut(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    deadline: Optional[date] = None
    days_remaining: Optional[int] = None
    allowed_plans: List[int] = []


class EligibilityUpdate(BaseModel):
    member_dues_id: Optional[int] = None
    member_id: Optional[int] = None
    is_eligible: bool = True
    allowed_plans: Optional[List[int]] = None
    notes: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def _one_target(self) -> "EligibilityUpdate":
        if (self.member_dues_id is None) == (self.member_id is None):
            raise ValueError("Provide exactly one of member_dues_id or member_id")
        return self


class EligibilityGrantOut(BaseModel):
    id: int
    chapter_id: int
    member_dues_id: Optional[int]
    member_id: Optional[int]
    is_eligible: bool
    allowed_plans: List[int]
    enabled_by_id: Optional[int]
    enabled_at: Optional[datetime]
    notes: Optional[str]

    class Config:
        from_attributes = True


class InstallmentPreviewItem(BaseModel):
    installment_number: int
    amount: Decimal
    scheduled_date: date


class InstallmentPreviewOut(BaseModel):
    total_amount: Decimal
    num_installments: int
    items: List[InstallmentPreviewItem]


class InstallmentPlanCreate(BaseModel):
    member_dues_id: int
    num_installments: int = Field(..., ge=1, le=12)
    method_type: str = Field("card", min_length=1, max_length=30)
    payment_method_id: Optional[str] = Field(None, max_length=120)


class InstallmentPlanCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class InstallmentPaymentOut(BaseModel):
    id: int
    installment_number: int
    amount: Decimal
    scheduled_date: date
    status: InstallmentStatus
    paid_at: Optional[datetime]
    failure_reason: Optional[str]
    retry_count: int
    next_retry_at: Optional[date]

    class Config:
        from_attributes = True


class InstallmentPlanOut(BaseModel):
    id: int
    chapter_id: int
    member_dues_id: int
    member_id: int
    num_installments: int
    total_amount: Decimal
    method_type: str
    next_payment_date: Optional[date]
    status: PlanStatus
    cancel_reason: Optional[str]
    cancelled_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    payments: List[InstallmentPaymentOut]

    class Config:
        from_attributes = True
