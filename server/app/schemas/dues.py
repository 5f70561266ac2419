from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

DuesStatus = Literal["pending", "partial", "paid", "overdue", "waived"]
PeriodType = Literal["Quarter", "Semester", "Year"]
LateFeeType = Literal["flat", "percentage"]
Cohort = Literal["freshman", "sophomore", "junior", "senior", "graduate", "alumni", "pledge"]


class DuesConfigurationBase(BaseModel):
    period_name: str = Field(..., min_length=1, max_length=100)
    period_type: PeriodType = "Semester"
    fiscal_year: int = Field(..., ge=2000, le=2100)
    period_start_date: Optional[date] = None
    period_end_date: Optional[date] = None
    due_date: Optional[date] = None
    default_rate: Decimal = Field(Decimal("0"), ge=0)
    rates: Optional[Dict[Cohort, Decimal]] = None
    late_fee_enabled: bool = False
    late_fee_type: LateFeeType = "flat"
    late_fee_amount: Decimal = Field(Decimal("0"), ge=0)
    late_fee_grace_days: int = Field(0, ge=0, le=365)
    notes: Optional[str] = None

    @field_validator("rates")
    @classmethod
    def _non_negative_rates(cls, value: Optional[Dict[str, Decimal]]) -> Optional[Dict[str, Decimal]]:
        if value and any(amount < 0 for amount in value.values()):
            raise ValueError("Cohort rates cannot be negative")
        return value


class DuesConfigurationCreate(DuesConfigurationBase):
    chapter_id: int
    is_current: bool = False


class DuesConfigurationOut(DuesConfigurationBase):
    id: int
    chapter_id: int
    is_current: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DuesMemberOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: Optional[str]
    cohort: Optional[str]

    class Config:
        from_attributes = True


class DuesPaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: Optional[str] = Field(None, max_length=50)
    payment_date: Optional[date] = None
    reference_number: Optional[str] = Field(None, max_length=120)
    notes: Optional[str] = Field(None, max_length=255)


class DuesPaymentOut(BaseModel):
    id: int
    member_dues_id: int
    amount: Decimal
    method: Optional[str]
    payment_date: date
    reference_number: Optional[str]
    notes: Optional[str]
    recorded_by_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class MemberDuesOut(BaseModel):
    id: int
    chapter_id: int
    member_id: int
    config_id: int
    base_amount: Decimal
    late_fee: Decimal
    adjustments: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    balance: Decimal
    status: DuesStatus
    due_date: Optional[date]
    flexible_plan_deadline: Optional[date]
    paid_date: Optional[date]
    late_fee_applied_date: Optional[date]
    waived_at: Optional[datetime]
    notes: Optional[str]
    member: Optional[DuesMemberOut] = None

    class Config:
        from_attributes = True


class DuesSummaryOut(BaseModel):
    record: MemberDuesOut
    is_overdue: bool
    days_overdue: int
    payments: List[DuesPaymentOut]


class DuesRecordListResponse(BaseModel):
    items: List[MemberDuesOut]
    total: int
    page: int
    page_size: int


class DuesAssignmentCreate(BaseModel):
    config_id: int
    member_id: int
    base_amount: Decimal = Field(..., gt=0)
    due_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=500)


class DuesAdjustmentCreate(BaseModel):
    amount: Decimal
    reason: str = Field(..., min_length=1, max_length=255)


class DuesWaiveRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=255)


class BatchAssignResponse(BaseModel):
    assigned: int
    updated: int
    skipped: int
    errors: List[str]


class LateFeeRunResponse(BaseModel):
    applied: int
    skipped: int
