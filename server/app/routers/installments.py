from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.auth.deps import get_current_user, require_chapter_admin
from app.core.db import get_db
from app.models.user import User
from app.schemas.installment import (
    EligibilityGrantOut,
    EligibilityOut,
    EligibilityUpdate,
    InstallmentPlanCancel,
    InstallmentPlanCreate,
    InstallmentPlanOut,
    InstallmentPreviewItem,
    InstallmentPreviewOut,
)
from app.services import dues as dues_service
from app.services import installments as installments_service
from app.services.processor import PaymentProcessor, get_processor

router = APIRouter(prefix="/installments", tags=["installments"])


@router.get("/records/{record_id}/eligibility", response_model=EligibilityOut)
def get_eligibility(
    record_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> EligibilityOut:
    record = dues_service.get_record_for_actor(db, record_id, current_user)
    result = installments_service.check_eligibility(db, record)
    return EligibilityOut(
        eligible=result.eligible,
        reason=result.reason,
        deadline=result.deadline,
        days_remaining=result.days_remaining,
        allowed_plans=result.allowed_plans,
    )


@router.put("/eligibility", response_model=EligibilityGrantOut)
def update_eligibility(
    payload: EligibilityUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> EligibilityGrantOut:
    grant = installments_service.set_eligibility(
        db,
        actor=current_user,
        member_dues_id=payload.member_dues_id,
        member_id=payload.member_id,
        is_eligible=payload.is_eligible,
        allowed_plans=payload.allowed_plans,
        notes=payload.notes,
    )
    return EligibilityGrantOut.from_orm(grant)


@router.get("/preview", response_model=InstallmentPreviewOut)
def preview_plan(
    total: Decimal = Query(..., gt=0),
    num_installments: int = Query(..., ge=1, le=12),
    start_date: Optional[date] = Query(default=None),
    deadline: Optional[date] = Query(default=None),
    _: User = Depends(get_current_user),
) -> InstallmentPreviewOut:
    amounts = installments_service.calculate_installments(total, num_installments)
    dates = installments_service.generate_schedule(start_date or date.today(), num_installments, deadline)
    items = [
        InstallmentPreviewItem(installment_number=i + 1, amount=amount, scheduled_date=scheduled)
        for i, (amount, scheduled) in enumerate(zip(amounts, dates))
    ]
    return InstallmentPreviewOut(total_amount=sum(amounts), num_installments=num_installments, items=items)


@router.post("/plans", response_model=InstallmentPlanOut, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: InstallmentPlanCreate,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    current_user: User = Depends(get_current_user),
) -> InstallmentPlanOut:
    plan = installments_service.create_plan(
        db,
        processor,
        payload.member_dues_id,
        num_installments=payload.num_installments,
        method_type=payload.method_type,
        payment_method_id=payload.payment_method_id,
        actor=current_user,
    )
    return InstallmentPlanOut.from_orm(plan)


@router.get("/plans/{plan_id}", response_model=InstallmentPlanOut)
def get_plan(
    plan_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> InstallmentPlanOut:
    plan = installments_service.get_plan(db, plan_id)
    dues_service.get_record_for_actor(db, plan.member_dues_id, current_user)
    return InstallmentPlanOut.from_orm(plan)


@router.get("/records/{record_id}/plans", response_model=list[InstallmentPlanOut])
def list_record_plans(
    record_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[InstallmentPlanOut]:
    plans = installments_service.list_plans_for_record(db, record_id, current_user)
    return [InstallmentPlanOut.from_orm(plan) for plan in plans]


@router.post("/plans/{plan_id}/cancel", response_model=InstallmentPlanOut)
def cancel_plan(
    plan_id: int,
    payload: InstallmentPlanCancel,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> InstallmentPlanOut:
    plan = installments_service.cancel_plan(db, plan_id, actor=current_user, reason=payload.reason)
    return InstallmentPlanOut.from_orm(plan)
