from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AuthorizationError,
    BillingError,
    ConflictError,
    NotFoundError,
    ProcessorError,
    ValidationError,
)
from app.models.dues import MemberDues
from app.models.installment import InstallmentEligibility, InstallmentPayment, InstallmentPlan
from app.models.member import Member
from app.models.user import User
from app.services import ledger, notifications
from app.services import payment_intents as payment_intents_service
from app.services.fees import normalize_method_type
from app.services.processor import PaymentProcessor

logger = logging.getLogger(__name__)

MAX_INSTALLMENTS = 12


@dataclass
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None
    deadline: Optional[date] = None
    days_remaining: Optional[int] = None
    allowed_plans: list[int] = field(default_factory=list)


def calculate_installments(total: Decimal, num_installments: int) -> list[Decimal]:
    """Split ``total`` into equal cent amounts; the leftover cents go on the first one."""
    if num_installments < 1:
        raise ValidationError("Number of installments must be at least 1")
    amount = ledger.money(total)
    if amount <= 0:
        raise ValidationError("Installment total must be positive")
    base = (amount * 100 / num_installments).to_integral_value(rounding=ROUND_FLOOR) / 100
    base = base.quantize(ledger.CENT)
    remainder = (amount - base * num_installments).quantize(ledger.CENT)
    amounts = [base] * num_installments
    amounts[0] = base + remainder
    return amounts


def generate_schedule(start: date, num_installments: int, deadline: date | None = None) -> list[date]:
    """Spread installment dates from ``start`` so the last one lands on ``deadline``."""
    if num_installments < 1:
        raise ValidationError("Number of installments must be at least 1")
    if deadline is None:
        spacing = settings.INSTALLMENT_FALLBACK_SPACING_DAYS
        return [start + timedelta(days=i * spacing) for i in range(num_installments)]
    if deadline < start:
        raise ValidationError("Deadline is before the first installment date")
    if num_installments == 1:
        return [deadline]

    total_days = Decimal((deadline - start).days)
    interval = total_days / (num_installments - 1)
    dates = []
    for i in range(num_installments - 1):
        offset = int((interval * i).to_integral_value(rounding=ROUND_HALF_UP))
        dates.append(start + timedelta(days=offset))
    dates.append(deadline)
    return dates


def resolve_deadline(record: MemberDues) -> date | None:
    if record.flexible_plan_deadline:
        return record.flexible_plan_deadline
    config = record.configuration
    if config is not None and config.period_end_date:
        return config.period_end_date
    return record.due_date


def _grant_for(db: Session, record: MemberDues) -> InstallmentEligibility | None:
    grant = db.query(InstallmentEligibility).filter(InstallmentEligibility.member_dues_id == record.id).first()
    if grant is None:
        grant = db.query(InstallmentEligibility).filter(InstallmentEligibility.member_id == record.member_id).first()
    return grant


def check_eligibility(db: Session, record: MemberDues, *, today: date | None = None) -> EligibilityResult:
    grant = _grant_for(db, record)
    if grant is None or not grant.is_eligible:
        return EligibilityResult(eligible=False, reason="Installment plans are not enabled for these dues")
    allowed = sorted(set(grant.allowed_plans or settings.DEFAULT_ALLOWED_PLANS))
    deadline = resolve_deadline(record)
    if deadline is None:
        return EligibilityResult(eligible=False, reason="No deadline is set for this dues period", allowed_plans=allowed)
    days_remaining = (deadline - (today or date.today())).days
    if days_remaining <= 0:
        return EligibilityResult(
            eligible=False,
            reason="The installment deadline has passed",
            deadline=deadline,
            days_remaining=days_remaining,
            allowed_plans=allowed,
        )
    return EligibilityResult(eligible=True, deadline=deadline, days_remaining=days_remaining, allowed_plans=allowed)


def _validate_allowed_plans(allowed_plans: list[int] | None) -> list[int]:
    if not allowed_plans:
        return list(settings.DEFAULT_ALLOWED_PLANS)
    cleaned = sorted(set(allowed_plans))
    if any(n < 2 or n > MAX_INSTALLMENTS for n in cleaned):
        raise ValidationError(f"Installment counts must be between 2 and {MAX_INSTALLMENTS}")
    return cleaned


def set_eligibility(
    db: Session,
    *,
    actor: User,
    member_dues_id: int | None = None,
    member_id: int | None = None,
    is_eligible: bool = True,
    allowed_plans: list[int] | None = None,
    notes: str | None = None,
) -> InstallmentEligibility:
    if (member_dues_id is None) == (member_id is None):
        raise ValidationError("Provide exactly one of member_dues_id or member_id")
    if member_dues_id is not None:
        chapter_id = ledger.get_record(db, member_dues_id).chapter_id
        grant = db.query(InstallmentEligibility).filter(InstallmentEligibility.member_dues_id == member_dues_id).first()
    else:
        member = db.get(Member, member_id)
        if member is None:
            raise NotFoundError("Member not found")
        chapter_id = member.chapter_id
        grant = db.query(InstallmentEligibility).filter(InstallmentEligibility.member_id == member_id).first()
    if not actor.is_chapter_admin(chapter_id):
        raise AuthorizationError("Only chapter admins can manage installment eligibility")

    plans = _validate_allowed_plans(allowed_plans)
    if grant is None:
        grant = InstallmentEligibility(chapter_id=chapter_id, member_dues_id=member_dues_id, member_id=member_id)
        db.add(grant)
    grant.is_eligible = is_eligible
    grant.allowed_plans = plans
    grant.notes = notes
    grant.enabled_by_id = actor.id
    grant.enabled_at = datetime.utcnow() if is_eligible else None
    db.commit()
    db.refresh(grant)
    return grant


def get_active_plan(db: Session, record_id: int) -> InstallmentPlan | None:
    return (
        db.query(InstallmentPlan)
        .filter(InstallmentPlan.member_dues_id == record_id, InstallmentPlan.status == "active")
        .first()
    )


def get_plan(db: Session, plan_id: int) -> InstallmentPlan:
    plan = db.get(InstallmentPlan, plan_id)
    if plan is None:
        raise NotFoundError("Installment plan not found")
    return plan


def _next_open_date(plan: InstallmentPlan) -> date | None:
    upcoming = [p.next_retry_at or p.scheduled_date for p in plan.payments if p.status in ("scheduled", "failed")]
    return min(upcoming) if upcoming else None


def create_plan(
    db: Session,
    processor: PaymentProcessor,
    record_id: int,
    *,
    num_installments: int,
    method_type: str,
    actor: User,
    payment_method_id: str | None = None,
    today: date | None = None,
) -> InstallmentPlan:
    """Split the outstanding balance and charge the first installment right away."""
    method = normalize_method_type(method_type)
    today = today or date.today()
    record = ledger.get_record(db, record_id, lock=True)
    payment_intents_service.ensure_can_act(actor, record)

    if get_active_plan(db, record.id) is not None:
        raise ConflictError("An active installment plan already exists for these dues")
    eligibility = check_eligibility(db, record, today=today)
    if not eligibility.eligible:
        raise ValidationError(eligibility.reason or "Installment plans are not available")
    if num_installments not in eligibility.allowed_plans:
        raise ValidationError(
            f"{num_installments} installments is not allowed; choose one of {eligibility.allowed_plans}"
        )
    balance = ledger.recompute(record).balance
    if record.status == "waived" or balance <= 0:
        raise ConflictError("No outstanding balance to pay")

    if payment_intents_service.cancel_open_pending(db, processor, record, reason="replaced by installment plan"):
        db.commit()
        record = ledger.get_record(db, record_id, lock=True)

    amounts = calculate_installments(balance, num_installments)
    dates = generate_schedule(today, num_installments, eligibility.deadline)
    plan = InstallmentPlan(
        chapter_id=record.chapter_id,
        member_dues_id=record.id,
        member_id=record.member_id,
        num_installments=num_installments,
        total_amount=balance,
        method_type=method,
        processor_payment_method_id=payment_method_id,
        next_payment_date=dates[0],
        status="active",
        created_by_id=actor.id,
    )
    plan.payments = [
        InstallmentPayment(installment_number=i + 1, amount=amount, scheduled_date=scheduled, status="scheduled")
        for i, (amount, scheduled) in enumerate(zip(amounts, dates))
    ]
    plan.payments[0].status = "processing"
    db.add(plan)
    db.commit()

    first = plan.payments[0]
    plan_id = plan.id
    try:
        payment_intents_service.create_or_reuse_authorization(
            db,
            processor,
            record.id,
            method_type=method,
            requested_amount=first.amount,
            actor=actor,
            installment=first,
            payment_method_id=payment_method_id,
            confirm=payment_method_id is not None,
            today=today,
        )
    except BillingError:
        db.rollback()
        orphan = db.get(InstallmentPlan, plan_id)
        if orphan is not None and orphan.status == "active":
            opening = orphan.payments[0]
            if opening.status == "processing":
                opening.status = "cancelled"
            _cancel(orphan, "first installment could not be charged")
            db.commit()
            notifications.notify_plan_cancelled(orphan)
        raise

    db.refresh(plan)
    if plan.status == "active":
        plan.next_payment_date = _next_open_date(plan)
        db.commit()
    notifications.notify_plan_created(plan)
    return plan


def _cancel(plan: InstallmentPlan, reason: str | None) -> None:
    plan.status = "cancelled"
    plan.cancel_reason = (reason or "Cancelled")[:255]
    plan.cancelled_at = datetime.utcnow()
    plan.next_payment_date = None
    for payment in plan.payments:
        if payment.status in ("scheduled", "failed"):
            payment.status = "cancelled"
            payment.next_retry_at = None


def cancel_plan(db: Session, plan_id: int, *, actor: User, reason: str | None = None) -> InstallmentPlan:
    plan = get_plan(db, plan_id)
    record = ledger.get_record(db, plan.member_dues_id, lock=True)
    payment_intents_service.ensure_can_act(actor, record)
    if plan.status != "active":
        raise ConflictError("Only active installment plans can be cancelled")
    _cancel(plan, reason)
    db.commit()
    notifications.notify_plan_cancelled(plan)
    return plan


def close_settled_plan(db: Session, record: MemberDues) -> InstallmentPlan | None:
    """Close the active plan once its record is waived or owes nothing more."""
    plan = get_active_plan(db, record.id)
    if plan is None or plan.status != "active":
        return None
    if record.status == "waived":
        _cancel(plan, "dues waived")
        db.add(plan)
        notifications.notify_plan_cancelled(plan)
        return plan
    if ledger.recompute(record).balance > 0:
        return None
    for payment in plan.payments:
        if payment.status in ("scheduled", "failed"):
            payment.status = "cancelled"
            payment.next_retry_at = None
    plan.status = "completed"
    plan.completed_at = datetime.utcnow()
    plan.next_payment_date = None
    db.add(plan)
    return plan


def on_installment_settled(db: Session, installment: InstallmentPayment, *, today: date | None = None) -> None:
    installment.status = "paid"
    installment.paid_at = datetime.utcnow()
    installment.failure_reason = None
    installment.next_retry_at = None
    db.add(installment)
    plan = installment.plan
    if plan.status != "active":
        return
    if all(p.status == "paid" for p in plan.payments):
        plan.status = "completed"
        plan.completed_at = datetime.utcnow()
        plan.next_payment_date = None
    else:
        plan.next_payment_date = _next_open_date(plan)
    db.add(plan)


def on_installment_failed(
    db: Session,
    installment: InstallmentPayment,
    reason: str | None,
    *,
    today: date | None = None,
) -> None:
    installment.status = "failed"
    installment.failure_reason = (reason or "Payment failed")[:255]
    installment.retry_count = (installment.retry_count or 0) + 1
    if installment.retry_count < settings.INSTALLMENT_MAX_RETRIES:
        installment.next_retry_at = (today or date.today()) + timedelta(days=settings.INSTALLMENT_RETRY_DAYS)
    else:
        installment.next_retry_at = None
    db.add(installment)
    plan = installment.plan
    if plan is not None and plan.status == "active":
        plan.next_payment_date = _next_open_date(plan)
        db.add(plan)
    notifications.notify_installment_failed(installment)


def due_installments(db: Session, *, today: date | None = None) -> list[InstallmentPayment]:
    today = today or date.today()
    return (
        db.query(InstallmentPayment)
        .join(InstallmentPlan, InstallmentPlan.id == InstallmentPayment.plan_id)
        .filter(InstallmentPlan.status == "active")
        .filter(
            or_(
                and_(InstallmentPayment.status == "scheduled", InstallmentPayment.scheduled_date <= today),
                and_(
                    InstallmentPayment.status == "failed",
                    InstallmentPayment.retry_count < settings.INSTALLMENT_MAX_RETRIES,
                    InstallmentPayment.next_retry_at.isnot(None),
                    InstallmentPayment.next_retry_at <= today,
                ),
            )
        )
        .order_by(InstallmentPayment.scheduled_date.asc(), InstallmentPayment.id.asc())
        .all()
    )


def process_due_installments(db: Session, processor: PaymentProcessor, *, today: date | None = None) -> dict[str, int]:
    """Charge every installment that is due today, including failed ones awaiting retry."""
    today = today or date.today()
    counts = {"charged": 0, "failed": 0, "skipped": 0, "errors": 0}
    for installment in due_installments(db, today=today):
        plan = installment.plan
        if plan.status != "active":
            continue
        if close_settled_plan(db, ledger.get_record(db, plan.member_dues_id)) is not None:
            db.commit()
            counts["skipped"] += 1
            continue
        previous_status = installment.status
        installment.status = "processing"
        db.flush()
        try:
            payment_intents_service.create_or_reuse_authorization(
                db,
                processor,
                plan.member_dues_id,
                method_type=plan.method_type,
                requested_amount=installment.amount,
                installment=installment,
                payment_method_id=plan.processor_payment_method_id,
                confirm=True,
                today=today,
            )
            counts["charged"] += 1
        except ProcessorError as exc:
            db.rollback()
            on_installment_failed(db, installment, exc.message, today=today)
            db.commit()
            counts["failed"] += 1
        except ConflictError as exc:
            db.rollback()
            installment.status = previous_status
            db.commit()
            logger.info(
                "installment_charge_skipped",
                extra={"installment_payment_id": installment.id, "reason": exc.message},
            )
            counts["skipped"] += 1
        except BillingError as exc:
            db.rollback()
            installment.status = previous_status
            db.commit()
            logger.error(
                "installment_charge_error",
                extra={"installment_payment_id": installment.id, "code": exc.code, "reason": exc.message},
            )
            counts["errors"] += 1
    return counts


def list_plans_for_record(db: Session, record_id: int, actor: User) -> list[InstallmentPlan]:
    record = ledger.get_record(db, record_id)
    payment_intents_service.ensure_can_act(actor, record)
    return (
        db.query(InstallmentPlan)
        .filter(InstallmentPlan.member_dues_id == record.id)
        .order_by(InstallmentPlan.created_at.desc(), InstallmentPlan.id.desc())
        .all()
    )
