from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import BillingError, ValidationError
from app.models.dues import DuesConfiguration, MemberDues
from app.models.member import Member
from app.models.payment_intent import OPEN_INTENT_STATUSES, PaymentIntent
from app.services import ledger, notifications

logger = logging.getLogger(__name__)

LATE_FEE_STATUSES = ("pending", "partial", "overdue")


@dataclass
class AssignmentResult:
    assigned: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class LateFeeResult:
    applied: int = 0
    skipped: int = 0


def rate_for_member(config: DuesConfiguration, member: Member) -> Decimal:
    rates = config.rates or {}
    if member.cohort and member.cohort in rates:
        return ledger.money(rates[member.cohort])
    return ledger.money(config.default_rate)


def assign_to_member(
    db: Session,
    config: DuesConfiguration,
    member: Member,
    base_amount: Decimal,
    *,
    due_date: date | None = None,
    notes: str | None = None,
) -> tuple[MemberDues, bool]:
    """Bill a member under ``config``; an existing record has the amount added to it.

    Returns ``(record, created)``.
    """
    amount = ledger.money(base_amount)
    if amount <= 0:
        raise ValidationError("Assigned amount must be positive")
    if member.chapter_id != config.chapter_id:
        raise ValidationError("Member does not belong to the configuration's chapter")

    record = (
        db.query(MemberDues)
        .filter(MemberDues.member_id == member.id, MemberDues.config_id == config.id)
        .with_for_update()
        .first()
    )
    if record is not None:
        if record.status == "waived":
            raise ValidationError("Dues are waived; un-waive before assigning more")
        record.base_amount = ledger.money(record.base_amount) + amount
        if due_date is not None:
            record.due_date = due_date
        ledger.append_note(record, notes)
        ledger.refresh(record)
        db.add(record)
        db.flush()
        return record, False

    record = MemberDues(
        chapter_id=config.chapter_id,
        member_id=member.id,
        config_id=config.id,
        base_amount=amount,
        late_fee=ledger.ZERO,
        adjustments=ledger.ZERO,
        amount_paid=ledger.ZERO,
        status="pending",
        due_date=due_date or config.due_date,
        notes=notes,
    )
    ledger.refresh(record)
    db.add(record)
    db.flush()
    return record, True


def assign_to_chapter(db: Session, config: DuesConfiguration) -> AssignmentResult:
    result = AssignmentResult()
    members = (
        db.query(Member)
        .filter(Member.chapter_id == config.chapter_id, Member.status == "Active")
        .order_by(Member.last_name.asc(), Member.first_name.asc(), Member.id.asc())
        .all()
    )
    for member in members:
        rate = rate_for_member(config, member)
        if rate <= 0:
            result.skipped += 1
            continue
        try:
            _, created = assign_to_member(db, config, member, rate)
        except BillingError as exc:
            result.errors.append(f"{member.full_name}: {exc.message}")
            continue
        result.assigned += 1
        if not created:
            result.updated += 1
    db.commit()
    logger.info(
        "dues_batch_assigned",
        extra={
            "config_id": config.id,
            "assigned": result.assigned,
            "updated": result.updated,
            "skipped": result.skipped,
            "errors": len(result.errors),
        },
    )
    return result


def late_fee_for(config: DuesConfiguration, record: MemberDues) -> Decimal:
    amount = ledger.money(config.late_fee_amount)
    if config.late_fee_type == "percentage":
        base = ledger.money(record.base_amount)
        fee = (base * amount / 100).quantize(ledger.CENT, rounding=ROUND_HALF_UP)
        cap = (base * settings.LATE_FEE_PERCENT_CAP).quantize(ledger.CENT, rounding=ROUND_HALF_UP)
        return min(fee, cap)
    return min(amount, ledger.money(settings.LATE_FEE_FLAT_CAP))


def apply_late_fees(db: Session, config: DuesConfiguration, *, today: date | None = None) -> LateFeeResult:
    """Charge the configured late fee once on every record past its grace period."""
    if not config.late_fee_enabled:
        raise ValidationError("Late fees are not enabled for this configuration")
    today = today or date.today()
    grace = timedelta(days=config.late_fee_grace_days or 0)
    open_records = db.query(PaymentIntent.member_dues_id).filter(PaymentIntent.status.in_(OPEN_INTENT_STATUSES))

    result = LateFeeResult()
    candidates = (
        db.query(MemberDues)
        .filter(
            MemberDues.config_id == config.id,
            MemberDues.status.in_(LATE_FEE_STATUSES),
            MemberDues.due_date.isnot(None),
            MemberDues.late_fee_applied_date.is_(None),
        )
        .order_by(MemberDues.id.asc())
        .with_for_update()
        .all()
    )
    busy = {row.member_dues_id for row in open_records}
    for record in candidates:
        if record.due_date + grace >= today or ledger.money(record.balance) <= 0:
            continue
        if record.id in busy:
            result.skipped += 1
            continue
        fee = late_fee_for(config, record)
        if fee <= 0:
            result.skipped += 1
            continue
        record.late_fee = ledger.money(record.late_fee) + fee
        record.late_fee_applied_date = today
        record.status = "overdue"
        ledger.refresh(record, today=today)
        db.add(record)
        result.applied += 1
        notifications.notify_late_fee_applied(record, config, fee)
    db.commit()
    return result


def apply_late_fees_for_current(db: Session, *, today: date | None = None) -> dict[int, LateFeeResult]:
    configs = (
        db.query(DuesConfiguration)
        .filter(DuesConfiguration.is_current.is_(True), DuesConfiguration.late_fee_enabled.is_(True))
        .all()
    )
    return {config.id: apply_late_fees(db, config, today=today) for config in configs}
