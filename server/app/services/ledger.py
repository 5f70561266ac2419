from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.dues import DuesPayment, MemberDues
from app.services import notifications

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass
class LedgerTotals:
    total_amount: Decimal
    balance: Decimal
    status: str


@dataclass
class DuesSummaryData:
    total_amount: Decimal
    amount_paid: Decimal
    balance: Decimal
    status: str
    is_overdue: bool
    days_overdue: int


def money(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return ZERO
    try:
        return Decimal(str(value)).quantize(CENT)
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"Invalid monetary amount: {value!r}") from exc


def recompute(record: MemberDues) -> LedgerTotals:
    """Derive total, balance and status from the stored components."""
    total = money(record.base_amount) + money(record.late_fee) + money(record.adjustments)
    paid = money(record.amount_paid)
    if record.status == "waived":
        return LedgerTotals(total_amount=total, balance=ZERO, status="waived")

    balance = max(total - paid, ZERO)
    if balance <= 0:
        status = "paid"
    elif paid > 0:
        status = "partial"
    elif record.status == "overdue":
        status = "overdue"
    else:
        status = "pending"
    return LedgerTotals(total_amount=total, balance=balance, status=status)


def refresh(record: MemberDues, *, today: date | None = None) -> MemberDues:
    totals = recompute(record)
    record.total_amount = totals.total_amount
    record.balance = totals.balance
    record.status = totals.status
    if totals.status == "paid":
        if record.paid_date is None:
            record.paid_date = today or date.today()
    elif totals.status != "waived":
        record.paid_date = None
    return record


def overdue_status(record: MemberDues, *, today: date | None = None) -> tuple[bool, int]:
    """Return ``(is_overdue, days_overdue)``; waived and paid records are never overdue."""
    if record.status in ("waived", "paid") or record.due_date is None:
        return False, 0
    if money(record.balance) <= 0:
        return False, 0
    days = ((today or date.today()) - record.due_date).days
    if days <= 0:
        return False, 0
    return True, days


def append_note(record: MemberDues, note: str | None) -> None:
    if not note:
        return
    record.notes = f"{record.notes or ''}\n{note}".strip()


def apply_payment(record: MemberDues, amount: Decimal, *, today: date | None = None) -> Decimal:
    """Add a settled amount to the record, clamped to the outstanding balance.

    Returns the amount actually applied.
    """
    value = money(amount)
    if value <= 0:
        raise ValidationError("Payment amount must be positive")
    balance = recompute(record).balance
    applied = min(value, balance)
    record.amount_paid = money(record.amount_paid) + applied
    refresh(record, today=today)
    return applied


def waive(record: MemberDues, note: str | None, *, actor_id: int | None = None) -> MemberDues:
    """Forgive the outstanding balance.

    A record that has been fully settled through real payments cannot be waived,
    since waiving is meant to zero out what is still owed, not to erase income.
    """
    if record.status == "waived":
        raise ConflictError("Dues are already waived")
    totals = recompute(record)
    if money(record.amount_paid) > 0 and totals.balance <= 0:
        raise ConflictError("Dues are fully paid and cannot be waived")
    record.status = "waived"
    record.total_amount = totals.total_amount
    record.balance = ZERO
    record.waived_at = datetime.utcnow()
    record.waived_by_id = actor_id
    append_note(record, f"Waived: {note}" if note else "Waived")
    return record


def unwaive(record: MemberDues, note: str | None, *, today: date | None = None) -> MemberDues:
    if record.status != "waived":
        raise ConflictError("Dues are not waived")
    record.status = "pending"
    record.waived_at = None
    record.waived_by_id = None
    append_note(record, f"Waiver removed: {note}" if note else "Waiver removed")
    return refresh(record, today=today)


def summarize(record: MemberDues, *, today: date | None = None) -> DuesSummaryData:
    is_overdue, days_overdue = overdue_status(record, today=today)
    return DuesSummaryData(
        total_amount=money(record.total_amount),
        amount_paid=money(record.amount_paid),
        balance=money(record.balance),
        status=record.status,
        is_overdue=is_overdue,
        days_overdue=days_overdue,
    )


def get_record(db: Session, record_id: int, *, lock: bool = False) -> MemberDues:
    query = db.query(MemberDues).filter(MemberDues.id == record_id)
    if lock:
        query = query.with_for_update()
    record = query.first()
    if record is None:
        raise NotFoundError("Member dues record not found")
    return record


def record_payment(
    db: Session,
    record: MemberDues,
    amount: Decimal,
    *,
    method: str | None = None,
    payment_date: date | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    recorded_by_id: int | None = None,
    allow_overpayment: bool = False,
) -> DuesPayment:
    """Persist a settled payment and apply it to the ledger.

    ``reference_number`` is unique; a second application of the same reference
    is rejected rather than re-applied.
    """
    value = money(amount)
    if value <= 0:
        raise ValidationError("Payment amount must be positive")
    if record.status == "waived":
        raise ConflictError("Dues are waived; un-waive before recording payments")
    if not allow_overpayment and value > recompute(record).balance:
        raise ValidationError("Payment amount exceeds the outstanding balance")
    if reference_number:
        duplicate = db.query(DuesPayment.id).filter(DuesPayment.reference_number == reference_number).first()
        if duplicate:
            raise ConflictError("Payment reference has already been applied")

    today = payment_date or date.today()
    applied = apply_payment(record, value, today=today)
    if applied < value:
        notifications.notify_overpayment_clamped(record, requested=value, applied=applied)
    payment = DuesPayment(
        member_dues_id=record.id,
        amount=applied,
        method=method,
        payment_date=today,
        reference_number=reference_number,
        notes=notes,
        recorded_by_id=recorded_by_id,
    )
    db.add(payment)
    db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError("Payment reference has already been applied") from exc
    notifications.notify_payment_recorded(record, payment)
    return payment


def rederive_amount_paid(db: Session, record: MemberDues) -> MemberDues:
    total_paid = (
        db.query(func.coalesce(func.sum(DuesPayment.amount), 0))
        .filter(DuesPayment.member_dues_id == record.id)
        .scalar()
    )
    record.amount_paid = money(total_paid)
    return refresh(record)


def get_payment(db: Session, payment_id: int) -> DuesPayment:
    payment = db.get(DuesPayment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def delete_payment(db: Session, payment_id: int) -> MemberDues:
    """Remove a recorded payment and re-derive the record from what remains."""
    payment = get_payment(db, payment_id)
    record = get_record(db, payment.member_dues_id, lock=True)
    db.delete(payment)
    db.flush()
    rederive_amount_paid(db, record)
    db.add(record)
    db.flush()
    notifications.notify_payment_deleted(record, payment_id)
    return record


def apply_adjustment(db: Session, record: MemberDues, amount: Decimal, reason: str | None) -> MemberDues:
    if not reason or not reason.strip():
        raise ValidationError("An adjustment requires a description")
    value = money(amount)
    if value == 0:
        raise ValidationError("Adjustment amount must be non-zero")
    record.adjustments = money(record.adjustments) + value
    append_note(record, f"Adjustment {value:+.2f}: {reason.strip()}")
    refresh(record)
    db.add(record)
    db.flush()
    return record
