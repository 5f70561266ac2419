from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, ValidationError
from app.models.dues import MemberDues
from app.services import ledger


def _record(**fields) -> MemberDues:
    values = {
        "base_amount": Decimal("0"),
        "late_fee": Decimal("0"),
        "adjustments": Decimal("0"),
        "amount_paid": Decimal("0"),
        "status": "pending",
    }
    values.update(fields)
    return MemberDues(**values)


def test_recompute_totals_and_pending_status() -> None:
    record = _record(base_amount=Decimal("200.00"), adjustments=Decimal("-50.00"))

    totals = ledger.recompute(record)

    assert totals.total_amount == Decimal("150.00")
    assert totals.balance == Decimal("150.00")
    assert totals.status == "pending"


def test_recompute_partial_and_paid() -> None:
    record = _record(base_amount=Decimal("100.00"), amount_paid=Decimal("40.00"))
    assert ledger.recompute(record).status == "partial"

    record.amount_paid = Decimal("100.00")
    totals = ledger.recompute(record)
    assert totals.status == "paid"
    assert totals.balance == Decimal("0.00")


def test_balance_never_negative() -> None:
    record = _record(base_amount=Decimal("100.00"), amount_paid=Decimal("120.00"))

    assert ledger.recompute(record).balance == Decimal("0.00")


def test_overdue_kept_until_something_is_paid() -> None:
    record = _record(base_amount=Decimal("100.00"), late_fee=Decimal("25.00"), status="overdue")
    assert ledger.recompute(record).status == "overdue"

    record.amount_paid = Decimal("10.00")
    assert ledger.recompute(record).status == "partial"


def test_waived_record_stays_waived() -> None:
    record = _record(base_amount=Decimal("100.00"), status="waived")

    totals = ledger.recompute(record)

    assert totals.status == "waived"
    assert totals.balance == Decimal("0.00")


def test_apply_payment_clamps_to_balance() -> None:
    record = _record(base_amount=Decimal("100.00"))
    ledger.refresh(record)

    applied = ledger.apply_payment(record, Decimal("150.00"), today=date(2026, 9, 1))

    assert applied == Decimal("100.00")
    assert record.amount_paid == Decimal("100.00")
    assert record.status == "paid"
    assert record.paid_date == date(2026, 9, 1)


@pytest.mark.parametrize("amount", ["0", "-5.00"])
def test_apply_payment_rejects_non_positive(amount: str) -> None:
    record = _record(base_amount=Decimal("100.00"))

    with pytest.raises(ValidationError):
        ledger.apply_payment(record, Decimal(amount))


def test_waive_partially_paid_record_forgives_remainder() -> None:
    record = _record(base_amount=Decimal("100.00"), amount_paid=Decimal("30.00"))
    ledger.refresh(record)

    ledger.waive(record, "hardship", actor_id=7)

    assert record.status == "waived"
    assert record.balance == Decimal("0.00")
    assert record.amount_paid == Decimal("30.00")
    assert record.waived_by_id == 7
    assert "Waived: hardship" in record.notes


def test_waive_refused_for_fully_paid_record() -> None:
    record = _record(base_amount=Decimal("100.00"), amount_paid=Decimal("100.00"))
    ledger.refresh(record)

    with pytest.raises(ConflictError):
        ledger.waive(record, None)


def test_unwaive_restores_derived_state() -> None:
    record = _record(base_amount=Decimal("100.00"), amount_paid=Decimal("30.00"))
    ledger.waive(record, None)

    ledger.unwaive(record, "granted in error")

    assert record.status == "partial"
    assert record.balance == Decimal("70.00")


def test_overdue_status_ignores_paid_and_waived() -> None:
    record = _record(base_amount=Decimal("100.00"), due_date=date(2026, 9, 1))
    ledger.refresh(record)
    assert ledger.overdue_status(record, today=date(2026, 9, 11)) == (True, 10)
    assert ledger.overdue_status(record, today=date(2026, 8, 30)) == (False, 0)

    record.status = "waived"
    assert ledger.overdue_status(record, today=date(2026, 9, 11)) == (False, 0)


def test_record_payment_persists_and_rejects_duplicate_reference(db_session: Session, sample_record) -> None:
    record = ledger.get_record(db_session, sample_record.id, lock=True)

    payment = ledger.record_payment(
        db_session,
        record,
        Decimal("200.00"),
        method="Cash",
        payment_date=date(2026, 9, 1),
        reference_number="RCPT-1",
    )
    db_session.commit()

    assert payment.id is not None
    assert record.amount_paid == Decimal("200.00")
    assert record.balance == Decimal("300.00")
    assert record.status == "partial"

    with pytest.raises(ConflictError):
        ledger.record_payment(db_session, record, Decimal("10.00"), reference_number="RCPT-1")


def test_record_payment_rejects_overpayment_unless_allowed(db_session: Session, sample_record) -> None:
    record = ledger.get_record(db_session, sample_record.id)

    with pytest.raises(ValidationError):
        ledger.record_payment(db_session, record, Decimal("600.00"))

    payment = ledger.record_payment(db_session, record, Decimal("600.00"), allow_overpayment=True)
    assert payment.amount == Decimal("500.00")
    assert record.status == "paid"


def test_delete_payment_rederives_status(db_session: Session, sample_record) -> None:
    record = ledger.get_record(db_session, sample_record.id)
    first = ledger.record_payment(db_session, record, Decimal("300.00"), reference_number="A")
    ledger.record_payment(db_session, record, Decimal("200.00"), reference_number="B")
    db_session.commit()
    assert record.status == "paid"

    updated = ledger.delete_payment(db_session, first.id)
    db_session.commit()

    assert updated.amount_paid == Decimal("200.00")
    assert updated.balance == Decimal("300.00")
    assert updated.status == "partial"
    assert updated.paid_date is None


def test_adjustment_requires_reason(db_session: Session, sample_record) -> None:
    record = ledger.get_record(db_session, sample_record.id)

    with pytest.raises(ValidationError):
        ledger.apply_adjustment(db_session, record, Decimal("-50.00"), "  ")

    ledger.apply_adjustment(db_session, record, Decimal("-50.00"), "scholarship")
    assert record.total_amount == Decimal("450.00")
    assert record.balance == Decimal("450.00")
