from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session, selectinload

from app.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models.dues import DuesConfiguration, MemberDues
from app.models.member import Chapter, Member
from app.models.user import User
from app.schemas.dues import (
    DuesConfigurationCreate,
    DuesPaymentOut,
    DuesRecordListResponse,
    DuesSummaryOut,
    MemberDuesOut,
)
from app.services import installments as installments_service
from app.services import ledger
from app.services import payment_intents as payment_intents_service
from app.services.processor import PaymentProcessor


def ensure_chapter_admin(actor: User, chapter_id: int) -> None:
    if not actor.is_chapter_admin(chapter_id):
        raise AuthorizationError("Chapter admin privileges required")


def get_configuration(db: Session, config_id: int) -> DuesConfiguration:
    config = db.get(DuesConfiguration, config_id)
    if config is None:
        raise NotFoundError("Dues configuration not found")
    return config


def list_configurations(db: Session, chapter_id: int) -> list[DuesConfiguration]:
    return (
        db.query(DuesConfiguration)
        .filter(DuesConfiguration.chapter_id == chapter_id)
        .order_by(DuesConfiguration.fiscal_year.desc(), DuesConfiguration.id.desc())
        .all()
    )


def _mark_current(db: Session, config: DuesConfiguration) -> None:
    (
        db.query(DuesConfiguration)
        .filter(DuesConfiguration.chapter_id == config.chapter_id, DuesConfiguration.id != config.id)
        .update({DuesConfiguration.is_current: False}, synchronize_session="fetch")
    )
    config.is_current = True


def create_configuration(db: Session, payload: DuesConfigurationCreate, actor: User) -> DuesConfiguration:
    ensure_chapter_admin(actor, payload.chapter_id)
    if db.get(Chapter, payload.chapter_id) is None:
        raise NotFoundError("Chapter not found")
    if payload.period_start_date and payload.period_end_date and payload.period_end_date < payload.period_start_date:
        raise ValidationError("Period end date must be on or after the start date")

    data = payload.model_dump(exclude={"rates", "is_current"})
    config = DuesConfiguration(**data)
    # JSON column; amounts are stored as strings to keep cents exact.
    config.rates = {cohort: str(ledger.money(amount)) for cohort, amount in (payload.rates or {}).items()}
    config.is_current = False
    db.add(config)
    db.flush()
    if payload.is_current:
        _mark_current(db, config)
    db.commit()
    db.refresh(config)
    return config


def set_current_configuration(db: Session, config_id: int, actor: User) -> DuesConfiguration:
    config = get_configuration(db, config_id)
    ensure_chapter_admin(actor, config.chapter_id)
    _mark_current(db, config)
    db.commit()
    db.refresh(config)
    return config


def get_member(db: Session, member_id: int) -> Member:
    member = db.get(Member, member_id)
    if member is None:
        raise NotFoundError("Member not found")
    return member


def get_record_for_actor(db: Session, record_id: int, actor: User) -> MemberDues:
    record = ledger.get_record(db, record_id)
    payment_intents_service.ensure_can_act(actor, record)
    return record


def waive_record(
    db: Session,
    processor: PaymentProcessor,
    record_id: int,
    actor: User,
    note: Optional[str] = None,
) -> MemberDues:
    """Waive a record and cancel any authorization that could still settle against it."""
    record = ledger.get_record(db, record_id, lock=True)
    ensure_chapter_admin(actor, record.chapter_id)
    open_intent = payment_intents_service.get_open_intent(db, record.id)
    if open_intent is not None and open_intent.status == "processing":
        raise ConflictError("A payment is processing for these dues; wait for it to settle before waiving")
    ledger.waive(record, note, actor_id=actor.id)
    if open_intent is not None:
        payment_intents_service.cancel_open_pending(db, processor, record, reason="dues waived")
    installments_service.close_settled_plan(db, record)
    db.commit()
    db.refresh(record)
    return record


def build_summary(record: MemberDues, *, today: Optional[date] = None) -> DuesSummaryOut:
    summary = ledger.summarize(record, today=today)
    return DuesSummaryOut(
        record=MemberDuesOut.from_orm(record),
        is_overdue=summary.is_overdue,
        days_overdue=summary.days_overdue,
        payments=[DuesPaymentOut.from_orm(payment) for payment in record.payments],
    )


def _records_query(db: Session, chapter_id: int, config_id: Optional[int], status_filter: Optional[str]):
    query = (
        db.query(MemberDues)
        .options(selectinload(MemberDues.member))
        .filter(MemberDues.chapter_id == chapter_id)
    )
    if config_id is not None:
        query = query.filter(MemberDues.config_id == config_id)
    if status_filter:
        query = query.filter(MemberDues.status == status_filter)
    return query


def list_records(
    db: Session,
    *,
    chapter_id: int,
    config_id: Optional[int] = None,
    status_filter: Optional[str] = None,
    page: int = 1,
    page_size: int = 25,
) -> DuesRecordListResponse:
    query = _records_query(db, chapter_id, config_id, status_filter)
    total = query.count()
    records = (
        query.order_by(MemberDues.id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return DuesRecordListResponse(
        items=[MemberDuesOut.from_orm(record) for record in records],
        total=total,
        page=page,
        page_size=page_size,
    )


def get_records_for_export(
    db: Session,
    *,
    chapter_id: int,
    config_id: Optional[int] = None,
    status_filter: Optional[str] = None,
) -> list[MemberDues]:
    return _records_query(db, chapter_id, config_id, status_filter).order_by(MemberDues.id.asc()).all()
