from __future__ import annotations

import csv
import io
from datetime import date
from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth.deps import chapter_scope, get_current_user, require_chapter_admin
from app.core.db import get_db
from app.models.dues import MemberDues
from app.models.user import User
from app.schemas.dues import (
    BatchAssignResponse,
    DuesAdjustmentCreate,
    DuesAssignmentCreate,
    DuesConfigurationCreate,
    DuesConfigurationOut,
    DuesPaymentCreate,
    DuesPaymentOut,
    DuesRecordListResponse,
    DuesSummaryOut,
    DuesWaiveRequest,
    LateFeeRunResponse,
    MemberDuesOut,
)
from app.services import dues as dues_service
from app.services import dues_batch, ledger
from app.services import installments as installments_service
from app.services.processor import PaymentProcessor, get_processor

router = APIRouter(prefix="/dues", tags=["dues"])

DUES_EXPORT_HEADERS = [
    "record_id",
    "member_id",
    "member_first_name",
    "member_last_name",
    "member_email",
    "cohort",
    "config_id",
    "base_amount",
    "late_fee",
    "adjustments",
    "total_amount",
    "amount_paid",
    "balance",
    "status",
    "due_date",
    "paid_date",
]


def _format_amount(value) -> str:
    return f"{value:.2f}" if value is not None else ""


def _format_date(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def _format_record_row(record: MemberDues) -> list[str]:
    member = record.member
    return [
        str(record.id),
        str(record.member_id),
        member.first_name if member else "",
        member.last_name if member else "",
        member.email if member and member.email else "",
        member.cohort if member and member.cohort else "",
        str(record.config_id),
        _format_amount(record.base_amount),
        _format_amount(record.late_fee),
        _format_amount(record.adjustments),
        _format_amount(record.total_amount),
        _format_amount(record.amount_paid),
        _format_amount(record.balance),
        record.status,
        _format_date(record.due_date),
        _format_date(record.paid_date),
    ]


def _stream_csv(rows: Iterable[list[str]]) -> Iterable[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(DUES_EXPORT_HEADERS)
    yield buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)
    for row in rows:
        writer.writerow(row)
        yield buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)


@router.get("/configurations", response_model=list[DuesConfigurationOut], status_code=status.HTTP_200_OK)
def list_configurations(
    chapter_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> list[DuesConfigurationOut]:
    scope = chapter_scope(chapter_id, current_user)
    return [DuesConfigurationOut.from_orm(config) for config in dues_service.list_configurations(db, scope)]


@router.post("/configurations", response_model=DuesConfigurationOut, status_code=status.HTTP_201_CREATED)
def create_configuration(
    payload: DuesConfigurationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> DuesConfigurationOut:
    config = dues_service.create_configuration(db, payload, current_user)
    return DuesConfigurationOut.from_orm(config)


@router.post("/configurations/{config_id}/current", response_model=DuesConfigurationOut)
def mark_configuration_current(
    config_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> DuesConfigurationOut:
    config = dues_service.set_current_configuration(db, config_id, current_user)
    return DuesConfigurationOut.from_orm(config)


@router.post("/configurations/{config_id}/assign", response_model=BatchAssignResponse)
def assign_configuration(
    config_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> BatchAssignResponse:
    config = dues_service.get_configuration(db, config_id)
    dues_service.ensure_chapter_admin(current_user, config.chapter_id)
    result = dues_batch.assign_to_chapter(db, config)
    return BatchAssignResponse(
        assigned=result.assigned,
        updated=result.updated,
        skipped=result.skipped,
        errors=result.errors,
    )


@router.post("/configurations/{config_id}/late-fees", response_model=LateFeeRunResponse)
def run_late_fees(
    config_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> LateFeeRunResponse:
    config = dues_service.get_configuration(db, config_id)
    dues_service.ensure_chapter_admin(current_user, config.chapter_id)
    result = dues_batch.apply_late_fees(db, config)
    return LateFeeRunResponse(applied=result.applied, skipped=result.skipped)


@router.post("/assignments", response_model=MemberDuesOut, status_code=status.HTTP_201_CREATED)
def assign_member(
    payload: DuesAssignmentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> MemberDuesOut:
    config = dues_service.get_configuration(db, payload.config_id)
    dues_service.ensure_chapter_admin(current_user, config.chapter_id)
    member = dues_service.get_member(db, payload.member_id)
    record, _ = dues_batch.assign_to_member(
        db,
        config,
        member,
        payload.base_amount,
        due_date=payload.due_date,
        notes=payload.notes,
    )
    db.commit()
    db.refresh(record)
    return MemberDuesOut.from_orm(record)


@router.get("/records", response_model=DuesRecordListResponse)
def list_records(
    *,
    chapter_id: Optional[int] = Query(default=None),
    config_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> DuesRecordListResponse:
    scope = chapter_scope(chapter_id, current_user)
    return dues_service.list_records(
        db,
        chapter_id=scope,
        config_id=config_id,
        status_filter=status_filter,
        page=page,
        page_size=page_size,
    )


@router.get("/export.csv", status_code=status.HTTP_200_OK)
def export_records(
    *,
    chapter_id: Optional[int] = Query(default=None),
    config_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> StreamingResponse:
    scope = chapter_scope(chapter_id, current_user)
    records = dues_service.get_records_for_export(db, chapter_id=scope, config_id=config_id, status_filter=status_filter)
    rows = (_format_record_row(record) for record in records)
    response = StreamingResponse(_stream_csv(rows), media_type="text/csv")
    response.headers["Content-Disposition"] = "attachment; filename=dues_report.csv"
    return response


@router.get("/records/{record_id}", response_model=DuesSummaryOut)
def get_record_summary(
    record_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> DuesSummaryOut:
    record = dues_service.get_record_for_actor(db, record_id, current_user)
    return dues_service.build_summary(record)


@router.post("/records/{record_id}/payments", response_model=DuesPaymentOut, status_code=status.HTTP_201_CREATED)
def record_manual_payment(
    record_id: int,
    payload: DuesPaymentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> DuesPaymentOut:
    record = ledger.get_record(db, record_id, lock=True)
    dues_service.ensure_chapter_admin(current_user, record.chapter_id)
    payment = ledger.record_payment(
        db,
        record,
        payload.amount,
        method=payload.method,
        payment_date=payload.payment_date,
        reference_number=payload.reference_number,
        notes=payload.notes,
        recorded_by_id=current_user.id,
    )
    installments_service.close_settled_plan(db, record)
    db.commit()
    db.refresh(payment)
    return DuesPaymentOut.from_orm(payment)


@router.delete("/payments/{payment_id}", response_model=MemberDuesOut)
def delete_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> MemberDuesOut:
    payment = ledger.get_payment(db, payment_id)
    dues_service.ensure_chapter_admin(current_user, payment.record.chapter_id)
    record = ledger.delete_payment(db, payment_id)
    db.commit()
    db.refresh(record)
    return MemberDuesOut.from_orm(record)


@router.post("/records/{record_id}/adjustments", response_model=MemberDuesOut)
def add_adjustment(
    record_id: int,
    payload: DuesAdjustmentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> MemberDuesOut:
    record = ledger.get_record(db, record_id, lock=True)
    dues_service.ensure_chapter_admin(current_user, record.chapter_id)
    ledger.apply_adjustment(db, record, payload.amount, payload.reason)
    installments_service.close_settled_plan(db, record)
    db.commit()
    db.refresh(record)
    return MemberDuesOut.from_orm(record)


@router.post("/records/{record_id}/waive", response_model=MemberDuesOut)
def waive_record(
    record_id: int,
    payload: DuesWaiveRequest,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    current_user: User = Depends(require_chapter_admin),
) -> MemberDuesOut:
    record = dues_service.waive_record(db, processor, record_id, current_user, payload.note)
    return MemberDuesOut.from_orm(record)


@router.post("/records/{record_id}/unwaive", response_model=MemberDuesOut)
def unwaive_record(
    record_id: int,
    payload: DuesWaiveRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_chapter_admin),
) -> MemberDuesOut:
    record = ledger.get_record(db, record_id, lock=True)
    dues_service.ensure_chapter_admin(current_user, record.chapter_id)
    ledger.unwaive(record, payload.note)
    db.commit()
    db.refresh(record)
    return MemberDuesOut.from_orm(record)
