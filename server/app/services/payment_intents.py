from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AuthorizationError,
    ConflictError,
    ConsistencyError,
    NotFoundError,
    ProcessorError,
    ValidationError,
)
from app.models.dues import DuesPayment, MemberDues
from app.models.installment import InstallmentPayment
from app.models.payment_intent import OPEN_INTENT_STATUSES, PaymentIntent
from app.models.user import User
from app.services import ledger, notifications
from app.services.fees import CARD, calculate_fees, calculate_fees_for_amount, normalize_method_type, to_cents
from app.services.processor import AuthorizationHandle, PaymentProcessor, ProcessorEvent

logger = logging.getLogger(__name__)

METHOD_LABELS = {CARD: "Credit Card", "bank_transfer": "Bank Transfer"}


@dataclass
class AuthorizationResult:
    intent: PaymentIntent
    reused: bool
    canceled_intent_id: Optional[int] = None


def can_act_for_record(actor: User, record: MemberDues) -> bool:
    if actor.is_chapter_admin(record.chapter_id):
        return True
    member = record.member
    if member is None or not member.email or not actor.email:
        return False
    return member.email.strip().lower() == actor.email.strip().lower()


def ensure_can_act(actor: User | None, record: MemberDues) -> None:
    if actor is None or not actor.is_active or not can_act_for_record(actor, record):
        raise AuthorizationError("You can only manage payments for your own dues or as a chapter admin")


def get_open_intent(db: Session, record_id: int) -> PaymentIntent | None:
    return (
        db.query(PaymentIntent)
        .filter(
            PaymentIntent.member_dues_id == record_id,
            PaymentIntent.status.in_(OPEN_INTENT_STATUSES),
        )
        .order_by(PaymentIntent.id.desc())
        .first()
    )


def get_intent_by_processor_id(db: Session, processor_intent_id: str) -> PaymentIntent | None:
    return db.query(PaymentIntent).filter(PaymentIntent.processor_intent_id == processor_intent_id).first()


def _idempotency_key(
    db: Session,
    record: MemberDues,
    method_type: str,
    charge_cents: int,
    installment: InstallmentPayment | None = None,
) -> str:
    # Stable across transport retries of one attempt; a declined installment gets a fresh key per retry.
    attempt = db.query(PaymentIntent.id).filter(PaymentIntent.member_dues_id == record.id).count() + 1
    key = f"dues-{record.id}-attempt-{attempt}"
    if installment is not None:
        key += f"-installment-{installment.id}-retry-{installment.retry_count or 0}"
    return f"{key}-{method_type}-{charge_cents}"


def _metadata(record: MemberDues, method_type: str, dues_cents: int, installment: InstallmentPayment | None) -> dict:
    metadata = {
        "member_dues_id": record.id,
        "member_id": record.member_id,
        "chapter_id": record.chapter_id,
        "method_type": method_type,
        "dues_amount": dues_cents,
    }
    if installment is not None:
        metadata["installment_payment_id"] = installment.id
        metadata["installment_number"] = installment.installment_number
    return metadata


def _persist_intent(db: Session, intent: PaymentIntent) -> None:
    db.add(intent)
    db.flush()
    db.commit()


def _compensate(processor: PaymentProcessor, processor_intent_id: str, record_id: int) -> None:
    try:
        processor.cancel_authorization(processor_intent_id)
    except ProcessorError:
        notifications.notify_orphaned_authorization(processor_intent_id, record_id)
        raise


def _cancel_intent(db: Session, processor: PaymentProcessor, intent: PaymentIntent, reason: str) -> PaymentIntent:
    processor.cancel_authorization(intent.processor_intent_id)
    intent.status = "canceled"
    intent.canceled_at = datetime.utcnow()
    intent.failure_reason = reason
    installment = intent.installment_payment
    if installment is not None and installment.status == "processing":
        installment.status = "scheduled"
        db.add(installment)
    db.add(intent)
    db.flush()
    notifications.notify_intent_canceled(intent, reason)
    return intent


def create_or_reuse_authorization(
    db: Session,
    processor: PaymentProcessor,
    record_id: int,
    *,
    method_type: str,
    requested_amount: Decimal | None = None,
    actor: User | None = None,
    installment: InstallmentPayment | None = None,
    payment_method_id: str | None = None,
    confirm: bool = False,
    today: date | None = None,
) -> AuthorizationResult:
    """Create an external authorization for a dues record, or hand back the open one.

    ``actor`` is ``None`` only for scheduler-driven installment charges.
    """
    method = normalize_method_type(method_type)
    if requested_amount is not None and ledger.money(requested_amount) <= 0:
        raise ValidationError("Payment amount must be positive")

    record = ledger.get_record(db, record_id, lock=True)
    if actor is not None or installment is None:
        ensure_can_act(actor, record)
    balance = ledger.recompute(record).balance
    if record.status == "waived" or balance <= 0:
        raise ConflictError("No outstanding balance to pay")

    canceled_id: Optional[int] = None
    existing = get_open_intent(db, record.id)
    if existing is not None:
        if existing.status == "processing":
            raise ConflictError("A payment is already processing for these dues")
        if existing.method_type == method and installment is None and existing.installment_payment_id is None:
            notifications.notify_intent_reused(existing)
            return AuthorizationResult(intent=existing, reused=True)
        _cancel_intent(db, processor, existing, reason="superseded by a new authorization")
        canceled_id = existing.id
        db.commit()

    amount = balance if requested_amount is None else min(ledger.money(requested_amount), balance)
    fees = calculate_fees(to_cents(amount), method)
    key = _idempotency_key(db, record, method, fees.charge_amount, installment)
    destination = record.member.chapter.processor_account_id if record.member and record.member.chapter else None

    handle: AuthorizationHandle = processor.create_authorization(
        amount=fees.charge_amount,
        method_type=method,
        transfer_amount=fees.transfer_amount,
        metadata=_metadata(record, method, fees.dues_amount, installment),
        idempotency_key=key,
        destination=destination,
        payment_method_id=payment_method_id,
        confirm=confirm,
    )

    intent = PaymentIntent(
        chapter_id=record.chapter_id,
        member_dues_id=record.id,
        member_id=record.member_id,
        installment_payment_id=installment.id if installment is not None else None,
        processor_intent_id=handle.id,
        client_secret=handle.client_handle,
        idempotency_key=key,
        currency=settings.CURRENCY,
        method_type=method,
        status="pending",
        created_by_id=actor.id if actor is not None else None,
        **fees.as_amounts(),
    )
    try:
        _persist_intent(db, intent)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("payment_intent_persist_failed", extra={"processor_intent_id": handle.id})
        _compensate(processor, handle.id, record_id)
        raise ConsistencyError(
            "The payment authorization could not be recorded and has been canceled; please retry",
            processor_intent_id=handle.id,
        ) from exc

    notifications.notify_intent_created(intent)
    if handle.status != "pending":
        apply_processor_status(db, intent, handle.status, failure_reason=handle.failure_reason, today=today)
    return AuthorizationResult(intent=intent, reused=False, canceled_intent_id=canceled_id)


def get_intent(db: Session, intent_id: int) -> PaymentIntent:
    intent = db.get(PaymentIntent, intent_id)
    if intent is None:
        raise NotFoundError("Payment intent not found")
    return intent


def cancel_authorization(db: Session, processor: PaymentProcessor, intent_id: int, actor: User) -> PaymentIntent:
    intent = get_intent(db, intent_id)
    record = ledger.get_record(db, intent.member_dues_id, lock=True)
    ensure_can_act(actor, record)
    if intent.status != "pending":
        raise ConflictError("Only pending authorizations can be canceled")
    _cancel_intent(db, processor, intent, reason="canceled by request")
    db.commit()
    return intent


def cancel_open_pending(db: Session, processor: PaymentProcessor, record: MemberDues, reason: str) -> PaymentIntent | None:
    existing = get_open_intent(db, record.id)
    if existing is None:
        return None
    if existing.status == "processing":
        raise ConflictError("A payment is already processing for these dues")
    return _cancel_intent(db, processor, existing, reason=reason)


def mark_processing(db: Session, intent: PaymentIntent) -> PaymentIntent:
    if intent.status == "pending":
        intent.status = "processing"
        db.add(intent)
        db.commit()
    return intent


def mark_failed(db: Session, intent: PaymentIntent, reason: str | None, *, today: date | None = None) -> PaymentIntent:
    if intent.status not in OPEN_INTENT_STATUSES:
        return intent
    intent.status = "failed"
    intent.failure_reason = (reason or "Payment failed")[:255]
    db.add(intent)
    if intent.installment_payment is not None:
        from app.services import installments as installments_service

        installments_service.on_installment_failed(db, intent.installment_payment, intent.failure_reason, today=today)
    db.commit()
    notifications.notify_intent_failed(intent)
    return intent


def mark_canceled(db: Session, intent: PaymentIntent) -> PaymentIntent:
    if intent.status not in OPEN_INTENT_STATUSES:
        return intent
    intent.status = "canceled"
    intent.canceled_at = datetime.utcnow()
    installment = intent.installment_payment
    if installment is not None and installment.status == "processing":
        installment.status = "scheduled"
        db.add(installment)
    db.add(intent)
    db.commit()
    notifications.notify_intent_canceled(intent, "canceled at processor")
    return intent


def confirm_settlement(db: Session, processor_intent_id: str, *, today: date | None = None) -> PaymentIntent:
    """Apply a settled authorization to the ledger exactly once."""
    intent = get_intent_by_processor_id(db, processor_intent_id)
    if intent is None:
        raise NotFoundError("Payment intent not found")
    if intent.status == "succeeded":
        return intent

    record = ledger.get_record(db, intent.member_dues_id, lock=True)
    already_applied = (
        db.query(DuesPayment.id).filter(DuesPayment.reference_number == intent.processor_intent_id).first()
    )
    if not already_applied:
        if record.status == "waived":
            # Settled money is always recorded, even against a waiver.
            logger.warning(
                "payment_intent_settled_on_waived_record",
                extra={"payment_intent_id": intent.id, "member_dues_id": record.id},
            )
            ledger.unwaive(record, f"settlement {intent.processor_intent_id} received", today=today)
        ledger.record_payment(
            db,
            record,
            intent.amount,
            method=METHOD_LABELS.get(intent.method_type, intent.method_type),
            payment_date=today or date.today(),
            reference_number=intent.processor_intent_id,
            notes=f"Online payment ({intent.method_type})",
            recorded_by_id=intent.created_by_id,
            allow_overpayment=True,
        )
    if intent.status not in OPEN_INTENT_STATUSES:
        logger.warning(
            "payment_intent_settled_after_close",
            extra={"payment_intent_id": intent.id, "previous_status": intent.status},
        )
    intent.status = "succeeded"
    intent.succeeded_at = datetime.utcnow()
    intent.failure_reason = None
    db.add(intent)
    from app.services import installments as installments_service

    if intent.installment_payment is not None:
        installments_service.on_installment_settled(db, intent.installment_payment, today=today)
    installments_service.close_settled_plan(db, record)
    db.commit()
    notifications.notify_intent_succeeded(intent)
    return intent


def apply_processor_status(
    db: Session,
    intent: PaymentIntent,
    status: str,
    *,
    failure_reason: str | None = None,
    today: date | None = None,
) -> PaymentIntent:
    if status == "processing":
        return mark_processing(db, intent)
    if status == "succeeded":
        return confirm_settlement(db, intent.processor_intent_id, today=today)
    if status == "failed":
        return mark_failed(db, intent, failure_reason, today=today)
    if status == "canceled":
        return mark_canceled(db, intent)
    return intent


def _recover_intent(db: Session, event: ProcessorEvent) -> PaymentIntent | None:
    """Rebuild a missing local row from authorization metadata for a settled charge."""
    metadata = event.metadata or {}
    try:
        record_id = int(metadata["member_dues_id"])
        dues_cents = int(metadata["dues_amount"])
        method = normalize_method_type(metadata.get("method_type") or CARD)
    except (KeyError, TypeError, ValueError, ValidationError):
        logger.error("payment_intent_unrecoverable", extra={"processor_intent_id": event.processor_intent_id})
        return None
    record = db.get(MemberDues, record_id)
    if record is None:
        return None
    fees = calculate_fees(dues_cents, method)
    intent = PaymentIntent(
        chapter_id=record.chapter_id,
        member_dues_id=record.id,
        member_id=record.member_id,
        processor_intent_id=event.processor_intent_id,
        idempotency_key=f"recovered-{event.processor_intent_id}",
        currency=settings.CURRENCY,
        method_type=method,
        status="processing",
        **fees.as_amounts(),
    )
    db.add(intent)
    db.flush()
    logger.warning("payment_intent_recovered", extra={"processor_intent_id": event.processor_intent_id})
    return intent


def handle_processor_event(db: Session, event: ProcessorEvent, *, today: date | None = None) -> PaymentIntent | None:
    intent = get_intent_by_processor_id(db, event.processor_intent_id)
    if intent is None:
        if event.status != "succeeded":
            logger.info("processor_event_unknown_intent", extra={"processor_intent_id": event.processor_intent_id})
            return None
        intent = _recover_intent(db, event)
        if intent is None:
            return None
    return apply_processor_status(db, intent, event.status, failure_reason=event.failure_reason, today=today)


def reconcile_open_intents(db: Session, processor: PaymentProcessor, *, today: date | None = None) -> dict[str, int]:
    """Compare open local authorizations with the processor and apply missed transitions."""
    counts = {"checked": 0, "updated": 0, "errors": 0}
    open_intents = (
        db.query(PaymentIntent)
        .filter(PaymentIntent.status.in_(OPEN_INTENT_STATUSES))
        .order_by(PaymentIntent.id.asc())
        .all()
    )
    for intent in open_intents:
        counts["checked"] += 1
        try:
            handle = processor.retrieve_authorization(intent.processor_intent_id)
        except ProcessorError:
            logger.warning("reconcile_retrieve_failed", exc_info=True, extra={"payment_intent_id": intent.id})
            counts["errors"] += 1
            continue
        if handle.status == intent.status:
            continue
        apply_processor_status(db, intent, handle.status, failure_reason=handle.failure_reason, today=today)
        counts["updated"] += 1
    return counts


def list_intents_for_record(db: Session, record_id: int, actor: User) -> list[PaymentIntent]:
    record = ledger.get_record(db, record_id)
    ensure_can_act(actor, record)
    return (
        db.query(PaymentIntent)
        .filter(PaymentIntent.member_dues_id == record.id)
        .order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
        .all()
    )


def fee_preview(amount: Decimal, method_type: str) -> dict[str, Decimal]:
    fees = calculate_fees_for_amount(amount, method_type)
    preview = fees.as_amounts()
    preview["method_type"] = fees.method_type
    return preview
