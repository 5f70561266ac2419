from __future__ import annotations

import logging
from decimal import Decimal

from app.models.dues import DuesConfiguration, DuesPayment, MemberDues
from app.models.installment import InstallmentPayment, InstallmentPlan
from app.models.payment_intent import PaymentIntent

logger = logging.getLogger(__name__)


def notify_payment_recorded(record: MemberDues, payment: DuesPayment) -> None:
    logger.info(
        "dues_payment_recorded",
        extra={
            "member_dues_id": record.id,
            "member_id": record.member_id,
            "amount": str(payment.amount),
            "reference": payment.reference_number,
            "balance": str(record.balance),
            "status": record.status,
        },
    )


def notify_payment_deleted(record: MemberDues, payment_id: int) -> None:
    logger.info(
        "dues_payment_deleted",
        extra={
            "member_dues_id": record.id,
            "payment_id": payment_id,
            "amount_paid": str(record.amount_paid),
            "status": record.status,
        },
    )


def notify_overpayment_clamped(record: MemberDues, *, requested: Decimal, applied: Decimal) -> None:
    logger.warning(
        "dues_payment_clamped",
        extra={
            "member_dues_id": record.id,
            "requested": str(requested),
            "applied": str(applied),
        },
    )


def notify_intent_created(intent: PaymentIntent) -> None:
    logger.info(
        "payment_intent_created",
        extra={
            "payment_intent_id": intent.id,
            "processor_intent_id": intent.processor_intent_id,
            "member_dues_id": intent.member_dues_id,
            "method_type": intent.method_type,
            "charge_amount": str(intent.charge_amount),
            "transfer_amount": str(intent.transfer_amount),
        },
    )


def notify_intent_reused(intent: PaymentIntent) -> None:
    logger.info(
        "payment_intent_reused",
        extra={"payment_intent_id": intent.id, "member_dues_id": intent.member_dues_id},
    )


def notify_intent_canceled(intent: PaymentIntent, reason: str) -> None:
    logger.info(
        "payment_intent_canceled",
        extra={
            "payment_intent_id": intent.id,
            "processor_intent_id": intent.processor_intent_id,
            "member_dues_id": intent.member_dues_id,
            "reason": reason,
        },
    )


def notify_intent_succeeded(intent: PaymentIntent) -> None:
    logger.info(
        "payment_intent_succeeded",
        extra={
            "payment_intent_id": intent.id,
            "processor_intent_id": intent.processor_intent_id,
            "member_dues_id": intent.member_dues_id,
            "amount": str(intent.amount),
        },
    )


def notify_intent_failed(intent: PaymentIntent) -> None:
    logger.warning(
        "payment_intent_failed",
        extra={
            "payment_intent_id": intent.id,
            "processor_intent_id": intent.processor_intent_id,
            "member_dues_id": intent.member_dues_id,
            "reason": intent.failure_reason,
        },
    )


def notify_orphaned_authorization(processor_intent_id: str, member_dues_id: int) -> None:
    logger.error(
        "payment_intent_orphaned",
        extra={"processor_intent_id": processor_intent_id, "member_dues_id": member_dues_id},
    )


def notify_late_fee_applied(record: MemberDues, config: DuesConfiguration, fee: Decimal) -> None:
    logger.info(
        "late_fee_applied",
        extra={
            "member_dues_id": record.id,
            "config_id": config.id,
            "late_fee": str(fee),
            "balance": str(record.balance),
        },
    )


def notify_plan_created(plan: InstallmentPlan) -> None:
    logger.info(
        "installment_plan_created",
        extra={
            "plan_id": plan.id,
            "member_dues_id": plan.member_dues_id,
            "num_installments": plan.num_installments,
            "total_amount": str(plan.total_amount),
        },
    )


def notify_plan_cancelled(plan: InstallmentPlan) -> None:
    logger.info(
        "installment_plan_cancelled",
        extra={"plan_id": plan.id, "member_dues_id": plan.member_dues_id, "reason": plan.cancel_reason},
    )


def notify_installment_failed(installment: InstallmentPayment) -> None:
    logger.warning(
        "installment_payment_failed",
        extra={
            "installment_payment_id": installment.id,
            "plan_id": installment.plan_id,
            "installment_number": installment.installment_number,
            "retry_count": installment.retry_count,
            "reason": installment.failure_reason,
        },
    )
