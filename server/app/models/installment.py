from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from app.core.db import Base
from app.models.payment_intent import PaymentMethodType

InstallmentPlanStatus = Enum("active", "completed", "cancelled", name="installment_plan_status")
InstallmentPaymentStatus = Enum(
    "scheduled",
    "processing",
    "paid",
    "failed",
    "cancelled",
    name="installment_payment_status",
)

_ACTIVE_PLAN_CLAUSE = text("status = 'active'")


class InstallmentEligibility(Base):
    """Treasurer grant allowing a balance to be split, per dues record or per member."""

    __tablename__ = "installment_eligibility"

    id = Column(Integer, primary_key=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    member_dues_id = Column(Integer, ForeignKey("member_dues.id", ondelete="CASCADE"), nullable=True, unique=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=True, unique=True)
    is_eligible = Column(Boolean, nullable=False, default=False)
    allowed_plans = Column(JSON, nullable=False, default=lambda: [2, 3])
    enabled_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    enabled_at = Column(DateTime, nullable=True)
    notes = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class InstallmentPlan(Base):
    __tablename__ = "installment_plans"
    __table_args__ = (
        Index(
            "uq_installment_plans_active_per_dues",
            "member_dues_id",
            unique=True,
            postgresql_where=_ACTIVE_PLAN_CLAUSE,
            sqlite_where=_ACTIVE_PLAN_CLAUSE,
        ),
    )

    id = Column(Integer, primary_key=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    member_dues_id = Column(Integer, ForeignKey("member_dues.id", ondelete="RESTRICT"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="RESTRICT"), nullable=False, index=True)
    num_installments = Column(Integer, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    method_type = Column(PaymentMethodType, nullable=False)
    processor_payment_method_id = Column(String(120), nullable=True)
    next_payment_date = Column(Date, nullable=True)
    status = Column(InstallmentPlanStatus, nullable=False, default="active")
    cancel_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    record = relationship("MemberDues")
    payments = relationship(
        "InstallmentPayment",
        back_populates="plan",
        order_by="InstallmentPayment.installment_number",
        cascade="all, delete-orphan",
    )


class InstallmentPayment(Base):
    __tablename__ = "installment_payments"
    __table_args__ = (UniqueConstraint("plan_id", "installment_number", name="uq_installment_payments_plan_number"),)

    id = Column(Integer, primary_key=True)
    plan_id = Column(Integer, ForeignKey("installment_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    installment_number = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    scheduled_date = Column(Date, nullable=False)
    status = Column(InstallmentPaymentStatus, nullable=False, default="scheduled")
    paid_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(Date, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    plan = relationship("InstallmentPlan", back_populates="payments")
    payment_intents = relationship("PaymentIntent", back_populates="installment_payment")
