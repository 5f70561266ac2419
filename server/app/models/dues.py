from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.db import Base

DuesStatus = Enum("pending", "partial", "paid", "overdue", "waived", name="member_dues_status")
LateFeeType = Enum("flat", "percentage", name="late_fee_type")
PeriodType = Enum("Quarter", "Semester", "Year", name="dues_period_type")


class DuesConfiguration(Base):
    __tablename__ = "dues_configurations"

    id = Column(Integer, primary_key=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    period_name = Column(String(100), nullable=False)
    period_type = Column(PeriodType, nullable=False, default="Semester")
    fiscal_year = Column(Integer, nullable=False)
    period_start_date = Column(Date, nullable=True)
    period_end_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    default_rate = Column(Numeric(12, 2), nullable=False, default=0)
    rates = Column(JSON, nullable=True)
    late_fee_enabled = Column(Boolean, nullable=False, default=False)
    late_fee_type = Column(LateFeeType, nullable=False, default="flat")
    late_fee_amount = Column(Numeric(12, 2), nullable=False, default=0)
    late_fee_grace_days = Column(Integer, nullable=False, default=0)
    is_current = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    chapter = relationship("Chapter")
    records = relationship("MemberDues", back_populates="configuration")


class MemberDues(Base):
    __tablename__ = "member_dues"
    __table_args__ = (UniqueConstraint("member_id", "config_id", name="uq_member_dues_member_config"),)

    id = Column(Integer, primary_key=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="RESTRICT"), nullable=False, index=True)
    config_id = Column(Integer, ForeignKey("dues_configurations.id", ondelete="RESTRICT"), nullable=False, index=True)
    base_amount = Column(Numeric(12, 2), nullable=False, default=0)
    late_fee = Column(Numeric(12, 2), nullable=False, default=0)
    adjustments = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(DuesStatus, nullable=False, default="pending")
    due_date = Column(Date, nullable=True)
    flexible_plan_deadline = Column(Date, nullable=True)
    paid_date = Column(Date, nullable=True)
    late_fee_applied_date = Column(Date, nullable=True)
    waived_at = Column(DateTime, nullable=True)
    waived_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)
    assigned_date = Column(Date, nullable=False, default=date.today)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    member = relationship("Member", back_populates="dues_records")
    configuration = relationship("DuesConfiguration", back_populates="records")
    payments = relationship("DuesPayment", back_populates="record", order_by="DuesPayment.id")
    payment_intents = relationship("PaymentIntent", back_populates="record", order_by="PaymentIntent.id")


class DuesPayment(Base):
    __tablename__ = "dues_payments"

    id = Column(Integer, primary_key=True)
    member_dues_id = Column(Integer, ForeignKey("member_dues.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(50), nullable=True)
    payment_date = Column(Date, nullable=False, default=date.today)
    reference_number = Column(String(120), nullable=True, unique=True)
    notes = Column(String(255), nullable=True)
    recorded_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    record = relationship("MemberDues", back_populates="payments")
    recorded_by = relationship("User")
