from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import relationship

from app.core.db import Base

OPEN_INTENT_STATUSES = ("pending", "processing")

PaymentIntentStatus = Enum(
    "pending",
    "processing",
    "succeeded",
    "failed",
    "canceled",
    name="payment_intent_status",
)
PaymentMethodType = Enum("card", "bank_transfer", name="payment_method_type")

_OPEN_INTENT_CLAUSE = text("status IN ('pending', 'processing')")


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        # At most one open authorization per dues record.
        Index(
            "uq_payment_intents_open_per_dues",
            "member_dues_id",
            unique=True,
            postgresql_where=_OPEN_INTENT_CLAUSE,
            sqlite_where=_OPEN_INTENT_CLAUSE,
        ),
    )

    id = Column(Integer, primary_key=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    member_dues_id = Column(Integer, ForeignKey("member_dues.id", ondelete="RESTRICT"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="RESTRICT"), nullable=False, index=True)
    installment_payment_id = Column(
        Integer, ForeignKey("installment_payments.id", ondelete="SET NULL"), nullable=True, index=True
    )
    processor_intent_id = Column(String(120), nullable=False, unique=True)
    client_secret = Column(String(255), nullable=True)
    idempotency_key = Column(String(120), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    charge_amount = Column(Numeric(12, 2), nullable=False)
    processor_fee = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    transfer_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    method_type = Column(PaymentMethodType, nullable=False)
    status = Column(PaymentIntentStatus, nullable=False, default="pending")
    failure_reason = Column(String(255), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    succeeded_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    record = relationship("MemberDues", back_populates="payment_intents")
    member = relationship("Member")
    installment_payment = relationship("InstallmentPayment", back_populates="payment_intents")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INTENT_STATUSES
