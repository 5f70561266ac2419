from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.core.db import Base

MemberStatus = Enum("Active", "Inactive", name="member_status")
MemberCohort = Enum(
    "freshman",
    "sophomore",
    "junior",
    "senior",
    "graduate",
    "alumni",
    "pledge",
    name="member_cohort",
)


class Chapter(Base):
    __tablename__ = "chapters"

    id = Column(Integer, primary_key=True)
    name = Column(String(150), nullable=False, unique=True)
    processor_account_id = Column(String(120), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    members = relationship("Member", back_populates="chapter")


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    cohort = Column(MemberCohort, nullable=True)
    status = Column(MemberStatus, nullable=False, default="Active")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    chapter = relationship("Chapter", back_populates="members")
    dues_records = relationship("MemberDues", back_populates="member")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
