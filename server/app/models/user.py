from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.db import Base
from app.models.role import ADMIN_ROLE_NAMES

user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    """Verified caller identity. Accounts are issued by the auth collaborator."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    roles = relationship("Role", secondary=user_roles, lazy="joined")
    chapter = relationship("Chapter")

    @property
    def role_names(self) -> set[str]:
        return {role.name for role in self.roles}

    def is_chapter_admin(self, chapter_id: int | None) -> bool:
        if chapter_id is None or self.chapter_id != chapter_id:
            return False
        return bool(self.role_names.intersection(ADMIN_ROLE_NAMES))
