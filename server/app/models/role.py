from __future__ import annotations

from sqlalchemy import Column, Integer, String

from app.core.db import Base

ADMIN_ROLE_NAMES = ("Admin", "Treasurer", "Exec")


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True)
    name = Column(String(64), unique=True, nullable=False, index=True)
    description = Column(String(255), nullable=True)
