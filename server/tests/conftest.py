from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from collections.abc import Generator
from datetime import date
from decimal import Decimal
from itertools import count
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth.deps import get_current_user
from app.core.db import Base, get_db
from app.core.errors import ProcessorError
from app.main import app
from app.models.dues import DuesConfiguration, MemberDues
from app.models.installment import InstallmentEligibility
from app.models.member import Chapter, Member
from app.models.role import Role
from app.models.user import User
from app.services import ledger
from app.services.processor import AuthorizationHandle, PaymentProcessor, get_processor

SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///:memory:"
engine = create_engine(SQLALCHEMY_TEST_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class FakeProcessor(PaymentProcessor):
    """In-memory processor that records every call."""

    def __init__(self) -> None:
        self._ids = count(1)
        self.authorizations: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.canceled: list[str] = []
        self.fail_create: ProcessorError | None = None
        self.fail_cancel: ProcessorError | None = None
        self.create_status = "pending"

    def create_authorization(self, **kwargs: Any) -> AuthorizationHandle:
        if self.fail_create is not None:
            raise self.fail_create
        processor_id = f"pi_test_{next(self._ids)}"
        status = self.create_status
        self.authorizations[processor_id] = {**kwargs, "status": status}
        self.created.append({"id": processor_id, **kwargs})
        return AuthorizationHandle(
            id=processor_id,
            status=status,
            client_handle=f"{processor_id}_secret",
            failure_reason="card_declined" if status == "failed" else None,
        )

    def cancel_authorization(self, processor_intent_id: str) -> AuthorizationHandle:
        if self.fail_cancel is not None:
            raise self.fail_cancel
        self.canceled.append(processor_intent_id)
        self.authorizations.setdefault(processor_intent_id, {})["status"] = "canceled"
        return AuthorizationHandle(id=processor_intent_id, status="canceled")

    def retrieve_authorization(self, processor_intent_id: str) -> AuthorizationHandle:
        status = self.authorizations.get(processor_intent_id, {}).get("status", "pending")
        return AuthorizationHandle(id=processor_intent_id, status=status)

    def settle(self, processor_intent_id: str, status: str = "succeeded") -> None:
        self.authorizations[processor_intent_id]["status"] = status


def override_get_db() -> Generator[Session, None, None]:
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session", autouse=True)
def setup_database() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables() -> Generator[None, None, None]:
    yield
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    session = TestingSessionLocal()
    try:
        yield session
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture()
def client(db_session: Session, processor: FakeProcessor) -> Generator[TestClient, None, None]:
    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def authorize(client: TestClient):
    def _apply(user: User):
        app.dependency_overrides[get_current_user] = lambda: user

    yield _apply
    app.dependency_overrides.pop(get_current_user, None)


def _ensure_role(session: Session, name: str) -> Role:
    role = session.query(Role).filter_by(name=name).first()
    if role is None:
        role = Role(name=name)
        session.add(role)
        session.commit()
        session.refresh(role)
    return role


def _make_user(session: Session, email: str, chapter: Chapter | None, *roles: str) -> User:
    user = User(email=email, full_name=email.split("@")[0], chapter_id=chapter.id if chapter else None, is_active=True)
    for name in roles:
        user.roles.append(_ensure_role(session, name))
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture()
def chapter(db_session: Session) -> Chapter:
    chapter = Chapter(name="Alpha Chapter", processor_account_id="acct_alpha")
    db_session.add(chapter)
    db_session.commit()
    db_session.refresh(chapter)
    return chapter


@pytest.fixture()
def other_chapter(db_session: Session) -> Chapter:
    chapter = Chapter(name="Beta Chapter")
    db_session.add(chapter)
    db_session.commit()
    db_session.refresh(chapter)
    return chapter


@pytest.fixture()
def treasurer_user(db_session: Session, chapter: Chapter) -> User:
    return _make_user(db_session, "treasurer@example.com", chapter, "Treasurer")


@pytest.fixture()
def outside_admin(db_session: Session, other_chapter: Chapter) -> User:
    return _make_user(db_session, "admin@beta.example.com", other_chapter, "Admin")


@pytest.fixture()
def sample_member(db_session: Session, chapter: Chapter) -> Member:
    member = Member(
        chapter_id=chapter.id,
        first_name="Dana",
        last_name="Okafor",
        email="dana.okafor@example.com",
        cohort="junior",
        status="Active",
    )
    db_session.add(member)
    db_session.commit()
    db_session.refresh(member)
    return member


@pytest.fixture()
def member_user(db_session: Session, chapter: Chapter, sample_member: Member) -> User:
    # Email differs only by case from the member's directory entry.
    return _make_user(db_session, "Dana.Okafor@Example.com", chapter, "Member")


@pytest.fixture()
def stranger_user(db_session: Session, chapter: Chapter) -> User:
    return _make_user(db_session, "someone.else@example.com", chapter, "Member")


@pytest.fixture()
def dues_config(db_session: Session, chapter: Chapter) -> DuesConfiguration:
    config = DuesConfiguration(
        chapter_id=chapter.id,
        period_name="Fall 2026",
        period_type="Semester",
        fiscal_year=2026,
        period_start_date=date(2026, 8, 15),
        period_end_date=date(2026, 12, 15),
        due_date=date(2026, 9, 15),
        default_rate=Decimal("500.00"),
        rates={"senior": "350.00", "alumni": "0.00"},
        late_fee_enabled=True,
        late_fee_type="flat",
        late_fee_amount=Decimal("25.00"),
        late_fee_grace_days=5,
        is_current=True,
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


@pytest.fixture()
def make_record(db_session: Session, dues_config: DuesConfiguration):
    def _make(member: Member, base_amount: str = "500.00", **fields: Any) -> MemberDues:
        record = MemberDues(
            chapter_id=member.chapter_id,
            member_id=member.id,
            config_id=dues_config.id,
            base_amount=Decimal(base_amount),
            late_fee=Decimal("0"),
            adjustments=Decimal("0"),
            amount_paid=Decimal("0"),
            status="pending",
            due_date=dues_config.due_date,
        )
        for key, value in fields.items():
            setattr(record, key, value)
        ledger.refresh(record)
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record

    return _make


@pytest.fixture()
def sample_record(make_record, sample_member: Member) -> MemberDues:
    return make_record(sample_member)


@pytest.fixture()
def grant_installments(db_session: Session):
    def _grant(record: MemberDues, allowed_plans: list[int] | None = None) -> InstallmentEligibility:
        grant = InstallmentEligibility(
            chapter_id=record.chapter_id,
            member_dues_id=record.id,
            is_eligible=True,
            allowed_plans=allowed_plans or [2, 3],
        )
        db_session.add(grant)
        db_session.commit()
        return grant

    return _grant
