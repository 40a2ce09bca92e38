from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from reporting_engine.core.logging_config import reset_logging
from reporting_engine.db.base import Base
from reporting_engine.db.dependencies import get_db_session
import reporting_engine.models.entities  # noqa: F401
from reporting_engine.main import create_app
from reporting_engine.models.entities import (
    Invoice,
    InvoiceStatus,
    Project,
    Task,
    TaskPriority,
    TaskStatus,
    Tenant,
    TenantMembership,
    TenantRole,
    TimeEntry,
    User,
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    app = create_app()

    def override_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db_session] = override_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_logging() -> Generator[None, None, None]:
    reset_logging()
    yield
    reset_logging()


class Seeder:
    """Commits rows one at a time so every service call starts from clean state."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def tenant(
        self,
        slug: str,
        *,
        name: str | None = None,
        default_hourly_rate: Decimal | None = None,
        is_active: bool = True,
    ) -> Tenant:
        return self._save(
            Tenant(
                name=name or slug.title(),
                slug=slug,
                is_active=is_active,
                default_hourly_rate=default_hourly_rate,
                created_at=datetime.utcnow(),
            )
        )

    def user(self, email: str, *, full_name: str | None = None, hourly_rate: Decimal | None = None) -> User:
        return self._save(
            User(email=email, full_name=full_name, hourly_rate=hourly_rate, created_at=datetime.utcnow())
        )

    def member(
        self,
        tenant: Tenant,
        user: User,
        role: TenantRole = TenantRole.MEMBER,
        *,
        is_active: bool = True,
    ) -> TenantMembership:
        return self._save(TenantMembership(tenant_id=tenant.id, user_id=user.id, role=role, is_active=is_active))

    def project(
        self,
        tenant: Tenant,
        name: str,
        *,
        budget: Decimal | None = None,
        hourly_rate: Decimal | None = None,
        created_at: datetime | None = None,
    ) -> Project:
        return self._save(
            Project(
                tenant_id=tenant.id,
                name=name,
                budget=budget,
                hourly_rate=hourly_rate,
                created_at=created_at or datetime.utcnow(),
            )
        )

    def task(
        self,
        project: Project,
        title: str = "Task",
        *,
        assignee: User | None = None,
        status: TaskStatus = TaskStatus.TODO,
        priority: TaskPriority = TaskPriority.MEDIUM,
        due_date: date | None = None,
        estimated_hours: Decimal | None = None,
        actual_hours: Decimal = Decimal("0.00"),
    ) -> Task:
        return self._save(
            Task(
                project_id=project.id,
                title=title,
                assignee_id=assignee.id if assignee else None,
                status=status,
                priority=priority,
                due_date=due_date,
                estimated_hours=estimated_hours,
                actual_hours=actual_hours,
            )
        )

    def time_entry(
        self,
        task: Task,
        user: User,
        entry_date: date,
        minutes: int,
        *,
        billable: bool = True,
    ) -> TimeEntry:
        return self._save(
            TimeEntry(
                task_id=task.id,
                user_id=user.id,
                entry_date=entry_date,
                duration_minutes=minutes,
                billable=billable,
                created_at=datetime.utcnow(),
            )
        )

    def invoice(
        self,
        tenant: Tenant,
        invoice_number: str,
        total_amount: Decimal,
        *,
        status: InvoiceStatus = InvoiceStatus.SENT,
        issue_date: date = date(2024, 1, 1),
        amount_paid: Decimal = Decimal("0.00"),
        project: Project | None = None,
        user: User | None = None,
    ) -> Invoice:
        return self._save(
            Invoice(
                tenant_id=tenant.id,
                invoice_number=invoice_number,
                status=status,
                issue_date=issue_date,
                due_date=issue_date,
                subtotal=total_amount,
                total_amount=total_amount,
                amount_paid=amount_paid,
                project_id=project.id if project else None,
                user_id=user.id if user else None,
            )
        )


@pytest.fixture()
def seed(db_session: Session) -> Seeder:
    return Seeder(db_session)


@pytest.fixture()
def session_pair(tmp_path) -> Generator[tuple[Session, Session], None, None]:
    """Two independent sessions on one file-backed database, like two requests."""

    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'shared.db'}", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    first, second = factory(), factory()
    try:
        yield first, second
    finally:
        first.close()
        second.close()
        engine.dispose()


@pytest.fixture()
def shared_seed(session_pair: tuple[Session, Session]) -> Seeder:
    return Seeder(session_pair[0])

