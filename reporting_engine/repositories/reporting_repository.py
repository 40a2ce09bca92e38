"""Repository helpers for tenant resolution and report detail rows."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.engine import Row
from sqlalchemy.orm import Session

from reporting_engine.models.entities import (
    Invoice,
    Project,
    Task,
    Tenant,
    TenantMembership,
    TimeEntry,
    User,
)
from reporting_engine.services.scope import ScopedQuery

TIME_ACTIVITY_SORT_COLUMNS = {
    "date": TimeEntry.entry_date,
    "duration_minutes": TimeEntry.duration_minutes,
    "created_at": TimeEntry.created_at,
}


class ReportingRepository:
    """Read operations used by tenant resolution and the report assembler."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Tenants and members ----------
    def get_tenant(self, tenant_id: UUID) -> Tenant | None:
        return self.db.scalar(select(Tenant).where(Tenant.id == tenant_id))

    def get_tenant_by_slug(self, slug: str) -> Tenant | None:
        return self.db.scalar(select(Tenant).where(Tenant.slug == slug))

    def get_user_by_email(self, email: str) -> User | None:
        return self.db.scalar(select(User).where(User.email == email))

    def get_active_membership(self, tenant_id: UUID, user_id: UUID) -> TenantMembership | None:
        return self.db.scalar(
            select(TenantMembership).where(
                and_(
                    TenantMembership.tenant_id == tenant_id,
                    TenantMembership.user_id == user_id,
                    TenantMembership.is_active.is_(True),
                )
            )
        )

    def list_member_ids(self, tenant_id: UUID) -> list[UUID]:
        return self.db.scalars(
            select(TenantMembership.user_id).where(
                and_(
                    TenantMembership.tenant_id == tenant_id,
                    TenantMembership.is_active.is_(True),
                )
            )
        ).all()

    # ---------- Detail rows ----------
    def list_time_activity(
        self,
        scope: ScopedQuery,
        *,
        sort_by: str,
        descending: bool,
        offset: int,
        limit: int,
    ) -> list[Row]:
        sort_column = TIME_ACTIVITY_SORT_COLUMNS[sort_by]
        primary = sort_column.desc() if descending else sort_column.asc()
        stmt = (
            scope.time_entry_select()
            .add_columns(
                TimeEntry.description.label("description"),
                Task.title.label("task_title"),
                Project.name.label("project_name"),
                User.full_name.label("user_name"),
                User.email.label("user_email"),
            )
            .join(User, User.id == TimeEntry.user_id)
            .order_by(primary, TimeEntry.id.asc())
            .offset(offset)
            .limit(limit)
        )
        return self.db.execute(stmt).all()

    def list_invoices(self, scope: ScopedQuery) -> list[Invoice]:
        return self.db.scalars(
            select(Invoice)
            .where(and_(*scope.invoice_conditions()))
            .order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc())
        ).all()
