"""Parallel group-by aggregations over a scoped row-set.

Each rollup is computed from ``ScopedQuery.time_entries()`` (or the task /
invoice equivalents), so every dimension sees the same predicate. Billable
and non-billable minutes are conditional sums in the same pass as the total.
Raw driver values (``None`` sums, string/Decimal counts) are normalized once,
in ``_as_int`` / ``_as_decimal``, into typed aggregates with zero defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Subquery, and_, case, func, select
from sqlalchemy.orm import Session

from reporting_engine.core.errors import ConsistencyError
from reporting_engine.models.entities import (
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Project,
    ProjectStatus,
    Task,
    TaskPriority,
    TaskStatus,
    User,
)
from reporting_engine.services.scope import ScopedQuery

ZERO_MONEY = Decimal("0.00")


def _as_int(value: object) -> int:
    if value is None:
        return 0
    return int(value)


def _as_decimal(value: object) -> Decimal:
    if value is None:
        return ZERO_MONEY
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True, slots=True)
class MinuteTotals:
    total_minutes: int = 0
    billable_minutes: int = 0
    non_billable_minutes: int = 0
    entry_count: int = 0
    days_worked: int = 0


@dataclass(frozen=True, slots=True)
class UserRollupRow:
    user_id: UUID
    full_name: str | None
    email: str
    hourly_rate: Decimal | None
    totals: MinuteTotals


@dataclass(frozen=True, slots=True)
class ProjectRollupRow:
    project_id: UUID
    project_name: str
    totals: MinuteTotals


@dataclass(frozen=True, slots=True)
class DateRollupRow:
    entry_date: date
    totals: MinuteTotals


@dataclass(frozen=True, slots=True)
class UserDateRollupRow:
    user_id: UUID
    full_name: str | None
    email: str
    entry_date: date
    totals: MinuteTotals


@dataclass(frozen=True, slots=True)
class TaskStatistics:
    by_status: dict[TaskStatus, int]
    by_priority: dict[TaskPriority, int]
    total: int = 0
    completed: int = 0
    overdue: int = 0


@dataclass(frozen=True, slots=True)
class ProjectTaskRollup:
    project_id: UUID
    name: str
    status: ProjectStatus
    budget: Decimal | None
    hourly_rate: Decimal | None
    start_date: date | None
    end_date: date | None
    total_tasks: int = 0
    todo_tasks: int = 0
    in_progress_tasks: int = 0
    review_tasks: int = 0
    completed_tasks: int = 0
    overdue_tasks: int = 0
    estimated_hours: Decimal = ZERO_MONEY
    actual_hours: Decimal = ZERO_MONEY


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    total_invoiced: Decimal = ZERO_MONEY
    total_paid: Decimal = ZERO_MONEY
    outstanding_per_invoice: Decimal = ZERO_MONEY
    total_count: int = 0
    status_counts: dict[InvoiceStatus, int] = field(
        default_factory=lambda: {status: 0 for status in InvoiceStatus}
    )

    @property
    def total_outstanding(self) -> Decimal:
        return self.total_invoiced - self.total_paid


@dataclass(frozen=True, slots=True)
class PaymentStatusTotals:
    status: PaymentStatus
    payment_count: int = 0
    gross_amount: Decimal = ZERO_MONEY
    fee_amount: Decimal = ZERO_MONEY
    net_amount: Decimal = ZERO_MONEY


def _minute_columns(entries: Subquery) -> tuple:
    return (
        func.sum(entries.c.duration_minutes).label("total_minutes"),
        func.sum(case((entries.c.billable.is_(True), entries.c.duration_minutes), else_=0)).label(
            "billable_minutes"
        ),
        func.sum(case((entries.c.billable.is_(False), entries.c.duration_minutes), else_=0)).label(
            "non_billable_minutes"
        ),
        func.count().label("entry_count"),
        func.count(func.distinct(entries.c.entry_date)).label("days_worked"),
    )


def _minute_totals(row: object) -> MinuteTotals:
    if row is None:
        return MinuteTotals()
    return MinuteTotals(
        total_minutes=_as_int(row.total_minutes),
        billable_minutes=_as_int(row.billable_minutes),
        non_billable_minutes=_as_int(row.non_billable_minutes),
        entry_count=_as_int(row.entry_count),
        days_worked=_as_int(row.days_worked),
    )


def check_billable_split(totals: MinuteTotals, label: str) -> None:
    if totals.billable_minutes + totals.non_billable_minutes != totals.total_minutes:
        raise ConsistencyError(
            f"Billable split mismatch for {label}: "
            f"{totals.billable_minutes} + {totals.non_billable_minutes} != {totals.total_minutes}"
        )


def check_additive_consistency(
    grand_total: MinuteTotals,
    **dimensions: list[MinuteTotals],
) -> None:
    """Assert that each dimension's rollup sums exactly to the grand total."""

    check_billable_split(grand_total, "totals")
    for name, rows in dimensions.items():
        for totals in rows:
            check_billable_split(totals, name)
        summed_minutes = sum(totals.total_minutes for totals in rows)
        summed_billable = sum(totals.billable_minutes for totals in rows)
        summed_count = sum(totals.entry_count for totals in rows)
        if (summed_minutes, summed_billable, summed_count) != (
            grand_total.total_minutes,
            grand_total.billable_minutes,
            grand_total.entry_count,
        ):
            raise ConsistencyError(
                f"Rollup '{name}' disagrees with totals: "
                f"{summed_minutes}/{summed_billable}/{summed_count} vs "
                f"{grand_total.total_minutes}/{grand_total.billable_minutes}/{grand_total.entry_count}"
            )


class RollupEngine:
    """Aggregations for time entries, tasks, projects and invoices."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Time entries ----------
    def time_totals(self, scope: ScopedQuery) -> MinuteTotals:
        entries = scope.time_entries()
        row = self.db.execute(select(*_minute_columns(entries)).select_from(entries)).one_or_none()
        return _minute_totals(row)

    def time_by_user(self, scope: ScopedQuery) -> list[UserRollupRow]:
        entries = scope.time_entries()
        stmt = (
            select(User.id, User.full_name, User.email, User.hourly_rate, *_minute_columns(entries))
            .select_from(entries)
            .join(User, User.id == entries.c.user_id)
            .group_by(User.id, User.full_name, User.email, User.hourly_rate)
            .order_by(User.full_name.asc(), User.email.asc())
        )
        return [
            UserRollupRow(
                user_id=row.id,
                full_name=row.full_name,
                email=row.email,
                hourly_rate=row.hourly_rate,
                totals=_minute_totals(row),
            )
            for row in self.db.execute(stmt)
        ]

    def time_by_project(self, scope: ScopedQuery) -> list[ProjectRollupRow]:
        entries = scope.time_entries()
        stmt = (
            select(Project.id, Project.name, *_minute_columns(entries))
            .select_from(entries)
            .join(Project, Project.id == entries.c.project_id)
            .group_by(Project.id, Project.name)
            .order_by(Project.name.asc(), Project.id.asc())
        )
        return [
            ProjectRollupRow(project_id=row.id, project_name=row.name, totals=_minute_totals(row))
            for row in self.db.execute(stmt)
        ]

    def time_by_date(self, scope: ScopedQuery, *, descending: bool) -> list[DateRollupRow]:
        """Rollup per entry date. Callers must state the ordering explicitly."""

        entries = scope.time_entries()
        order = entries.c.entry_date.desc() if descending else entries.c.entry_date.asc()
        stmt = (
            select(entries.c.entry_date, *_minute_columns(entries))
            .select_from(entries)
            .group_by(entries.c.entry_date)
            .order_by(order)
        )
        return [
            DateRollupRow(entry_date=row.entry_date, totals=_minute_totals(row))
            for row in self.db.execute(stmt)
        ]

    def time_by_user_and_date(self, scope: ScopedQuery) -> list[UserDateRollupRow]:
        """Grid rollup ordered by user name, then date ascending."""

        entries = scope.time_entries()
        stmt = (
            select(User.id, User.full_name, User.email, entries.c.entry_date, *_minute_columns(entries))
            .select_from(entries)
            .join(User, User.id == entries.c.user_id)
            .group_by(User.id, User.full_name, User.email, entries.c.entry_date)
            .order_by(User.full_name.asc(), User.email.asc(), entries.c.entry_date.asc())
        )
        return [
            UserDateRollupRow(
                user_id=row.id,
                full_name=row.full_name,
                email=row.email,
                entry_date=row.entry_date,
                totals=_minute_totals(row),
            )
            for row in self.db.execute(stmt)
        ]

    def entry_ids_by_user(self, scope: ScopedQuery) -> dict[UUID, list[str]]:
        entries = scope.time_entries()
        stmt = select(entries.c.user_id, entries.c.id).select_from(entries)
        grouped: dict[UUID, list[str]] = {}
        for row in self.db.execute(stmt):
            grouped.setdefault(row.user_id, []).append(str(row.id))
        return {user_id: sorted(ids) for user_id, ids in grouped.items()}

    # ---------- Tasks ----------
    def task_statistics(self, scope: ScopedQuery, *, today: date) -> TaskStatistics:
        conditions = and_(*scope.task_conditions())

        status_rows = self.db.execute(
            select(Task.status, func.count().label("task_count"))
            .join(Project, Project.id == Task.project_id)
            .where(conditions)
            .group_by(Task.status)
        ).all()
        priority_rows = self.db.execute(
            select(Task.priority, func.count().label("task_count"))
            .join(Project, Project.id == Task.project_id)
            .where(conditions)
            .group_by(Task.priority)
        ).all()
        totals = self.db.execute(
            select(
                func.count().label("total"),
                func.sum(case((Task.status == TaskStatus.DONE, 1), else_=0)).label("completed"),
                func.sum(
                    case(
                        (and_(Task.status != TaskStatus.DONE, Task.due_date < today), 1),
                        else_=0,
                    )
                ).label("overdue"),
            )
            .join(Project, Project.id == Task.project_id)
            .where(conditions)
        ).one_or_none()

        by_status = {status: 0 for status in TaskStatus}
        for row in status_rows:
            by_status[row.status] = _as_int(row.task_count)
        by_priority = {priority: 0 for priority in TaskPriority}
        for row in priority_rows:
            by_priority[row.priority] = _as_int(row.task_count)

        return TaskStatistics(
            by_status=by_status,
            by_priority=by_priority,
            total=_as_int(totals.total) if totals is not None else 0,
            completed=_as_int(totals.completed) if totals is not None else 0,
            overdue=_as_int(totals.overdue) if totals is not None else 0,
        )

    def project_task_rollups(self, scope: ScopedQuery, *, today: date) -> list[ProjectTaskRollup]:
        """Per-project task counts and hour sums; projects without tasks yield zeros."""

        def status_count(status: TaskStatus):
            return func.sum(case((Task.status == status, 1), else_=0))

        group_columns = (
            Project.id,
            Project.name,
            Project.status,
            Project.budget,
            Project.hourly_rate,
            Project.start_date,
            Project.end_date,
            Project.created_at,
        )
        stmt = (
            select(
                *group_columns,
                func.count(Task.id).label("total_tasks"),
                status_count(TaskStatus.TODO).label("todo_tasks"),
                status_count(TaskStatus.IN_PROGRESS).label("in_progress_tasks"),
                status_count(TaskStatus.REVIEW).label("review_tasks"),
                status_count(TaskStatus.DONE).label("completed_tasks"),
                func.sum(
                    case((and_(Task.status != TaskStatus.DONE, Task.due_date < today), 1), else_=0)
                ).label("overdue_tasks"),
                func.sum(Task.estimated_hours).label("estimated_hours"),
                func.sum(Task.actual_hours).label("actual_hours"),
            )
            .outerjoin(Task, Task.project_id == Project.id)
            .where(and_(*scope.project_conditions()))
            .group_by(*group_columns)
            .order_by(Project.created_at.desc(), Project.name.asc())
        )
        return [
            ProjectTaskRollup(
                project_id=row.id,
                name=row.name,
                status=row.status,
                budget=row.budget,
                hourly_rate=row.hourly_rate,
                start_date=row.start_date,
                end_date=row.end_date,
                total_tasks=_as_int(row.total_tasks),
                todo_tasks=_as_int(row.todo_tasks),
                in_progress_tasks=_as_int(row.in_progress_tasks),
                review_tasks=_as_int(row.review_tasks),
                completed_tasks=_as_int(row.completed_tasks),
                overdue_tasks=_as_int(row.overdue_tasks),
                estimated_hours=_as_decimal(row.estimated_hours),
                actual_hours=_as_decimal(row.actual_hours),
            )
            for row in self.db.execute(stmt)
        ]

    # ---------- Invoices and payments ----------
    def invoice_totals(self, scope: ScopedQuery) -> InvoiceTotals:
        invoices = scope.invoices()
        status_columns = [
            func.sum(case((invoices.c.status == status, 1), else_=0)).label(f"{status.value}_count")
            for status in InvoiceStatus
        ]
        row = self.db.execute(
            select(
                func.sum(invoices.c.total_amount).label("total_invoiced"),
                func.sum(invoices.c.amount_paid).label("total_paid"),
                func.sum(invoices.c.total_amount - invoices.c.amount_paid).label("outstanding_per_invoice"),
                func.count().label("total_count"),
                *status_columns,
            ).select_from(invoices)
        ).one_or_none()
        if row is None:
            return InvoiceTotals()
        return InvoiceTotals(
            total_invoiced=_as_decimal(row.total_invoiced),
            total_paid=_as_decimal(row.total_paid),
            outstanding_per_invoice=_as_decimal(row.outstanding_per_invoice),
            total_count=_as_int(row.total_count),
            status_counts={
                status: _as_int(getattr(row, f"{status.value}_count")) for status in InvoiceStatus
            },
        )

    def payment_totals_for_invoices(self, scope: ScopedQuery) -> list[PaymentStatusTotals]:
        invoices = scope.invoices()
        stmt = (
            select(
                Payment.status,
                func.count().label("payment_count"),
                func.sum(Payment.amount).label("gross_amount"),
                func.sum(Payment.fee_amount).label("fee_amount"),
                func.sum(Payment.net_amount).label("net_amount"),
            )
            .where(
                and_(
                    Payment.tenant_id == scope.filter.tenant_id,
                    Payment.invoice_id.in_(select(invoices.c.id)),
                )
            )
            .group_by(Payment.status)
        )
        found = {
            row.status: PaymentStatusTotals(
                status=row.status,
                payment_count=_as_int(row.payment_count),
                gross_amount=_as_decimal(row.gross_amount),
                fee_amount=_as_decimal(row.fee_amount),
                net_amount=_as_decimal(row.net_amount),
            )
            for row in self.db.execute(stmt)
        }
        return [found.get(status, PaymentStatusTotals(status=status)) for status in PaymentStatus]
