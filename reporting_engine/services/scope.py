"""Scoped query builder shared by every rollup of a report request.

A report request is reduced to one immutable :class:`ReportFilter`. Each
aggregation asks :class:`ScopedQuery` for a fresh base row-set built from that
same filter, so the by-user, by-project, by-date and total rollups can never
drift apart on their predicates.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import TypeVar
from uuid import UUID

from sqlalchemy import ColumnElement, Select, Subquery, and_, select

from reporting_engine.core.errors import ReportValidationError, TenantScopeError
from reporting_engine.models.entities import Invoice, InvoiceStatus, Project, Task, TimeEntry

EnumT = TypeVar("EnumT", bound=enum.Enum)


@dataclass(frozen=True, slots=True)
class ReportFilter:
    """Canonical filter descriptor for one report request."""

    tenant_id: UUID
    user_id: UUID | None = None
    project_id: UUID | None = None
    start_date: date | None = None
    end_date: date | None = None
    billable: bool | None = None
    invoice_status: InvoiceStatus | None = None
    user_ids: frozenset[UUID] | None = None


def parse_enum(enum_cls: type[EnumT], value: str | EnumT | None, field_name: str) -> EnumT | None:
    """Coerce a raw request value into ``enum_cls`` or raise a validation error."""

    if value is None or isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower()
    for member in enum_cls:
        if member.value == normalized:
            return member
    allowed = ", ".join(member.value for member in enum_cls)
    raise ReportValidationError(f"Unknown {field_name} '{value}'. Expected one of: {allowed}.")


def validate_date_range(start_date: date | None, end_date: date | None) -> None:
    if start_date is not None and end_date is not None and start_date > end_date:
        raise ReportValidationError("start_date must be less than or equal to end_date.")


def build_report_filter(
    tenant_id: UUID | None,
    *,
    user_id: UUID | None = None,
    project_id: UUID | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    billable: bool | None = None,
    invoice_status: str | InvoiceStatus | None = None,
    user_ids: Iterable[UUID] | None = None,
) -> ReportFilter:
    """Validate raw request parameters into a :class:`ReportFilter`.

    ``tenant_id`` always comes from the resolved request context. A missing
    tenant is fatal; a reversed date range is rejected rather than swapped.
    """

    if tenant_id is None:
        raise TenantScopeError("Tenant context is required for every report and payroll operation.")
    validate_date_range(start_date, end_date)
    return ReportFilter(
        tenant_id=tenant_id,
        user_id=user_id,
        project_id=project_id,
        start_date=start_date,
        end_date=end_date,
        billable=billable,
        invoice_status=parse_enum(InvoiceStatus, invoice_status, "invoice status"),
        user_ids=frozenset(user_ids) if user_ids else None,
    )


class ScopedQuery:
    """Produces base row-sets for one :class:`ReportFilter`.

    Every method returns a new SQL construct; nothing is cached or mutated,
    so calling a method twice yields the same predicate over current data.
    """

    def __init__(self, report_filter: ReportFilter) -> None:
        self.filter = report_filter

    # ---------- Time entries ----------
    def time_entry_conditions(self) -> list[ColumnElement[bool]]:
        flt = self.filter
        conditions: list[ColumnElement[bool]] = [Project.tenant_id == flt.tenant_id]
        if flt.user_id is not None:
            conditions.append(TimeEntry.user_id == flt.user_id)
        if flt.user_ids is not None:
            conditions.append(TimeEntry.user_id.in_(sorted(flt.user_ids, key=str)))
        if flt.project_id is not None:
            conditions.append(Project.id == flt.project_id)
        if flt.start_date is not None:
            conditions.append(TimeEntry.entry_date >= flt.start_date)
        if flt.end_date is not None:
            conditions.append(TimeEntry.entry_date <= flt.end_date)
        if flt.billable is not None:
            conditions.append(TimeEntry.billable.is_(flt.billable))
        return conditions

    def time_entry_select(self) -> Select:
        return (
            select(
                TimeEntry.id.label("id"),
                TimeEntry.user_id.label("user_id"),
                Task.project_id.label("project_id"),
                TimeEntry.task_id.label("task_id"),
                TimeEntry.entry_date.label("entry_date"),
                TimeEntry.duration_minutes.label("duration_minutes"),
                TimeEntry.billable.label("billable"),
                TimeEntry.created_at.label("created_at"),
            )
            .join(Task, Task.id == TimeEntry.task_id)
            .join(Project, Project.id == Task.project_id)
            .where(and_(*self.time_entry_conditions()))
        )

    def time_entries(self) -> Subquery:
        """Filtered time-entry rows, before any grouping."""

        return self.time_entry_select().subquery("filtered_entries")

    # ---------- Tasks and projects ----------
    def task_conditions(self) -> list[ColumnElement[bool]]:
        flt = self.filter
        conditions: list[ColumnElement[bool]] = [Project.tenant_id == flt.tenant_id]
        if flt.project_id is not None:
            conditions.append(Task.project_id == flt.project_id)
        if flt.user_id is not None:
            conditions.append(Task.assignee_id == flt.user_id)
        return conditions

    def project_conditions(self) -> list[ColumnElement[bool]]:
        flt = self.filter
        conditions: list[ColumnElement[bool]] = [Project.tenant_id == flt.tenant_id]
        if flt.project_id is not None:
            conditions.append(Project.id == flt.project_id)
        return conditions

    # ---------- Invoices ----------
    def invoice_conditions(self) -> list[ColumnElement[bool]]:
        flt = self.filter
        conditions: list[ColumnElement[bool]] = [Invoice.tenant_id == flt.tenant_id]
        if flt.user_id is not None:
            conditions.append(Invoice.user_id == flt.user_id)
        if flt.project_id is not None:
            conditions.append(Invoice.project_id == flt.project_id)
        if flt.invoice_status is not None:
            conditions.append(Invoice.status == flt.invoice_status)
        if flt.start_date is not None:
            conditions.append(Invoice.issue_date >= flt.start_date)
        if flt.end_date is not None:
            conditions.append(Invoice.issue_date <= flt.end_date)
        return conditions

    def invoices(self) -> Subquery:
        """Filtered invoice rows, before any grouping."""

        return (
            select(
                Invoice.id.label("id"),
                Invoice.status.label("status"),
                Invoice.total_amount.label("total_amount"),
                Invoice.amount_paid.label("amount_paid"),
            )
            .where(and_(*self.invoice_conditions()))
            .subquery("filtered_invoices")
        )
