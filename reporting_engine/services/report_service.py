"""Report assembler composing scope, rollups and derived metrics per report type."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from reporting_engine.core.config import get_settings
from reporting_engine.core.errors import ConsistencyError, NotFoundError, ReportValidationError
from reporting_engine.db.session import read_snapshot
from reporting_engine.models.entities import InvoiceStatus, Tenant
from reporting_engine.repositories.reporting_repository import (
    TIME_ACTIVITY_SORT_COLUMNS,
    ReportingRepository,
)
from reporting_engine.services.metrics import (
    ZERO,
    average_hours_per_day,
    budget_remaining,
    budget_used,
    budget_utilization,
    completion_rate,
    fmt_decimal,
    hours_variance,
    minutes_to_hours,
    resolve_hourly_rate,
    utilization_rate,
    variance_percent,
)
from reporting_engine.services.reconciliation_service import (
    balance_due,
    outstanding_amount,
    outstanding_amount_per_invoice,
)
from reporting_engine.services.rollup_engine import (
    MinuteTotals,
    RollupEngine,
    check_additive_consistency,
)
from reporting_engine.services.scope import ReportFilter, ScopedQuery, build_report_filter

logger = logging.getLogger(__name__)

SORT_DIRECTIONS = {"asc": False, "desc": True}


def _minutes_payload(totals: MinuteTotals) -> dict[str, object]:
    return {
        "total_minutes": totals.total_minutes,
        "billable_minutes": totals.billable_minutes,
        "non_billable_minutes": totals.non_billable_minutes,
        "total_hours": fmt_decimal(minutes_to_hours(totals.total_minutes)),
        "billable_hours": fmt_decimal(minutes_to_hours(totals.billable_minutes)),
        "non_billable_hours": fmt_decimal(minutes_to_hours(totals.non_billable_minutes)),
        "entry_count": totals.entry_count,
    }


def _optional_decimal(value: Decimal | None) -> str | None:
    return fmt_decimal(value) if value is not None else None


def _optional_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


class ReportService:
    """One method per report type, each returning ``{data, summary, breakdown?}``."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.repo = ReportingRepository(db)
        self.rollups = RollupEngine(db)
        self.settings = get_settings()

    def _snapshot(self):
        return read_snapshot(self.db, timeout_seconds=self.settings.report_timeout_seconds)

    def _log(self, report: str, report_filter: ReportFilter, row_count: int) -> None:
        logger.info(
            "report_assembled",
            extra={"report": report, "tenant_id": str(report_filter.tenant_id), "row_count": row_count},
        )

    def _require_tenant(self, tenant_id: UUID) -> Tenant:
        tenant = self.repo.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found.")
        return tenant

    # ---------- Time ----------
    def time_summary(
        self,
        *,
        tenant_id: UUID | None,
        user_id: UUID | None = None,
        project_id: UUID | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, object]:
        report_filter = build_report_filter(
            tenant_id,
            user_id=user_id,
            project_id=project_id,
            start_date=start_date,
            end_date=end_date,
        )
        scope = ScopedQuery(report_filter)
        with self._snapshot() as deadline:
            by_user = self.rollups.time_by_user(scope)
            deadline.check()
            by_project = self.rollups.time_by_project(scope)
            deadline.check()
            by_date = self.rollups.time_by_date(scope, descending=True)
            deadline.check()
            totals = self.rollups.time_totals(scope)

        check_additive_consistency(
            totals,
            by_user=[row.totals for row in by_user],
            by_project=[row.totals for row in by_project],
            by_date=[row.totals for row in by_date],
        )
        total_hours = minutes_to_hours(totals.total_minutes)
        billable_hours = minutes_to_hours(totals.billable_minutes)

        self._log("time_summary", report_filter, len(by_user))
        return {
            "data": [
                {
                    "user_id": str(row.user_id),
                    "user_name": row.full_name,
                    "user_email": row.email,
                    **_minutes_payload(row.totals),
                }
                for row in by_user
            ],
            "summary": {
                **_minutes_payload(totals),
                "days_worked": totals.days_worked,
                "utilization_rate": fmt_decimal(utilization_rate(billable_hours, total_hours)),
                "avg_hours_per_day": fmt_decimal(average_hours_per_day(total_hours, totals.days_worked)),
            },
            "breakdown": {
                "by_project": [
                    {
                        "project_id": str(row.project_id),
                        "project_name": row.project_name,
                        **_minutes_payload(row.totals),
                    }
                    for row in by_project
                ],
                "by_date": [
                    {"date": row.entry_date.isoformat(), **_minutes_payload(row.totals)}
                    for row in by_date
                ],
            },
        }

    def time_activity(
        self,
        *,
        tenant_id: UUID | None,
        user_id: UUID | None = None,
        project_id: UUID | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        billable: bool | None = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 50,
    ) -> dict[str, object]:
        report_filter = build_report_filter(
            tenant_id,
            user_id=user_id,
            project_id=project_id,
            start_date=start_date,
            end_date=end_date,
            billable=billable,
        )
        if sort_by not in TIME_ACTIVITY_SORT_COLUMNS:
            allowed = ", ".join(TIME_ACTIVITY_SORT_COLUMNS)
            raise ReportValidationError(f"Unknown sort field '{sort_by}'. Expected one of: {allowed}.")
        direction = sort_order.strip().lower()
        if direction not in SORT_DIRECTIONS:
            raise ReportValidationError("sort_order must be 'asc' or 'desc'.")
        if offset < 0 or limit <= 0:
            raise ReportValidationError("offset must be >= 0 and limit must be > 0.")

        scope = ScopedQuery(report_filter)
        with self._snapshot() as deadline:
            rows = self.repo.list_time_activity(
                scope,
                sort_by=sort_by,
                descending=SORT_DIRECTIONS[direction],
                offset=offset,
                limit=limit,
            )
            deadline.check()
            totals = self.rollups.time_totals(scope)

        self._log("time_activity", report_filter, len(rows))
        return {
            "data": [
                {
                    "id": str(row.id),
                    "date": row.entry_date.isoformat(),
                    "user_id": str(row.user_id),
                    "user_name": row.user_name,
                    "user_email": row.user_email,
                    "project_id": str(row.project_id),
                    "project_name": row.project_name,
                    "task_id": str(row.task_id),
                    "task_title": row.task_title,
                    "duration_minutes": row.duration_minutes,
                    "hours": fmt_decimal(minutes_to_hours(row.duration_minutes)),
                    "billable": row.billable,
                    "description": row.description,
                }
                for row in rows
            ],
            "summary": {
                "total_hours": fmt_decimal(minutes_to_hours(totals.total_minutes)),
                "billable_hours": fmt_decimal(minutes_to_hours(totals.billable_minutes)),
                "non_billable_hours": fmt_decimal(minutes_to_hours(totals.non_billable_minutes)),
                "entry_count": totals.entry_count,
                "total_count": totals.entry_count,
                "offset": offset,
                "limit": limit,
            },
        }

    def daily_totals(
        self,
        *,
        tenant_id: UUID | None,
        user_id: UUID | None = None,
        project_id: UUID | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, object]:
        """Weekly-grid rows: one per user and date, dates ascending."""

        report_filter = build_report_filter(
            tenant_id,
            user_id=user_id,
            project_id=project_id,
            start_date=start_date,
            end_date=end_date,
        )
        scope = ScopedQuery(report_filter)
        with self._snapshot() as deadline:
            grid = self.rollups.time_by_user_and_date(scope)
            deadline.check()
            totals = self.rollups.time_totals(scope)

        check_additive_consistency(totals, by_user_and_date=[row.totals for row in grid])
        self._log("daily_totals", report_filter, len(grid))
        return {
            "data": [
                {
                    "user_id": str(row.user_id),
                    "user_name": row.full_name,
                    "user_email": row.email,
                    "date": row.entry_date.isoformat(),
                    **_minutes_payload(row.totals),
                }
                for row in grid
            ],
            "summary": _minutes_payload(totals),
        }

    def team_utilization(
        self,
        *,
        tenant_id: UUID | None,
        user_id: UUID | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, object]:
        report_filter = build_report_filter(
            tenant_id,
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
        )
        scope = ScopedQuery(report_filter)
        with self._snapshot() as deadline:
            by_user = self.rollups.time_by_user(scope)
            deadline.check()
            totals = self.rollups.time_totals(scope)

        check_additive_consistency(totals, by_user=[row.totals for row in by_user])
        ranked = sorted(by_user, key=lambda row: (-row.totals.total_minutes, row.full_name or "", row.email))

        data: list[dict[str, object]] = []
        for row in ranked:
            total_hours = minutes_to_hours(row.totals.total_minutes)
            billable_hours = minutes_to_hours(row.totals.billable_minutes)
            data.append(
                {
                    "user_id": str(row.user_id),
                    "user_name": row.full_name,
                    "user_email": row.email,
                    **_minutes_payload(row.totals),
                    "days_worked": row.totals.days_worked,
                    "avg_hours_per_day": fmt_decimal(average_hours_per_day(total_hours, row.totals.days_worked)),
                    "utilization_rate": fmt_decimal(utilization_rate(billable_hours, total_hours)),
                }
            )

        team_hours = minutes_to_hours(totals.total_minutes)
        team_billable = minutes_to_hours(totals.billable_minutes)
        self._log("team_utilization", report_filter, len(data))
        return {
            "data": data,
            "summary": {
                **_minutes_payload(totals),
                "member_count": len(data),
                "utilization_rate": fmt_decimal(utilization_rate(team_billable, team_hours)),
            },
        }

    # ---------- Tasks and projects ----------
    def task_statistics(
        self,
        *,
        tenant_id: UUID | None,
        user_id: UUID | None = None,
        project_id: UUID | None = None,
        today: date | None = None,
    ) -> dict[str, object]:
        report_filter = build_report_filter(tenant_id, user_id=user_id, project_id=project_id)
        scope = ScopedQuery(report_filter)
        with self._snapshot():
            stats = self.rollups.task_statistics(scope, today=today or date.today())

        if sum(stats.by_status.values()) != stats.total or sum(stats.by_priority.values()) != stats.total:
            raise ConsistencyError("Task status or priority buckets do not add up to the task total.")

        self._log("task_statistics", report_filter, stats.total)
        return {
            "data": [{"status": status.value, "count": count} for status, count in stats.by_status.items()],
            "summary": {
                "total": stats.total,
                "completed": stats.completed,
                "overdue": stats.overdue,
                "completion_rate": fmt_decimal(completion_rate(stats.completed, stats.total)),
            },
            "breakdown": {
                "by_priority": [
                    {"priority": priority.value, "count": count}
                    for priority, count in stats.by_priority.items()
                ],
            },
        }

    def project_progress(
        self,
        *,
        tenant_id: UUID | None,
        project_id: UUID | None = None,
        today: date | None = None,
    ) -> dict[str, object]:
        report_filter = build_report_filter(tenant_id, project_id=project_id)
        scope = ScopedQuery(report_filter)
        with self._snapshot():
            projects = self.rollups.project_task_rollups(scope, today=today or date.today())

        total_tasks = sum(project.total_tasks for project in projects)
        completed_tasks = sum(project.completed_tasks for project in projects)
        self._log("project_progress", report_filter, len(projects))
        return {
            "data": [
                {
                    "id": str(project.project_id),
                    "name": project.name,
                    "status": project.status.value,
                    "total_tasks": project.total_tasks,
                    "completed_tasks": project.completed_tasks,
                    "in_progress_tasks": project.in_progress_tasks,
                    "todo_tasks": project.todo_tasks,
                    "review_tasks": project.review_tasks,
                    "overdue_tasks": project.overdue_tasks,
                    "completion_rate": fmt_decimal(completion_rate(project.completed_tasks, project.total_tasks)),
                    "total_estimated_hours": fmt_decimal(project.estimated_hours),
                    "total_actual_hours": fmt_decimal(project.actual_hours),
                    "budget": _optional_decimal(project.budget),
                    "start_date": _optional_date(project.start_date),
                    "end_date": _optional_date(project.end_date),
                }
                for project in projects
            ],
            "summary": {
                "project_count": len(projects),
                "total_tasks": total_tasks,
                "completed_tasks": completed_tasks,
                "completion_rate": fmt_decimal(completion_rate(completed_tasks, total_tasks)),
            },
        }

    def project_budget(
        self,
        *,
        tenant_id: UUID | None,
        project_id: UUID | None = None,
        today: date | None = None,
    ) -> dict[str, object]:
        """Budget consumption per project.

        Money used is total actual task hours times the effective rate
        (project rate, then tenant default, then system default). Billable
        logged hours are reported next to it but do not drive consumption.
        """

        report_filter = build_report_filter(tenant_id, project_id=project_id)
        scope = ScopedQuery(report_filter)
        with self._snapshot() as deadline:
            tenant_default_rate = self._require_tenant(report_filter.tenant_id).default_hourly_rate
            projects = self.rollups.project_task_rollups(scope, today=today or date.today())
            deadline.check()
            billable_by_project = {
                row.project_id: row.totals.billable_minutes for row in self.rollups.time_by_project(scope)
            }

        data: list[dict[str, object]] = []
        total_budget = ZERO
        total_used = ZERO
        for project in projects:
            rate = resolve_hourly_rate(
                project.hourly_rate,
                tenant_default_rate,
                self.settings.default_hourly_rate,
            )
            used = budget_used(project.actual_hours, rate.value)
            variance = hours_variance(project.actual_hours, project.estimated_hours)
            billable_hours = minutes_to_hours(billable_by_project.get(project.project_id, 0))
            total_budget += project.budget or ZERO
            total_used += used
            data.append(
                {
                    "id": str(project.project_id),
                    "name": project.name,
                    "status": project.status.value,
                    "budget": fmt_decimal(project.budget or ZERO),
                    "hourly_rate": fmt_decimal(rate.value),
                    "rate_source": rate.source,
                    "budget_used": fmt_decimal(used),
                    "budget_remaining": fmt_decimal(budget_remaining(project.budget, used)),
                    "budget_utilization": fmt_decimal(budget_utilization(used, project.budget)),
                    "total_estimated_hours": fmt_decimal(project.estimated_hours),
                    "total_actual_hours": fmt_decimal(project.actual_hours),
                    "total_billable_hours": fmt_decimal(billable_hours),
                    "hours_variance": fmt_decimal(variance),
                    "hours_variance_percent": fmt_decimal(variance_percent(variance, project.estimated_hours)),
                    "total_tasks": project.total_tasks,
                    "completed_tasks": project.completed_tasks,
                    "completion_rate": fmt_decimal(completion_rate(project.completed_tasks, project.total_tasks)),
                    "start_date": _optional_date(project.start_date),
                    "end_date": _optional_date(project.end_date),
                }
            )

        self._log("project_budget", report_filter, len(data))
        return {
            "data": data,
            "summary": {
                "project_count": len(data),
                "total_budget": fmt_decimal(total_budget),
                "total_budget_used": fmt_decimal(total_used),
                "total_budget_remaining": fmt_decimal(total_budget - total_used),
                "budget_utilization": fmt_decimal(budget_utilization(total_used, total_budget)),
            },
        }

    # ---------- Invoices ----------
    def invoices_payments(
        self,
        *,
        tenant_id: UUID | None,
        user_id: UUID | None = None,
        project_id: UUID | None = None,
        status: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, object]:
        report_filter = build_report_filter(
            tenant_id,
            user_id=user_id,
            project_id=project_id,
            start_date=start_date,
            end_date=end_date,
            invoice_status=status,
        )
        scope = ScopedQuery(report_filter)
        with self._snapshot() as deadline:
            invoices = self.repo.list_invoices(scope)
            deadline.check()
            totals = self.rollups.invoice_totals(scope)
            deadline.check()
            payments = self.rollups.payment_totals_for_invoices(scope)
            balances = [(invoice.total_amount, invoice.amount_paid) for invoice in invoices]
            rows = [
                {
                    "id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "status": invoice.status.value,
                    "user_id": str(invoice.user_id) if invoice.user_id else None,
                    "project_id": str(invoice.project_id) if invoice.project_id else None,
                    "issue_date": invoice.issue_date.isoformat(),
                    "due_date": invoice.due_date.isoformat(),
                    "paid_date": _optional_date(invoice.paid_date),
                    "subtotal": fmt_decimal(invoice.subtotal),
                    "tax_amount": fmt_decimal(invoice.tax_amount),
                    "discount_amount": fmt_decimal(invoice.discount_amount),
                    "total_amount": fmt_decimal(invoice.total_amount),
                    "amount_paid": fmt_decimal(invoice.amount_paid),
                    "balance_due": fmt_decimal(balance_due(invoice.total_amount, invoice.amount_paid)),
                    "currency": invoice.currency,
                }
                for invoice in invoices
            ]

        # aggregate sums must match the per-row detail both ways round
        detail_outstanding = outstanding_amount_per_invoice(balances)
        if not (
            totals.total_outstanding
            == totals.outstanding_per_invoice
            == outstanding_amount(balances)
            == detail_outstanding
        ):
            raise ConsistencyError(
                f"Outstanding mismatch: {totals.total_outstanding} != {detail_outstanding}"
            )
        if sum(totals.status_counts.values()) != totals.total_count:
            raise ConsistencyError("Invoice status counts do not add up to the invoice total.")

        self._log("invoices_payments", report_filter, len(rows))
        return {
            "data": rows,
            "summary": {
                "total_invoiced": fmt_decimal(totals.total_invoiced),
                "total_paid": fmt_decimal(totals.total_paid),
                "total_outstanding": fmt_decimal(totals.total_outstanding),
                **{
                    f"{invoice_status.value}_count": totals.status_counts[invoice_status]
                    for invoice_status in InvoiceStatus
                },
                "total_count": totals.total_count,
            },
            "breakdown": {
                "payments_by_status": [
                    {
                        "status": item.status.value,
                        "count": item.payment_count,
                        "gross_amount": fmt_decimal(item.gross_amount),
                        "fee_amount": fmt_decimal(item.fee_amount),
                        "net_amount": fmt_decimal(item.net_amount),
                    }
                    for item in payments
                ],
                "payment_totals": {
                    "count": sum(item.payment_count for item in payments),
                    "gross_amount": fmt_decimal(sum((item.gross_amount for item in payments), ZERO)),
                    "fee_amount": fmt_decimal(sum((item.fee_amount for item in payments), ZERO)),
                    "net_amount": fmt_decimal(sum((item.net_amount for item in payments), ZERO)),
                },
            },
        }
