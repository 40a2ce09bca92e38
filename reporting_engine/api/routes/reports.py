"""Reporting endpoints for time, task, project and invoice analytics."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from reporting_engine.core.auth import (
    FINANCE_ROLES,
    RequestUserContext,
    get_current_user_context,
    require_tenant_roles,
)
from reporting_engine.db.dependencies import get_db_session
from reporting_engine.services.report_service import ReportService

router = APIRouter(prefix="/reports", tags=["reports"])

require_finance_role = require_tenant_roles(*FINANCE_ROLES)


def _service(db: Session) -> ReportService:
    return ReportService(db)


@router.get("/time-summary")
def report_time_summary(
    user_id: UUID | None = None,
    project_id: UUID | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).time_summary(
        tenant_id=context.tenant_id,
        user_id=user_id,
        project_id=project_id,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/time-activity")
def report_time_activity(
    user_id: UUID | None = None,
    project_id: UUID | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    billable: bool | None = None,
    sort_by: str = "date",
    sort_order: str = "desc",
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).time_activity(
        tenant_id=context.tenant_id,
        user_id=user_id,
        project_id=project_id,
        start_date=start_date,
        end_date=end_date,
        billable=billable,
        sort_by=sort_by,
        sort_order=sort_order,
        offset=offset,
        limit=limit,
    )


@router.get("/daily-totals")
def report_daily_totals(
    user_id: UUID | None = None,
    project_id: UUID | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).daily_totals(
        tenant_id=context.tenant_id,
        user_id=user_id,
        project_id=project_id,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/task-statistics")
def report_task_statistics(
    user_id: UUID | None = None,
    project_id: UUID | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).task_statistics(
        tenant_id=context.tenant_id,
        user_id=user_id,
        project_id=project_id,
    )


@router.get("/project-progress")
def report_project_progress(
    project_id: UUID | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).project_progress(tenant_id=context.tenant_id, project_id=project_id)


@router.get("/project-budget")
def report_project_budget(
    project_id: UUID | None = None,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).project_budget(tenant_id=context.tenant_id, project_id=project_id)


@router.get("/team-utilization")
def report_team_utilization(
    user_id: UUID | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).team_utilization(
        tenant_id=context.tenant_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/invoices-payments")
def report_invoices_payments(
    user_id: UUID | None = None,
    project_id: UUID | None = None,
    status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).invoices_payments(
        tenant_id=context.tenant_id,
        user_id=user_id,
        project_id=project_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )
