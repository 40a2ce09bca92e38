"""Payroll calculation and batch lifecycle endpoints."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from reporting_engine.core.auth import FINANCE_ROLES, RequestUserContext, require_tenant_roles
from reporting_engine.db.dependencies import get_db_session
from reporting_engine.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/payroll", tags=["payroll"])

require_finance_role = require_tenant_roles(*FINANCE_ROLES)


class PayrollCalculatePayload(BaseModel):
    start_date: date
    end_date: date
    user_ids: list[UUID] | None = None


class PayrollBatchCreatePayload(PayrollCalculatePayload):
    notes: str | None = Field(default=None, max_length=2000)


def _service(db: Session) -> ReconciliationService:
    return ReconciliationService(db)


@router.post("/calculate")
def calculate_payroll(
    payload: PayrollCalculatePayload,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _service(db)
    preview = service.calculate_payroll(
        tenant_id=context.tenant_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        user_ids=payload.user_ids,
    )
    return service.serialize_preview(preview)


@router.get("/batches")
def list_batches(
    status_filter: str | None = Query(default=None, alias="status"),
    period_start: date | None = None,
    period_end: date | None = None,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    items = _service(db).list_batches(
        tenant_id=context.tenant_id,
        status=status_filter,
        period_start=period_start,
        period_end=period_end,
    )
    return {"items": items}


@router.post("/batches", status_code=status.HTTP_201_CREATED)
def create_batch(
    payload: PayrollBatchCreatePayload,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).create_batch(
        tenant_id=context.tenant_id,
        created_by=context.user_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        user_ids=payload.user_ids,
        notes=payload.notes,
    )


@router.get("/batches/{batch_id}")
def get_batch(
    batch_id: UUID,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).get_batch(tenant_id=context.tenant_id, batch_id=batch_id)


@router.delete("/batches/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_batch(
    batch_id: UUID,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> Response:
    _service(db).delete_batch(tenant_id=context.tenant_id, batch_id=batch_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/batches/{batch_id}/process")
def process_batch(
    batch_id: UUID,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).process_batch(tenant_id=context.tenant_id, batch_id=batch_id)
