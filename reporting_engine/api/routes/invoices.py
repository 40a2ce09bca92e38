"""Invoice balance and payment recording endpoints."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from reporting_engine.core.auth import FINANCE_ROLES, RequestUserContext, require_tenant_roles
from reporting_engine.db.dependencies import get_db_session
from reporting_engine.models.entities import PaymentMethod
from reporting_engine.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/invoices", tags=["invoices"])

require_finance_role = require_tenant_roles(*FINANCE_ROLES)


class PaymentCreatePayload(BaseModel):
    amount: Decimal = Field(gt=0)
    fee_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    payment_date: date
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    notes: str | None = Field(default=None, max_length=2000)


def _service(db: Session) -> ReconciliationService:
    return ReconciliationService(db)


@router.get("/{invoice_id}/balance")
def get_invoice_balance(
    invoice_id: UUID,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).invoice_balance(tenant_id=context.tenant_id, invoice_id=invoice_id)


@router.post("/{invoice_id}/payments", status_code=status.HTTP_201_CREATED)
def record_invoice_payment(
    invoice_id: UUID,
    payload: PaymentCreatePayload,
    context: RequestUserContext = Depends(require_finance_role),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    return _service(db).record_payment(
        tenant_id=context.tenant_id,
        invoice_id=invoice_id,
        amount=payload.amount,
        fee_amount=payload.fee_amount,
        payment_date=payload.payment_date,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
