"""Repository helpers for payroll batches, payments and invoices."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from reporting_engine.models.entities import (
    Invoice,
    Payment,
    PaymentStatus,
    PayrollBatch,
    PayrollBatchLine,
    PayrollBatchStatus,
    User,
)


class PayrollRepository:
    """Persistence operations used by the reconciliation service."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Batches ----------
    def list_batches(
        self,
        tenant_id: UUID,
        *,
        status: PayrollBatchStatus | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
    ) -> list[PayrollBatch]:
        conditions = [PayrollBatch.tenant_id == tenant_id]
        if status is not None:
            conditions.append(PayrollBatch.status == status)
        if period_start is not None:
            conditions.append(PayrollBatch.pay_period_start >= period_start)
        if period_end is not None:
            conditions.append(PayrollBatch.pay_period_end <= period_end)

        return self.db.scalars(
            select(PayrollBatch)
            .where(and_(*conditions))
            .order_by(PayrollBatch.created_at.desc(), PayrollBatch.batch_number.desc())
        ).all()

    def get_batch(self, tenant_id: UUID, batch_id: UUID, *, for_update: bool = False) -> PayrollBatch | None:
        stmt = select(PayrollBatch).where(
            and_(PayrollBatch.id == batch_id, PayrollBatch.tenant_id == tenant_id)
        )
        if for_update:
            # Row lock, and reload the status even if a stale copy is in the identity map.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.scalar(stmt)

    def claim_batch(
        self,
        batch_id: UUID,
        from_status: PayrollBatchStatus,
        to_status: PayrollBatchStatus,
    ) -> bool:
        """Move a batch between statuses only if it is still in ``from_status``."""

        result = self.db.execute(
            update(PayrollBatch)
            .where(and_(PayrollBatch.id == batch_id, PayrollBatch.status == from_status))
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_batches(self, tenant_id: UUID) -> int:
        return self.db.scalar(
            select(func.count()).select_from(PayrollBatch).where(PayrollBatch.tenant_id == tenant_id)
        ) or 0

    def add_batch(self, batch: PayrollBatch) -> PayrollBatch:
        self.db.add(batch)
        self.db.flush()
        return batch

    def delete_draft_batch(self, batch_id: UUID) -> bool:
        """Delete a batch and its lines only while it is still a draft."""

        self.db.execute(delete(PayrollBatchLine).where(PayrollBatchLine.batch_id == batch_id))
        result = self.db.execute(
            delete(PayrollBatch)
            .where(and_(PayrollBatch.id == batch_id, PayrollBatch.status == PayrollBatchStatus.DRAFT))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ---------- Lines ----------
    def add_line(self, line: PayrollBatchLine) -> PayrollBatchLine:
        self.db.add(line)
        self.db.flush()
        return line

    def list_lines_with_users(self, batch_id: UUID) -> list[tuple[PayrollBatchLine, User]]:
        rows = self.db.execute(
            select(PayrollBatchLine, User)
            .join(User, User.id == PayrollBatchLine.user_id)
            .where(PayrollBatchLine.batch_id == batch_id)
            .order_by(User.full_name.asc(), User.email.asc())
        ).all()
        return [(row[0], row[1]) for row in rows]

    # ---------- Payments ----------
    def count_payments(self, tenant_id: UUID) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Payment).where(Payment.tenant_id == tenant_id)
        ) or 0

    def add_payment(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def list_payments_for_batch(self, batch_id: UUID) -> list[Payment]:
        return self.db.scalars(
            select(Payment)
            .where(Payment.payroll_batch_id == batch_id)
            .order_by(Payment.payment_number.asc())
        ).all()

    def payment_status_counts(self, batch_ids: list[UUID]) -> dict[UUID, dict[PaymentStatus, int]]:
        if not batch_ids:
            return {}
        rows = self.db.execute(
            select(Payment.payroll_batch_id, Payment.status, func.count().label("payment_count"))
            .where(Payment.payroll_batch_id.in_(batch_ids))
            .group_by(Payment.payroll_batch_id, Payment.status)
        ).all()
        counts: dict[UUID, dict[PaymentStatus, int]] = {}
        for row in rows:
            counts.setdefault(row.payroll_batch_id, {})[row.status] = int(row.payment_count)
        return counts

    # ---------- Invoices ----------
    def get_invoice(self, tenant_id: UUID, invoice_id: UUID, *, for_update: bool = False) -> Invoice | None:
        stmt = select(Invoice).where(and_(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id))
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.scalar(stmt)

    def add_to_amount_paid(self, invoice_id: UUID, amount: Decimal) -> None:
        """Increment in SQL so concurrent payments never overwrite each other."""

        self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(amount_paid=Invoice.amount_paid + amount)
            .execution_options(synchronize_session=False)
        )

    def list_payments_for_invoice(self, invoice_id: UUID) -> list[Payment]:
        return self.db.scalars(
            select(Payment)
            .where(Payment.invoice_id == invoice_id)
            .order_by(Payment.payment_date.asc(), Payment.payment_number.asc())
        ).all()
