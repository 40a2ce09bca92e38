"""Payroll calculation, batch lifecycle and invoice reconciliation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from reporting_engine.core.config import get_settings
from reporting_engine.core.errors import (
    BatchProcessingError,
    InvalidTransitionError,
    NotFoundError,
    ReportValidationError,
)
from reporting_engine.models.entities import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PayrollBatch,
    PayrollBatchLine,
    PayrollBatchStatus,
)
from reporting_engine.repositories.payroll_repository import PayrollRepository
from reporting_engine.repositories.reporting_repository import ReportingRepository
from reporting_engine.services.metrics import (
    ZERO,
    fmt_decimal,
    minutes_to_hours,
    resolve_hourly_rate,
    round_half_up,
)
from reporting_engine.services.rollup_engine import RollupEngine
from reporting_engine.services.scope import ScopedQuery, build_report_filter, parse_enum, validate_date_range
from reporting_engine.services.state_machine import PayrollBatchStateMachine

logger = logging.getLogger(__name__)


def balance_due(total_amount: Decimal, amount_paid: Decimal) -> Decimal:
    return total_amount - amount_paid


def outstanding_amount(invoices: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
    """``sum(total) - sum(paid)`` over ``(total_amount, amount_paid)`` pairs."""

    pairs = list(invoices)
    return sum((total for total, _ in pairs), ZERO) - sum((paid for _, paid in pairs), ZERO)


def outstanding_amount_per_invoice(invoices: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
    """``sum(total - paid)``; equal to :func:`outstanding_amount` under exact decimals."""

    return sum((balance_due(total, paid) for total, paid in invoices), ZERO)


@dataclass(slots=True)
class PayrollLine:
    user_id: UUID
    full_name: str | None
    email: str
    hourly_rate: Decimal
    rate_source: str
    total_minutes: int
    billable_minutes: int
    non_billable_minutes: int
    time_entry_ids: list[str] = field(default_factory=list)

    @property
    def total_hours(self) -> Decimal:
        return minutes_to_hours(self.total_minutes)

    @property
    def billable_hours(self) -> Decimal:
        return minutes_to_hours(self.billable_minutes)

    @property
    def non_billable_hours(self) -> Decimal:
        return minutes_to_hours(self.non_billable_minutes)

    @property
    def total_amount(self) -> Decimal:
        return self.billable_hours * self.hourly_rate


@dataclass(slots=True)
class PayrollPreview:
    tenant_id: UUID
    start_date: date
    end_date: date
    lines: list[PayrollLine] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return sum((line.total_amount for line in self.lines), ZERO)

    @property
    def total_hours(self) -> Decimal:
        return sum((line.total_hours for line in self.lines), ZERO)

    @property
    def total_billable_hours(self) -> Decimal:
        return sum((line.billable_hours for line in self.lines), ZERO)


class ReconciliationService:
    """Payroll previews, batch processing and invoice payment recording."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.repo = PayrollRepository(db)
        self.reporting_repo = ReportingRepository(db)
        self.rollups = RollupEngine(db)
        self.settings = get_settings()

    # ---------- Serialization ----------
    @staticmethod
    def serialize_line(line: PayrollLine) -> dict[str, object]:
        return {
            "user_id": str(line.user_id),
            "full_name": line.full_name,
            "email": line.email,
            "hourly_rate": fmt_decimal(line.hourly_rate),
            "rate_source": line.rate_source,
            "total_hours": fmt_decimal(line.total_hours),
            "billable_hours": fmt_decimal(line.billable_hours),
            "non_billable_hours": fmt_decimal(line.non_billable_hours),
            "total_amount": fmt_decimal(line.total_amount),
            "time_entry_ids": list(line.time_entry_ids),
        }

    def serialize_preview(self, preview: PayrollPreview) -> dict[str, object]:
        return {
            "data": [self.serialize_line(line) for line in preview.lines],
            "summary": {
                "start_date": preview.start_date.isoformat(),
                "end_date": preview.end_date.isoformat(),
                "total_amount": fmt_decimal(preview.total_amount),
                "total_hours": fmt_decimal(preview.total_hours),
                "total_billable_hours": fmt_decimal(preview.total_billable_hours),
                "user_count": len(preview.lines),
            },
        }

    @staticmethod
    def serialize_batch(
        batch: PayrollBatch,
        payment_counts: dict[PaymentStatus, int] | None = None,
    ) -> dict[str, object]:
        counts = payment_counts or {}
        return {
            "id": str(batch.id),
            "batch_number": batch.batch_number,
            "pay_period_start": batch.pay_period_start.isoformat(),
            "pay_period_end": batch.pay_period_end.isoformat(),
            "status": batch.status.value,
            "total_amount": fmt_decimal(batch.total_amount),
            "currency": batch.currency,
            "payment_count": batch.payment_count,
            "processed_at": batch.processed_at.isoformat() if batch.processed_at else None,
            "notes": batch.notes,
            "created_by": str(batch.created_by) if batch.created_by else None,
            "completed_payments": counts.get(PaymentStatus.COMPLETED, 0),
            "pending_payments": counts.get(PaymentStatus.PENDING, 0),
            "failed_payments": counts.get(PaymentStatus.FAILED, 0),
        }

    @staticmethod
    def serialize_payment(payment: Payment) -> dict[str, object]:
        return {
            "id": str(payment.id),
            "payment_number": payment.payment_number,
            "invoice_id": str(payment.invoice_id) if payment.invoice_id else None,
            "user_id": str(payment.user_id) if payment.user_id else None,
            "payroll_batch_id": str(payment.payroll_batch_id) if payment.payroll_batch_id else None,
            "amount": fmt_decimal(payment.amount),
            "fee_amount": fmt_decimal(payment.fee_amount),
            "net_amount": fmt_decimal(payment.net_amount),
            "currency": payment.currency,
            "status": payment.status.value,
            "payment_date": payment.payment_date.isoformat(),
            "payment_method": payment.payment_method.value,
            "time_entry_ids": list(payment.time_entry_ids or []),
            "notes": payment.notes,
        }

    @staticmethod
    def serialize_invoice_balance(invoice: Invoice) -> dict[str, object]:
        return {
            "id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "status": invoice.status.value,
            "total_amount": fmt_decimal(invoice.total_amount),
            "amount_paid": fmt_decimal(invoice.amount_paid),
            "balance_due": fmt_decimal(balance_due(invoice.total_amount, invoice.amount_paid)),
            "paid_date": invoice.paid_date.isoformat() if invoice.paid_date else None,
            "currency": invoice.currency,
        }

    # ---------- Payroll preview ----------
    def calculate_payroll(
        self,
        *,
        tenant_id: UUID | None,
        start_date: date,
        end_date: date,
        user_ids: Iterable[UUID] | None = None,
    ) -> PayrollPreview:
        """Compute per-user payable amounts for a date range without writing anything.

        Only active tenant members are considered; an omitted or empty
        ``user_ids`` selects all of them. Users without a positive payable
        amount are left out of the preview.
        """

        report_filter = build_report_filter(tenant_id, start_date=start_date, end_date=end_date)
        tenant = self.reporting_repo.get_tenant(report_filter.tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found.")

        preview = PayrollPreview(tenant_id=tenant.id, start_date=start_date, end_date=end_date)
        member_ids = set(self.reporting_repo.list_member_ids(tenant.id))
        # an empty selection means every member
        requested = set(user_ids or ())
        selected = member_ids & requested if requested else member_ids
        if not selected:
            return preview

        scope = ScopedQuery(
            build_report_filter(
                tenant.id,
                start_date=start_date,
                end_date=end_date,
                user_ids=selected,
            )
        )
        entry_ids = self.rollups.entry_ids_by_user(scope)
        for row in self.rollups.time_by_user(scope):
            rate = resolve_hourly_rate(
                row.hourly_rate,
                tenant.default_hourly_rate,
                self.settings.default_hourly_rate,
            )
            line = PayrollLine(
                user_id=row.user_id,
                full_name=row.full_name,
                email=row.email,
                hourly_rate=rate.value,
                rate_source=rate.source,
                total_minutes=row.totals.total_minutes,
                billable_minutes=row.totals.billable_minutes,
                non_billable_minutes=row.totals.non_billable_minutes,
                time_entry_ids=entry_ids.get(row.user_id, []),
            )
            if line.total_amount > ZERO:
                preview.lines.append(line)

        preview.lines.sort(key=lambda item: (item.full_name or "", item.email, str(item.user_id)))
        return preview

    # ---------- Batch lifecycle ----------
    def create_batch(
        self,
        *,
        tenant_id: UUID | None,
        created_by: UUID | None,
        start_date: date,
        end_date: date,
        user_ids: Iterable[UUID] | None = None,
        notes: str | None = None,
    ) -> dict[str, object]:
        """Persist the current preview as a draft batch. Stored amounts never change afterwards."""

        preview = self.calculate_payroll(
            tenant_id=tenant_id,
            start_date=start_date,
            end_date=end_date,
            user_ids=user_ids,
        )
        amounts = [round_half_up(line.total_amount) for line in preview.lines]
        batch_number = f"PAYROLL-{self.repo.count_batches(preview.tenant_id) + 1:05d}"
        batch = self.repo.add_batch(
            PayrollBatch(
                tenant_id=preview.tenant_id,
                created_by=created_by,
                batch_number=batch_number,
                pay_period_start=start_date,
                pay_period_end=end_date,
                status=PayrollBatchStatus.DRAFT,
                total_amount=sum(amounts, ZERO),
                payment_count=0,
                notes=notes,
                created_at=datetime.utcnow(),
            )
        )
        for line, amount in zip(preview.lines, amounts):
            self.repo.add_line(
                PayrollBatchLine(
                    batch_id=batch.id,
                    user_id=line.user_id,
                    hourly_rate=line.hourly_rate,
                    total_minutes=line.total_minutes,
                    billable_minutes=line.billable_minutes,
                    amount=amount,
                    time_entry_ids=list(line.time_entry_ids),
                )
            )
        self.db.commit()
        self.db.refresh(batch)

        logger.info(
            "payroll_batch_created",
            extra={
                "tenant_id": str(batch.tenant_id),
                "batch_number": batch.batch_number,
                "line_count": len(amounts),
                "total_amount": str(batch.total_amount),
            },
        )
        return self.get_batch(tenant_id=batch.tenant_id, batch_id=batch.id)

    def _require_batch(
        self,
        tenant_id: UUID | None,
        batch_id: UUID,
        *,
        for_update: bool = False,
    ) -> PayrollBatch:
        report_filter = build_report_filter(tenant_id)
        batch = self.repo.get_batch(report_filter.tenant_id, batch_id, for_update=for_update)
        if batch is None:
            raise NotFoundError("Payroll batch not found.")
        return batch

    def list_batches(
        self,
        *,
        tenant_id: UUID | None,
        status: str | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
    ) -> list[dict[str, object]]:
        report_filter = build_report_filter(tenant_id)
        validate_date_range(period_start, period_end)
        batches = self.repo.list_batches(
            report_filter.tenant_id,
            status=parse_enum(PayrollBatchStatus, status, "payroll batch status"),
            period_start=period_start,
            period_end=period_end,
        )
        counts = self.repo.payment_status_counts([batch.id for batch in batches])
        return [self.serialize_batch(batch, counts.get(batch.id)) for batch in batches]

    def get_batch(self, *, tenant_id: UUID | None, batch_id: UUID) -> dict[str, object]:
        batch = self._require_batch(tenant_id, batch_id)
        counts = self.repo.payment_status_counts([batch.id])
        payload = self.serialize_batch(batch, counts.get(batch.id))
        payload["lines"] = [
            {
                "user_id": str(line.user_id),
                "full_name": user.full_name,
                "email": user.email,
                "hourly_rate": fmt_decimal(line.hourly_rate),
                "total_hours": fmt_decimal(minutes_to_hours(line.total_minutes)),
                "billable_hours": fmt_decimal(minutes_to_hours(line.billable_minutes)),
                "amount": fmt_decimal(line.amount),
                "time_entry_ids": list(line.time_entry_ids or []),
            }
            for line, user in self.repo.list_lines_with_users(batch.id)
        ]
        payload["payments"] = [
            self.serialize_payment(payment) for payment in self.repo.list_payments_for_batch(batch.id)
        ]
        return payload

    def delete_batch(self, *, tenant_id: UUID | None, batch_id: UUID) -> None:
        batch = self._require_batch(tenant_id, batch_id, for_update=True)
        batch_number = batch.batch_number
        batch_tenant_id = batch.tenant_id
        status = batch.status
        deleted = PayrollBatchStateMachine.can_delete(status) and self.repo.delete_draft_batch(batch.id)
        if not deleted:
            self.db.rollback()
            logger.warning(
                "payroll_batch_delete_rejected",
                extra={"tenant_id": str(batch_tenant_id), "batch_number": batch_number},
            )
            raise InvalidTransitionError(status.value, "deleted", "only draft batches can be deleted")
        self.db.commit()
        logger.info(
            "payroll_batch_deleted",
            extra={"tenant_id": str(batch_tenant_id), "batch_number": batch_number},
        )

    def _reject_processing(self, batch_tenant_id: UUID, batch_number: str, status: PayrollBatchStatus) -> None:
        self.db.rollback()
        logger.warning(
            "payroll_batch_transition_rejected",
            extra={
                "tenant_id": str(batch_tenant_id),
                "batch_number": batch_number,
                "status": status.value,
            },
        )

    def process_batch(self, *, tenant_id: UUID | None, batch_id: UUID) -> dict[str, object]:
        """Move a draft batch to completed, creating one payment per stored line.

        Runs as one transaction: either every payment exists and the batch is
        completed, or nothing is written and the batch stays in its prior status.
        The batch row is locked and claimed with a status-guarded update, so two
        overlapping requests can never both pay the same batch.
        """

        batch = self._require_batch(tenant_id, batch_id, for_update=True)
        batch_number = batch.batch_number
        batch_tenant_id = batch.tenant_id
        status = batch.status
        try:
            PayrollBatchStateMachine.validate_transition(status, PayrollBatchStatus.PROCESSING)
        except InvalidTransitionError:
            self._reject_processing(batch_tenant_id, batch_number, status)
            raise
        if not self.repo.claim_batch(batch.id, PayrollBatchStatus.DRAFT, PayrollBatchStatus.PROCESSING):
            self._reject_processing(batch_tenant_id, batch_number, status)
            raise InvalidTransitionError(
                status.value,
                PayrollBatchStatus.PROCESSING.value,
                "batch was claimed by another request",
            )

        try:
            self.db.refresh(batch)

            lines = self.repo.list_lines_with_users(batch.id)
            next_number = self.repo.count_payments(batch.tenant_id)
            payment_date = date.today()
            for offset, (line, _user) in enumerate(lines, start=1):
                self.repo.add_payment(
                    Payment(
                        tenant_id=batch.tenant_id,
                        user_id=line.user_id,
                        payroll_batch_id=batch.id,
                        payment_number=f"PAY-{next_number + offset:05d}",
                        amount=line.amount,
                        fee_amount=Decimal("0.00"),
                        net_amount=line.amount,
                        currency=batch.currency,
                        status=PaymentStatus.COMPLETED,
                        payment_date=payment_date,
                        payment_method=PaymentMethod.BANK_TRANSFER,
                        time_entry_ids=list(line.time_entry_ids or []),
                        created_at=datetime.utcnow(),
                    )
                )

            PayrollBatchStateMachine.validate_transition(batch.status, PayrollBatchStatus.COMPLETED)
            batch.status = PayrollBatchStatus.COMPLETED
            batch.payment_count = len(lines)
            batch.processed_at = datetime.utcnow()
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.exception(
                "payroll_batch_processing_failed",
                extra={"tenant_id": str(batch_tenant_id), "batch_number": batch_number},
            )
            raise BatchProcessingError(
                f"Processing payroll batch {batch_number} failed; no payments were created."
            ) from exc

        logger.info(
            "payroll_batch_processed",
            extra={
                "tenant_id": str(batch_tenant_id),
                "batch_number": batch_number,
                "payment_count": batch.payment_count,
            },
        )
        return self.get_batch(tenant_id=batch_tenant_id, batch_id=batch.id)

    # ---------- Invoices ----------
    def invoice_balance(self, *, tenant_id: UUID | None, invoice_id: UUID) -> dict[str, object]:
        report_filter = build_report_filter(tenant_id)
        invoice = self.repo.get_invoice(report_filter.tenant_id, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found.")
        payload = self.serialize_invoice_balance(invoice)
        payload["payments"] = [
            self.serialize_payment(payment) for payment in self.repo.list_payments_for_invoice(invoice.id)
        ]
        return payload

    def record_payment(
        self,
        *,
        tenant_id: UUID | None,
        invoice_id: UUID,
        amount: Decimal,
        fee_amount: Decimal = Decimal("0.00"),
        payment_date: date,
        payment_method: str | PaymentMethod = PaymentMethod.BANK_TRANSFER,
        notes: str | None = None,
    ) -> dict[str, object]:
        """Record a payment against an invoice and advance its paid amount.

        The invoice becomes ``paid`` only once the accumulated amount covers
        its total; partial payments leave the status untouched. The paid amount
        is incremented in SQL on a locked invoice row, so overlapping payments
        all count.
        """

        amount = round_half_up(Decimal(amount))
        fee_amount = round_half_up(Decimal(fee_amount))
        if amount <= ZERO:
            raise ReportValidationError("Payment amount must be greater than zero.")
        if fee_amount < ZERO or fee_amount > amount:
            raise ReportValidationError("Payment fee must be between zero and the payment amount.")
        method = parse_enum(PaymentMethod, payment_method, "payment method")

        report_filter = build_report_filter(tenant_id)
        invoice = self.repo.get_invoice(report_filter.tenant_id, invoice_id, for_update=True)
        if invoice is None:
            raise NotFoundError("Invoice not found.")
        if invoice.status == InvoiceStatus.CANCELLED:
            self.db.rollback()
            raise ReportValidationError("Payments cannot be recorded against a cancelled invoice.")

        payment = self.repo.add_payment(
            Payment(
                tenant_id=invoice.tenant_id,
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                payment_number=f"PAY-{self.repo.count_payments(invoice.tenant_id) + 1:05d}",
                amount=amount,
                fee_amount=fee_amount,
                net_amount=amount - fee_amount,
                currency=invoice.currency,
                status=PaymentStatus.COMPLETED,
                payment_date=payment_date,
                payment_method=method,
                notes=notes,
                created_at=datetime.utcnow(),
            )
        )
        self.repo.add_to_amount_paid(invoice.id, amount)
        self.db.refresh(invoice)
        if invoice.amount_paid >= invoice.total_amount and invoice.status != InvoiceStatus.PAID:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_date = payment_date
        self.db.commit()
        self.db.refresh(payment)
        self.db.refresh(invoice)

        logger.info(
            "payment_recorded",
            extra={
                "tenant_id": str(invoice.tenant_id),
                "invoice_number": invoice.invoice_number,
                "payment_number": payment.payment_number,
                "amount": str(amount),
            },
        )
        return {
            "payment": self.serialize_payment(payment),
            "invoice": self.serialize_invoice_balance(invoice),
        }
