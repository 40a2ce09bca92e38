from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reporting_engine.core.errors import (
    BatchProcessingError,
    ConsistencyError,
    InvalidTransitionError,
    NotFoundError,
    ReportValidationError,
)
from reporting_engine.models.entities import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    PayrollBatch,
    PayrollBatchStatus,
    TenantRole,
)
from reporting_engine.repositories.payroll_repository import PayrollRepository
from reporting_engine.services import report_service as report_service_module
from reporting_engine.services.reconciliation_service import (
    ReconciliationService,
    outstanding_amount,
    outstanding_amount_per_invoice,
)
from reporting_engine.services.report_service import ReportService
from reporting_engine.services.state_machine import PayrollBatchStateMachine

WEEK_START = date(2024, 1, 1)
WEEK_END = date(2024, 1, 7)


def _batch_id(batch: dict[str, object]) -> uuid.UUID:
    return uuid.UUID(str(batch["id"]))


def _payroll_fixture(seed):
    tenant = seed.tenant("acme")
    alice = seed.user("alice@test.local", full_name="Alice", hourly_rate=Decimal("40.00"))
    seed.member(tenant, alice)
    task = seed.task(seed.project(tenant, "Project P"))
    for day in range(1, 6):
        seed.time_entry(task, alice, date(2024, 1, day), 120, billable=True)
    seed.time_entry(task, alice, date(2024, 1, 3), 45, billable=False)
    # outside the pay period
    seed.time_entry(task, alice, date(2024, 1, 8), 600, billable=True)
    return tenant, alice, task


def test_preview_amount_is_billable_hours_times_rate(db_session: Session, seed) -> None:
    tenant, alice, _ = _payroll_fixture(seed)
    service = ReconciliationService(db_session)

    preview = service.calculate_payroll(
        tenant_id=tenant.id,
        start_date=WEEK_START,
        end_date=WEEK_END,
        user_ids=[alice.id],
    )

    assert len(preview.lines) == 1
    line = preview.lines[0]
    assert line.billable_hours == Decimal("10")
    assert line.hourly_rate == Decimal("40.00")
    assert line.rate_source == "explicit"
    assert line.total_amount == line.billable_hours * line.hourly_rate == Decimal("400")
    assert line.non_billable_minutes == 45
    assert len(line.time_entry_ids) == 6
    assert line.time_entry_ids == sorted(line.time_entry_ids)
    assert preview.total_amount == Decimal("400")


def test_preview_is_deterministic(db_session: Session, seed) -> None:
    tenant, _, _ = _payroll_fixture(seed)
    service = ReconciliationService(db_session)

    first = service.serialize_preview(
        service.calculate_payroll(tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END)
    )
    second = service.serialize_preview(
        service.calculate_payroll(tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END)
    )

    assert first == second
    assert first["summary"]["total_amount"] == "400.00"
    assert first["summary"]["user_count"] == 1


def test_preview_falls_back_to_tenant_then_system_rate(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme", default_hourly_rate=Decimal("45.00"))
    other = seed.tenant("globex")
    bob = seed.user("bob@test.local", full_name="Bob")
    seed.member(tenant, bob)
    seed.member(other, bob)
    seed.time_entry(seed.task(seed.project(tenant, "P")), bob, WEEK_START, 60)
    seed.time_entry(seed.task(seed.project(other, "Q")), bob, WEEK_START, 60)
    service = ReconciliationService(db_session)

    tenant_line = service.calculate_payroll(tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END).lines[0]
    system_line = service.calculate_payroll(tenant_id=other.id, start_date=WEEK_START, end_date=WEEK_END).lines[0]

    assert (tenant_line.hourly_rate, tenant_line.rate_source) == (Decimal("45.00"), "tenant_default")
    assert (system_line.hourly_rate, system_line.rate_source) == (Decimal("50.00"), "system_default")


def test_preview_skips_non_members_and_zero_amount_users(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme")
    task = seed.task(seed.project(tenant, "P"))
    outsider = seed.user("outsider@test.local", hourly_rate=Decimal("30.00"))
    idle = seed.user("idle@test.local", hourly_rate=Decimal("30.00"))
    seed.member(tenant, idle)
    seed.time_entry(task, outsider, WEEK_START, 60)
    seed.time_entry(task, idle, WEEK_START, 60, billable=False)

    preview = ReconciliationService(db_session).calculate_payroll(
        tenant_id=tenant.id,
        start_date=WEEK_START,
        end_date=WEEK_END,
    )

    assert preview.lines == []
    assert preview.total_amount == Decimal("0")


def test_preview_rejects_reversed_range(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme")

    with pytest.raises(ReportValidationError):
        ReconciliationService(db_session).calculate_payroll(
            tenant_id=tenant.id,
            start_date=WEEK_END,
            end_date=WEEK_START,
        )


def test_create_and_process_batch_creates_one_payment(db_session: Session, seed) -> None:
    tenant, alice, _ = _payroll_fixture(seed)
    service = ReconciliationService(db_session)

    batch = service.create_batch(
        tenant_id=tenant.id,
        created_by=alice.id,
        start_date=WEEK_START,
        end_date=WEEK_END,
        user_ids=[alice.id],
    )
    assert batch["batch_number"] == "PAYROLL-00001"
    assert batch["status"] == "draft"
    assert batch["total_amount"] == "400.00"
    assert batch["lines"][0]["amount"] == "400.00"

    processed = service.process_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))

    assert processed["status"] == "completed"
    assert processed["payment_count"] == 1
    assert processed["completed_payments"] == 1
    assert processed["processed_at"] is not None
    payment = processed["payments"][0]
    assert payment["payment_number"] == "PAY-00001"
    assert payment["amount"] == "400.00"
    assert payment["net_amount"] == "400.00"
    assert payment["fee_amount"] == "0.00"
    assert payment["payment_method"] == "bank_transfer"
    assert payment["status"] == PaymentStatus.COMPLETED.value
    assert len(payment["time_entry_ids"]) == 6


def test_batch_amounts_do_not_follow_later_time_changes(db_session: Session, seed) -> None:
    tenant, alice, task = _payroll_fixture(seed)
    service = ReconciliationService(db_session)
    batch = service.create_batch(
        tenant_id=tenant.id,
        created_by=None,
        start_date=WEEK_START,
        end_date=WEEK_END,
    )

    seed.time_entry(task, alice, date(2024, 1, 6), 300, billable=True)

    stored = service.get_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))
    fresh = service.calculate_payroll(tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END)
    assert stored["total_amount"] == "400.00"
    assert fresh.total_amount == Decimal("600")


def test_empty_batch_is_created_and_completes_without_payments(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme")
    service = ReconciliationService(db_session)

    batch = service.create_batch(tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END)
    processed = service.process_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))

    assert batch["lines"] == []
    assert batch["total_amount"] == "0.00"
    assert processed["status"] == "completed"
    assert processed["payments"] == []


def test_completed_batch_cannot_be_processed_or_deleted(db_session: Session, seed) -> None:
    tenant, _, _ = _payroll_fixture(seed)
    service = ReconciliationService(db_session)
    batch = service.create_batch(tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END)
    service.process_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))

    with pytest.raises(InvalidTransitionError):
        service.process_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))
    with pytest.raises(InvalidTransitionError):
        service.delete_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))

    payment_count = db_session.scalar(select(func.count()).select_from(Payment))
    assert payment_count == 1


def test_draft_batch_can_be_deleted(db_session: Session, seed) -> None:
    tenant, _, _ = _payroll_fixture(seed)
    service = ReconciliationService(db_session)
    batch = service.create_batch(tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END)

    service.delete_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))

    with pytest.raises(NotFoundError):
        service.get_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))


def test_batch_processing_failure_rolls_back_everything(
    db_session: Session,
    seed,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    tenant = seed.tenant("acme")
    task = seed.task(seed.project(tenant, "P"))
    for index in range(2):
        user = seed.user(f"user{index}@test.local", full_name=f"User {index}", hourly_rate=Decimal("10.00"))
        seed.member(tenant, user, TenantRole.MEMBER)
        seed.time_entry(task, user, WEEK_START, 60)
    service = ReconciliationService(db_session)
    batch = service.create_batch(tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END)

    original_add_payment = PayrollRepository.add_payment
    calls = {"count": 0}

    def flaky_add_payment(self, payment):
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("bank connector down")
        return original_add_payment(self, payment)

    monkeypatch.setattr(PayrollRepository, "add_payment", flaky_add_payment)

    with caplog.at_level(logging.ERROR, logger="reporting_engine"):
        with pytest.raises(BatchProcessingError):
            service.process_batch(tenant_id=tenant.id, batch_id=_batch_id(batch))

    db_session.expire_all()
    stored = db_session.get(PayrollBatch, _batch_id(batch))
    assert stored.status == PayrollBatchStatus.DRAFT
    assert stored.processed_at is None
    assert db_session.scalar(select(func.count()).select_from(Payment)) == 0
    assert any(record.getMessage() == "payroll_batch_processing_failed" for record in caplog.records)


def test_state_machine_transition_table() -> None:
    assert PayrollBatchStateMachine.can_transition(PayrollBatchStatus.DRAFT, PayrollBatchStatus.PROCESSING)
    assert PayrollBatchStateMachine.can_transition(PayrollBatchStatus.PROCESSING, PayrollBatchStatus.COMPLETED)
    assert not PayrollBatchStateMachine.can_transition(PayrollBatchStatus.DRAFT, PayrollBatchStatus.COMPLETED)
    assert PayrollBatchStateMachine.get_next_statuses(PayrollBatchStatus.COMPLETED) == []

    with pytest.raises(InvalidTransitionError) as excinfo:
        PayrollBatchStateMachine.validate_transition(PayrollBatchStatus.COMPLETED, PayrollBatchStatus.PROCESSING)
    assert excinfo.value.from_status == "completed"
    assert excinfo.value.status_code == 409


def test_partial_payments_keep_invoice_sent(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme")
    invoice = seed.invoice(tenant, "INV-1", Decimal("500.00"), status=InvoiceStatus.SENT)
    service = ReconciliationService(db_session)

    for _ in range(2):
        result = service.record_payment(
            tenant_id=tenant.id,
            invoice_id=invoice.id,
            amount=Decimal("200"),
            payment_date=date(2024, 2, 1),
        )

    balance = service.invoice_balance(tenant_id=tenant.id, invoice_id=invoice.id)
    assert result["payment"]["payment_number"] == "PAY-00002"
    assert balance["amount_paid"] == "400.00"
    assert balance["balance_due"] == "100.00"
    assert balance["status"] == "sent"
    assert balance["paid_date"] is None
    assert len(balance["payments"]) == 2


def test_full_payment_marks_invoice_paid(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme")
    invoice = seed.invoice(tenant, "INV-1", Decimal("500.00"), amount_paid=Decimal("400.00"))
    service = ReconciliationService(db_session)

    result = service.record_payment(
        tenant_id=tenant.id,
        invoice_id=invoice.id,
        amount=Decimal("100.00"),
        fee_amount=Decimal("2.50"),
        payment_date=date(2024, 2, 1),
        payment_method="wise",
    )

    assert result["payment"]["net_amount"] == "97.50"
    assert result["payment"]["payment_method"] == "wise"
    assert result["invoice"]["status"] == "paid"
    assert result["invoice"]["paid_date"] == "2024-02-01"
    assert result["invoice"]["balance_due"] == "0.00"


def test_payment_validation_rules(db_session: Session, seed) -> None:
    tenant = seed.tenant("acme")
    other = seed.tenant("globex")
    invoice = seed.invoice(tenant, "INV-1", Decimal("500.00"))
    cancelled = seed.invoice(tenant, "INV-2", Decimal("500.00"), status=InvoiceStatus.CANCELLED)
    service = ReconciliationService(db_session)

    with pytest.raises(ReportValidationError):
        service.record_payment(tenant_id=tenant.id, invoice_id=invoice.id, amount=Decimal("0"), payment_date=WEEK_START)
    with pytest.raises(ReportValidationError):
        service.record_payment(
            tenant_id=tenant.id,
            invoice_id=invoice.id,
            amount=Decimal("10"),
            fee_amount=Decimal("11"),
            payment_date=WEEK_START,
        )
    with pytest.raises(ReportValidationError):
        service.record_payment(
            tenant_id=tenant.id, invoice_id=cancelled.id, amount=Decimal("10"), payment_date=WEEK_START
        )
    with pytest.raises(NotFoundError):
        service.record_payment(tenant_id=other.id, invoice_id=invoice.id, amount=Decimal("10"), payment_date=WEEK_START)


def test_outstanding_sum_then_subtract_equals_subtract_then_sum() -> None:
    invoices = [
        (Decimal("500.00"), Decimal("400.00")),
        (Decimal("120.10"), Decimal("0.00")),
        (Decimal("99.99"), Decimal("99.99")),
        (Decimal("0.01"), Decimal("0.00")),
        (Decimal("1234.57"), Decimal("1000.03")),
    ]

    assert outstanding_amount(invoices) == outstanding_amount_per_invoice(invoices) == Decimal("454.67")
    assert outstanding_amount([]) == outstanding_amount_per_invoice([]) == Decimal("0")


def test_invoices_report_checks_totals_through_outstanding_helpers(
    monkeypatch: pytest.MonkeyPatch, db_session: Session, seed
) -> None:
    tenant = seed.tenant("acme")
    seed.invoice(tenant, "INV-1", Decimal("500.00"), amount_paid=Decimal("400.00"))
    seed.invoice(tenant, "INV-2", Decimal("120.10"))
    service = ReportService(db_session)

    report = service.invoices_payments(tenant_id=tenant.id)
    assert report["summary"]["total_outstanding"] == "220.10"

    monkeypatch.setattr(
        report_service_module,
        "outstanding_amount_per_invoice",
        lambda balances: outstanding_amount_per_invoice(balances) + Decimal("0.01"),
    )
    with pytest.raises(ConsistencyError):
        service.invoices_payments(tenant_id=tenant.id)


def test_empty_user_selection_means_every_member(db_session: Session, seed) -> None:
    tenant, alice, task = _payroll_fixture(seed)
    bob = seed.user("bob@test.local", full_name="Bob", hourly_rate=Decimal("30.00"))
    seed.member(tenant, bob)
    seed.time_entry(task, bob, WEEK_START, 60)
    service = ReconciliationService(db_session)

    everyone = service.calculate_payroll(tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END)
    empty = service.calculate_payroll(tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END, user_ids=[])
    only_alice = service.calculate_payroll(
        tenant_id=tenant.id, start_date=WEEK_START, end_date=WEEK_END, user_ids=[alice.id]
    )

    assert [line.user_id for line in empty.lines] == [line.user_id for line in everyone.lines]
    assert {line.user_id for line in empty.lines} == {alice.id, bob.id}
    assert empty.total_amount == everyone.total_amount == Decimal("430.00")
    assert [line.user_id for line in only_alice.lines] == [alice.id]


def test_stale_session_cannot_process_batch_twice(session_pair: tuple[Session, Session], shared_seed) -> None:
    first, second = session_pair
    tenant, _, _ = _payroll_fixture(shared_seed)
    batch = ReconciliationService(first).create_batch(
        tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END
    )
    batch_id = _batch_id(batch)
    # the second request loaded the batch while it was still a draft
    stale = second.get(PayrollBatch, batch_id)
    assert stale.status == PayrollBatchStatus.DRAFT

    ReconciliationService(first).process_batch(tenant_id=tenant.id, batch_id=batch_id)
    with pytest.raises(InvalidTransitionError) as excinfo:
        ReconciliationService(second).process_batch(tenant_id=tenant.id, batch_id=batch_id)

    assert excinfo.value.from_status == "completed"
    first.expire_all()
    payment_count = first.scalar(
        select(func.count()).select_from(Payment).where(Payment.payroll_batch_id == batch_id)
    )
    assert payment_count == 1
    assert first.get(PayrollBatch, batch_id).status == PayrollBatchStatus.COMPLETED


def test_stale_session_cannot_delete_processed_batch(session_pair: tuple[Session, Session], shared_seed) -> None:
    first, second = session_pair
    tenant, _, _ = _payroll_fixture(shared_seed)
    batch = ReconciliationService(first).create_batch(
        tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END
    )
    batch_id = _batch_id(batch)
    second.get(PayrollBatch, batch_id)

    ReconciliationService(first).process_batch(tenant_id=tenant.id, batch_id=batch_id)
    with pytest.raises(InvalidTransitionError):
        ReconciliationService(second).delete_batch(tenant_id=tenant.id, batch_id=batch_id)

    first.expire_all()
    assert first.get(PayrollBatch, batch_id).status == PayrollBatchStatus.COMPLETED
    assert first.scalar(select(func.count()).select_from(Payment)) == 1


def test_batch_claim_only_succeeds_from_expected_status(db_session: Session, seed) -> None:
    tenant, _, _ = _payroll_fixture(seed)
    batch = ReconciliationService(db_session).create_batch(
        tenant_id=tenant.id, created_by=None, start_date=WEEK_START, end_date=WEEK_END
    )
    repo = PayrollRepository(db_session)

    assert repo.claim_batch(_batch_id(batch), PayrollBatchStatus.DRAFT, PayrollBatchStatus.PROCESSING) is True
    assert repo.claim_batch(_batch_id(batch), PayrollBatchStatus.DRAFT, PayrollBatchStatus.PROCESSING) is False
    assert repo.delete_draft_batch(_batch_id(batch)) is False
    db_session.rollback()


def test_overlapping_payments_on_one_invoice_all_count(session_pair: tuple[Session, Session], shared_seed) -> None:
    first, second = session_pair
    tenant = shared_seed.tenant("acme")
    invoice = shared_seed.invoice(tenant, "INV-1", Decimal("500.00"))
    # the second request read the unpaid invoice before the first one committed
    stale = second.get(Invoice, invoice.id)
    assert stale.amount_paid == Decimal("0.00")

    ReconciliationService(first).record_payment(
        tenant_id=tenant.id, invoice_id=invoice.id, amount=Decimal("200"), payment_date=WEEK_START
    )
    result = ReconciliationService(second).record_payment(
        tenant_id=tenant.id, invoice_id=invoice.id, amount=Decimal("200"), payment_date=WEEK_START
    )

    assert result["payment"]["payment_number"] == "PAY-00002"
    assert result["invoice"]["amount_paid"] == "400.00"
    first.expire_all()
    stored = first.get(Invoice, invoice.id)
    paid_total = first.scalar(select(func.sum(Payment.amount)).where(Payment.invoice_id == invoice.id))
    assert stored.amount_paid == paid_total == Decimal("400.00")
    assert stored.status == InvoiceStatus.SENT


def test_overlapping_payments_that_settle_invoice_mark_it_paid(
    session_pair: tuple[Session, Session], shared_seed
) -> None:
    first, second = session_pair
    tenant = shared_seed.tenant("acme")
    invoice = shared_seed.invoice(tenant, "INV-1", Decimal("500.00"))
    second.get(Invoice, invoice.id)

    ReconciliationService(first).record_payment(
        tenant_id=tenant.id, invoice_id=invoice.id, amount=Decimal("300"), payment_date=WEEK_START
    )
    result = ReconciliationService(second).record_payment(
        tenant_id=tenant.id, invoice_id=invoice.id, amount=Decimal("200"), payment_date=date(2024, 1, 2)
    )

    assert result["invoice"]["status"] == "paid"
    assert result["invoice"]["paid_date"] == "2024-01-02"
    assert result["invoice"]["balance_due"] == "0.00"
