"""ORM model package."""

from reporting_engine.models.entities import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PayrollBatch,
    PayrollBatchLine,
    PayrollBatchStatus,
    Project,
    ProjectStatus,
    Task,
    TaskPriority,
    TaskStatus,
    Tenant,
    TenantMembership,
    TenantRole,
    TimeEntry,
    User,
)

__all__ = [
    "Invoice",
    "InvoiceStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PayrollBatch",
    "PayrollBatchLine",
    "PayrollBatchStatus",
    "Project",
    "ProjectStatus",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "Tenant",
    "TenantMembership",
    "TenantRole",
    "TimeEntry",
    "User",
]
