"""Persistent models for the presale kernel."""

from presale_kernel.models.audit_entry import AuditAction, AuditEntry
from presale_kernel.models.invoice import Invoice
from presale_kernel.models.notification_job import NotificationJob

__all__ = [
    "AuditAction",
    "AuditEntry",
    "Invoice",
    "NotificationJob",
]
