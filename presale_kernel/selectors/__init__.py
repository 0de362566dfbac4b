"""Selectors for the presale kernel (read side)."""

from presale_kernel.selectors.audit_selector import AuditSelector, AuditTrace, AuditTraceEntry
from presale_kernel.selectors.invoice_selector import InvoiceSelector
from presale_kernel.selectors.queue_selector import QueueSelector

__all__ = [
    "AuditSelector",
    "AuditTrace",
    "AuditTraceEntry",
    "InvoiceSelector",
    "QueueSelector",
]
