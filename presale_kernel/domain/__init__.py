"""
Pure domain layer.

Value objects, state machines and calculations with NO dependencies on
the ORM, the database or I/O.  Time enters only through the Clock
abstraction defined here.
"""

from presale_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from presale_kernel.domain.delivery import (
    BackoffPolicy,
    ClaimResult,
    ClaimStatus,
    CompleteResult,
    CompleteStatus,
    EnqueueRequest,
    FailResult,
    FailStatus,
    JobHealth,
    JobStatus,
    JobView,
    QueueSnapshot,
    compute_backoff,
    derive_health,
)
from presale_kernel.domain.invoice import (
    INVOICE_TRANSITIONS,
    InvoiceEvent,
    InvoiceStatus,
    InvoiceView,
    ProofSubmission,
    TransitionResult,
    TransitionStatus,
    can_transition,
    is_terminal,
    price_invoice,
    validate_proof,
)
from presale_kernel.domain.templates import MessageTemplate, RenderedMessage, TemplateRegistry

__all__ = [
    "BackoffPolicy",
    "ClaimResult",
    "ClaimStatus",
    "Clock",
    "CompleteResult",
    "CompleteStatus",
    "DeterministicClock",
    "EnqueueRequest",
    "FailResult",
    "FailStatus",
    "INVOICE_TRANSITIONS",
    "InvoiceEvent",
    "InvoiceStatus",
    "InvoiceView",
    "JobHealth",
    "JobStatus",
    "JobView",
    "MessageTemplate",
    "ProofSubmission",
    "QueueSnapshot",
    "RenderedMessage",
    "SystemClock",
    "TemplateRegistry",
    "TransitionResult",
    "TransitionStatus",
    "can_transition",
    "compute_backoff",
    "derive_health",
    "is_terminal",
    "price_invoice",
    "validate_proof",
]
