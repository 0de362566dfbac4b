"""
Command and response types for the presale command gateway.

Responsibility
--------------
A closed set of frozen request variants, one per externally exposed
operation, and the tagged responses the gateway returns.  An HTTP or RPC
layer maps its payloads onto these types; the kernel never sees raw request
bodies.

Architecture position
---------------------
Kernel > Domain -- pure value objects, no I/O.  Consumed by
``presale_kernel.services.command_gateway``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from presale_kernel.domain.delivery import (
    ClaimStatus,
    JobStatus,
    JobView,
    QueueSnapshot,
)
from presale_kernel.domain.invoice import (
    InvoiceStatus,
    ProofSubmission,
    TransitionStatus,
)

# =========================================================================
# Invoice commands
# =========================================================================


@dataclass(frozen=True)
class SubmitProof:
    invoice_no: str
    proof: ProofSubmission
    actor: str


@dataclass(frozen=True)
class ApproveInvoice:
    invoice_no: str
    actor: str
    note: str | None = None


@dataclass(frozen=True)
class RejectInvoice:
    invoice_no: str
    actor: str
    note: str | None = None


@dataclass(frozen=True)
class ExpireInvoice:
    invoice_no: str
    actor: str = "system"


@dataclass(frozen=True)
class CancelInvoice:
    invoice_no: str
    actor: str
    note: str | None = None


@dataclass(frozen=True)
class CancelUnpaidInvoice:
    """Buyer-side cancel of their own UNPAID invoice."""

    invoice_no: str
    actor: str


# =========================================================================
# Queue commands
# =========================================================================


@dataclass(frozen=True)
class EnqueueNotification:
    recipient: str
    template_id: str
    variables: dict[str, Any]
    actor: str = "system"
    dedupe_key: str | None = None
    source_type: str | None = None
    source_id: str | None = None


@dataclass(frozen=True)
class ClaimNext:
    worker_id: str
    lease_seconds: int | None = None


@dataclass(frozen=True)
class CompleteJob:
    job_id: str
    worker_id: str | None = None


@dataclass(frozen=True)
class FailJob:
    job_id: str
    error: str
    worker_id: str | None = None
    permanent: bool = False


@dataclass(frozen=True)
class ManualRetry:
    job_id: str
    actor: str


@dataclass(frozen=True)
class BulkRetry:
    job_ids: tuple[str, ...]
    actor: str


@dataclass(frozen=True)
class BulkCancel:
    job_ids: tuple[str, ...]
    actor: str


# =========================================================================
# Queries
# =========================================================================


@dataclass(frozen=True)
class GetInvoiceStatus:
    invoice_no: str


@dataclass(frozen=True)
class GetQueueSnapshot:
    pass


Command = Union[
    SubmitProof,
    ApproveInvoice,
    RejectInvoice,
    ExpireInvoice,
    CancelInvoice,
    CancelUnpaidInvoice,
    EnqueueNotification,
    ClaimNext,
    CompleteJob,
    FailJob,
    ManualRetry,
    BulkRetry,
    BulkCancel,
    GetInvoiceStatus,
    GetQueueSnapshot,
]


# =========================================================================
# Responses
# =========================================================================


@dataclass(frozen=True)
class InvoiceTransitioned:
    """``status`` is TRANSITIONED or ALREADY_PROCESSED."""

    invoice_no: str
    status: TransitionStatus
    invoice_status: InvoiceStatus
    job_id: str | None = None


@dataclass(frozen=True)
class JobEnqueued:
    job_id: str
    status: JobStatus


@dataclass(frozen=True)
class JobClaimed:
    """``job`` is None when the claim came back UNAVAILABLE."""

    status: ClaimStatus
    job: JobView | None = None
    reclaimed_from: str | None = None


@dataclass(frozen=True)
class JobResolved:
    """Result of complete, fail or manual retry.

    ``outcome`` is the operation's outcome value (sent, noop, rescheduled,
    exhausted, retried).
    """

    job_id: str
    outcome: str
    job_status: JobStatus
    attempt_count: int | None = None


@dataclass(frozen=True)
class BulkApplied:
    requested: int
    affected: int


@dataclass(frozen=True)
class InvoiceStatusView:
    invoice_no: str
    status: InvoiceStatus


@dataclass(frozen=True)
class CommandRejected:
    """A domain error, by machine-readable code."""

    code: str
    message: str


Response = Union[
    InvoiceTransitioned,
    JobEnqueued,
    JobClaimed,
    JobResolved,
    BulkApplied,
    InvoiceStatusView,
    QueueSnapshot,
    CommandRejected,
]
