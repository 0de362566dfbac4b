"""
Invoice domain types (``presale_kernel.domain.invoice``).

Responsibility
--------------
Pure value objects for the presale invoice lifecycle: the status state
machine, the lifecycle events that drive notifications, buyer-submitted
payment proof, server-side pricing, and the transition outcome returned to
callers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``INVOICE_TRANSITIONS`` defines the only valid status transitions.
  Terminal states (PAID, EXPIRED, CANCELLED) have no outgoing edges.
* REJECTED may re-enter the flow, either by resubmission straight to
  PENDING_REVIEW or by reopening to UNPAID.  Resubmission is unlimited.
* Pricing is always computed server-side from the configured stage price;
  a buyer never supplies a total.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum


# =========================================================================
# Invoice Status Lifecycle
# =========================================================================


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""

    UNPAID = "UNPAID"
    PENDING_REVIEW = "PENDING_REVIEW"
    PAID = "PAID"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.UNPAID: frozenset({
        InvoiceStatus.PENDING_REVIEW,
        InvoiceStatus.EXPIRED,
        InvoiceStatus.CANCELLED,
    }),
    InvoiceStatus.PENDING_REVIEW: frozenset({
        InvoiceStatus.PAID,
        InvoiceStatus.REJECTED,
        InvoiceStatus.EXPIRED,
        InvoiceStatus.CANCELLED,
    }),
    InvoiceStatus.REJECTED: frozenset({
        InvoiceStatus.UNPAID,
        InvoiceStatus.PENDING_REVIEW,
        InvoiceStatus.EXPIRED,
        InvoiceStatus.CANCELLED,
    }),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.EXPIRED: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

TERMINAL_INVOICE_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.EXPIRED,
    InvoiceStatus.CANCELLED,
})


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    """Return True if ``current -> target`` is a defined edge."""
    return target in INVOICE_TRANSITIONS[current]


def is_terminal(status: InvoiceStatus) -> bool:
    return status in TERMINAL_INVOICE_STATUSES


# =========================================================================
# Lifecycle events and their notifications
# =========================================================================


class InvoiceEvent(str, Enum):
    """Status-changing events that announce themselves to the buyer."""

    PAYMENT_SUBMITTED = "PAYMENT_SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


# Exactly one notification template per lifecycle event.
EVENT_TEMPLATES: dict[InvoiceEvent, str] = {
    InvoiceEvent.PAYMENT_SUBMITTED: "payment_submitted",
    InvoiceEvent.APPROVED: "invoice_approved",
    InvoiceEvent.REJECTED: "invoice_rejected",
    InvoiceEvent.EXPIRED: "invoice_expired",
    InvoiceEvent.CANCELLED: "invoice_cancelled",
}


class TransitionStatus(str, Enum):
    """Outcome of an invoice lifecycle command."""

    TRANSITIONED = "transitioned"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class TransitionResult:
    """Result of a lifecycle command.

    ``job_id`` is the notification enqueued by the transition, or None when
    the command was ALREADY_PROCESSED (nothing enqueued).
    """

    status: TransitionStatus
    invoice_no: str
    from_status: InvoiceStatus
    to_status: InvoiceStatus
    job_id: str | None = None

    @property
    def is_transitioned(self) -> bool:
        return self.status == TransitionStatus.TRANSITIONED

    @classmethod
    def already_processed(
        cls, invoice_no: str, status: InvoiceStatus
    ) -> TransitionResult:
        return cls(
            status=TransitionStatus.ALREADY_PROCESSED,
            invoice_no=invoice_no,
            from_status=status,
            to_status=status,
        )


# =========================================================================
# Buyer input
# =========================================================================


MAX_REFERENCE_LENGTH = 2048
MAX_NAME_LENGTH = 200


@dataclass(frozen=True)
class ProofSubmission:
    """Payment proof submitted by the buyer.

    ``proof_reference`` is a validated reference handed over by the upload
    layer (a storage URL or key).  It is never fetched by the kernel.
    """

    payment_method: str
    proof_reference: str
    payer_name: str | None = None
    payer_ref: str | None = None
    tx_signature: str | None = None


def validate_proof(
    proof: ProofSubmission,
    allowed_methods: frozenset[str] | tuple[str, ...],
) -> str | None:
    """
    Check a proof submission.

    Returns:
        None if the proof is acceptable, otherwise the rejection reason.
    """
    reference = (proof.proof_reference or "").strip()
    if not reference:
        return "proof reference is required"
    if len(reference) > MAX_REFERENCE_LENGTH:
        return f"proof reference exceeds {MAX_REFERENCE_LENGTH} characters"
    if proof.payment_method not in allowed_methods:
        return f"payment method {proof.payment_method!r} is not accepted"
    if proof.payer_name is not None and len(proof.payer_name) > MAX_NAME_LENGTH:
        return f"payer name exceeds {MAX_NAME_LENGTH} characters"
    if proof.tx_signature is not None and not proof.tx_signature.strip():
        return "transaction signature must not be blank"
    return None


# =========================================================================
# Pricing
# =========================================================================


_USD_QUANT = Decimal("0.01")
_IDR_QUANT = Decimal("1")


@dataclass(frozen=True)
class InvoicePricing:
    """Server-side price breakdown for a purchase intent."""

    price_usd: Decimal
    total_usd: Decimal
    total_idr: Decimal
    usd_idr_rate: Decimal


def price_invoice(
    token_amount: Decimal,
    price_usd: Decimal,
    usd_idr_rate: Decimal,
) -> InvoicePricing:
    """
    Price a purchase.  USD is rounded to cents and IDR to whole rupiah,
    both half-up.
    """
    total_usd = (token_amount * price_usd).quantize(_USD_QUANT, rounding=ROUND_HALF_UP)
    total_idr = (total_usd * usd_idr_rate).quantize(_IDR_QUANT, rounding=ROUND_HALF_UP)
    return InvoicePricing(
        price_usd=price_usd,
        total_usd=total_usd,
        total_idr=total_idr,
        usd_idr_rate=usd_idr_rate,
    )


# =========================================================================
# Read models
# =========================================================================


@dataclass(frozen=True)
class InvoiceView:
    """Immutable snapshot of an invoice."""

    invoice_no: str
    buyer_email: str
    stage: str
    token_amount: Decimal
    price_usd: Decimal
    total_usd: Decimal
    total_idr: Decimal
    payment_method: str
    status: InvoiceStatus
    proof_reference: str | None
    admin_note: str | None
    submission_count: int
    created_at: datetime
    proof_submitted_at: datetime | None
    approved_at: datetime | None
    resolved_at: datetime | None
