"""
Module: presale_kernel.models.invoice
Responsibility: ORM persistence for presale invoices.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - invoice_no is unique.
    - status is one of the lifecycle values (DB check constraint).  The
      allowed edges are enforced by InvoiceStore, which only ever changes
      status through a compare-and-swap UPDATE on the expected prior status.
    - Monetary amounts are Numeric(38, 9), never float.

Failure modes:
    - IntegrityError on duplicate invoice_no.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from presale_kernel.db.base import TrackedBase, UTCDateTime
from presale_kernel.domain.invoice import InvoiceStatus, InvoiceView


class Invoice(TrackedBase):
    """Persistent presale invoice.

    Contract:
        Rows are never deleted.  Status only moves along the lifecycle
        edges, and only through InvoiceStore.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        CheckConstraint(
            "status IN ('UNPAID', 'PENDING_REVIEW', 'PAID', 'REJECTED', "
            "'EXPIRED', 'CANCELLED')",
            name="ck_invoices_valid_status",
        ),
        CheckConstraint("token_amount > 0", name="ck_invoices_positive_amount"),
        Index("ix_invoices_status_created", "status", "created_at"),
        Index("ix_invoices_buyer", "buyer_email"),
    )

    invoice_no: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    buyer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    stage: Mapped[str] = mapped_column(String(40), nullable=False)

    token_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    total_usd: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    total_idr: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    usd_idr_rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    payment_method: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="UNPAID")

    # Buyer-submitted proof (latest submission)
    proof_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    payer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    payer_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    tx_signature: Mapped[str | None] = mapped_column(String(200), nullable=True)
    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    admin_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    proof_submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_no} {self.status}>"

    def to_view(self) -> InvoiceView:
        """Immutable snapshot for callers outside the session."""
        return InvoiceView(
            invoice_no=self.invoice_no,
            buyer_email=self.buyer_email,
            stage=self.stage,
            token_amount=self.token_amount,
            price_usd=self.price_usd,
            total_usd=self.total_usd,
            total_idr=self.total_idr,
            payment_method=self.payment_method,
            status=InvoiceStatus(self.status),
            proof_reference=self.proof_reference,
            admin_note=self.admin_note,
            submission_count=self.submission_count,
            created_at=self.created_at,
            proof_submitted_at=self.proof_submitted_at,
            approved_at=self.approved_at,
            resolved_at=self.resolved_at,
        )

    def snapshot(self) -> dict:
        """Fields recorded in audit before/after snapshots."""
        return {
            "status": self.status,
            "payment_method": self.payment_method,
            "proof_reference": self.proof_reference,
            "admin_note": self.admin_note,
            "submission_count": self.submission_count,
            "total_usd": self.total_usd,
            "total_idr": self.total_idr,
        }
