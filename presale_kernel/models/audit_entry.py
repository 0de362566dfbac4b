"""
Module: presale_kernel.models.audit_entry
Responsibility: ORM persistence for the tamper-evident audit log.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit entries are append-only; no UPDATE or DELETE (ORM + DB trigger).
    - hash = H(target_type | target_id | action | payload_hash | prev_hash),
      validated by AuditLog.validate_chain().
    - seq is monotonically increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from presale_kernel.db.base import Base, UTCDateTime


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Invoice lifecycle
    INVOICE_CREATED = "INVOICE_CREATED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    INVOICE_APPROVED = "INVOICE_APPROVED"
    INVOICE_REJECTED = "INVOICE_REJECTED"
    INVOICE_REOPENED = "INVOICE_REOPENED"
    INVOICE_EXPIRED = "INVOICE_EXPIRED"
    INVOICE_CANCELLED = "INVOICE_CANCELLED"

    # Notification queue
    JOB_ENQUEUED = "JOB_ENQUEUED"
    JOB_RETRIED = "JOB_RETRIED"
    JOB_CANCELLED = "JOB_CANCELLED"
    JOB_EXHAUSTED = "JOB_EXHAUSTED"


class AuditEntry(Base):
    """
    Audit log entry with hash chain for tamper evidence.

    Contract:
        Rows are append-only, never updated or deleted.  Each row's hash
        includes the previous row's hash.

    Non-goals:
        This model does NOT compute hashes; AuditLog does.
    """

    __tablename__ = "audit_log"

    __table_args__ = (
        Index("idx_audit_log_target", "target_type", "target_id"),
        Index("idx_audit_log_action", "action"),
        Index("idx_audit_log_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(320), nullable=False)

    # e.g. "Invoice"/"INV100" or "NotificationJob"/<uuid>
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(String(100), nullable=False)

    before: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEntry {self.seq} {self.action} on {self.target_type}:{self.target_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
