"""
Module: presale_kernel.models.notification_job
Responsibility: ORM persistence for queued outbound notifications.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - status is one of PENDING, SENT, FAILED, CANCELLED (DB check constraint).
    - attempt_count >= 0 and never exceeds max_attempts.
    - dedupe_key, when present, is unique: enqueueing the same logical
      notification twice yields one row.
    - Claim, completion and failure are conditional UPDATEs issued by
      NotificationQueue; no caller overwrites a row it has not claimed.

Failure modes:
    - IntegrityError on duplicate dedupe_key (handled by NotificationQueue).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from presale_kernel.db.base import TrackedBase, UTCDateTime
from presale_kernel.domain.delivery import JobStatus, JobView, derive_health


class NotificationJob(TrackedBase):
    """Persistent notification job.

    Contract:
        A job is claimable by at most one worker at a time: a lock holder is
        only honoured while ``lock_expires_at`` is in the future.  Lease
        expiry is the sole crash recovery.
    """

    __tablename__ = "notification_jobs"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'SENT', 'FAILED', 'CANCELLED')",
            name="ck_notification_jobs_valid_status",
        ),
        CheckConstraint(
            "attempt_count >= 0 AND attempt_count <= max_attempts",
            name="ck_notification_jobs_attempts",
        ),
        # Claim scan: eligible rows ordered by due time
        Index("ix_notification_jobs_claim", "status", "next_attempt_at"),
        Index("ix_notification_jobs_source", "source_type", "source_id"),
    )

    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variables: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    locked_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    lease_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    dedupe_key: Mapped[str | None] = mapped_column(String(200), nullable=True, unique=True)
    source_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<NotificationJob {self.id} {self.template_id} {self.status}>"

    def to_view(self, now: datetime) -> JobView:
        """Immutable snapshot with health derived at ``now``."""
        status = JobStatus(self.status)
        return JobView(
            job_id=str(self.id),
            recipient=self.recipient,
            template_id=self.template_id,
            variables=dict(self.variables or {}),
            status=status,
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            next_attempt_at=self.next_attempt_at,
            last_attempt_at=self.last_attempt_at,
            last_error=self.last_error,
            locked_by=self.locked_by,
            lock_expires_at=self.lock_expires_at,
            lease_seconds=self.lease_seconds,
            sent_at=self.sent_at,
            source_type=self.source_type,
            source_id=self.source_id,
            health=derive_health(status, self.locked_by, self.lock_expires_at, now),
        )

    def snapshot(self) -> dict:
        """Fields recorded in audit before/after snapshots."""
        return {
            "status": self.status,
            "attempt_count": self.attempt_count,
            "next_attempt_at": self.next_attempt_at,
            "locked_by": self.locked_by,
            "last_error": self.last_error,
        }
