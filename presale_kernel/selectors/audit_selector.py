"""
Module: presale_kernel.selectors.audit_selector
Responsibility: Audit trail of a single invoice or job, oldest first.

The admin console shows this next to the queue snapshot; buyers never see it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select

from presale_kernel.models.audit_entry import AuditEntry
from presale_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class AuditTraceEntry:
    seq: int
    action: str
    actor: str
    occurred_at: datetime
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    target_type: str
    target_id: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


class AuditSelector(BaseSelector[AuditEntry]):
    """Selector for audit entries."""

    def trace(self, target_type: str, target_id: str) -> AuditTrace:
        rows = self.session.execute(
            select(AuditEntry)
            .where(AuditEntry.target_type == target_type, AuditEntry.target_id == target_id)
            .order_by(AuditEntry.seq)
        ).scalars()
        return AuditTrace(
            target_type=target_type,
            target_id=target_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=row.seq,
                    action=row.action,
                    actor=row.actor,
                    occurred_at=row.occurred_at,
                    before=row.before,
                    after=row.after,
                    hash=row.hash,
                )
                for row in rows
            ),
        )

    def latest_seq(self) -> int:
        """Highest audit sequence number, 0 for an empty log."""
        return self.session.execute(
            select(AuditEntry.seq).order_by(AuditEntry.seq.desc()).limit(1)
        ).scalar_one_or_none() or 0
