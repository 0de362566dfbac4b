"""
AuditLog -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Appends immutable, hash-chained audit entries for every mutating action
    on invoices and notification jobs, and validates the chain.

Architecture position:
    Kernel > Services -- imperative shell, called by InvoiceStore,
    PaymentConfirmationService and NotificationQueue inside the caller's
    transaction.

Invariants enforced:
    - A mutation and its audit entry commit or roll back together: append()
      only flushes into the caller's session.
    - Sequence monotonicity via SequenceService.
    - Chain integrity: ``hash = H(target_type | target_id | action |
      payload_hash | prev_hash)``.
    - Append-only: there is no update or delete method here, and the
      AuditEntry model is protected by ORM listeners and DB triggers.

Failure modes:
    - AuditChainBrokenError from validate_chain() on any mismatch.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from presale_kernel.domain.clock import Clock
from presale_kernel.exceptions import AuditChainBrokenError
from presale_kernel.logging_config import get_logger
from presale_kernel.models.audit_entry import AuditAction, AuditEntry
from presale_kernel.services.base import BaseService
from presale_kernel.services.sequence_service import SequenceService
from presale_kernel.utils.hashing import hash_audit_entry, hash_payload, to_json_safe

logger = get_logger("services.audit_log")


def _entry_payload(actor: str, before: Any, after: Any) -> dict[str, Any]:
    return {"actor": actor, "before": before, "after": after}


class AuditLog(BaseService):
    """
    Append-only audit log.

    Guarantees:
        - Every entry's ``hash`` is a deterministic function of its target,
          action, payload hash and predecessor hash.
        - ``seq`` comes from the locked counter row, allocated before the
          predecessor hash is read, so concurrent appends chain in order.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self.session.execute(
            select(AuditEntry.hash).order_by(AuditEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def append(
        self,
        action: AuditAction,
        actor: str,
        target_type: str,
        target_id: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """
        Append an entry inside the caller's transaction.

        Postconditions:
            A new AuditEntry is flushed with a monotonically increasing seq
            and a valid link to its predecessor.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_LOG)
        prev_hash = self._get_last_hash()

        before_data = to_json_safe(before) if before is not None else None
        after_data = to_json_safe(after) if after is not None else None
        payload_hash = hash_payload(_entry_payload(actor, before_data, after_data))

        entry_hash = hash_audit_entry(
            target_type=target_type,
            target_id=str(target_id),
            action=action.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        entry = AuditEntry(
            seq=seq,
            action=action.value,
            actor=actor,
            target_type=target_type,
            target_id=str(target_id),
            before=before_data,
            after=after_data,
            occurred_at=self.clock.now(),
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self.session.add(entry)
        self.session.flush()

        logger.info(
            "audit_entry_appended",
            extra={
                "action": action.value,
                "target_type": target_type,
                "target_id": str(target_id),
                "seq": seq,
            },
        )
        return entry

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            Returns True only if every entry's payload hash and chain hash
            match their recomputed values and every prev_hash matches the
            predecessor's hash.

        Raises:
            AuditChainBrokenError: at the first entry that fails.
        """
        entries = self.session.execute(
            select(AuditEntry).order_by(AuditEntry.seq)
        ).scalars().all()

        previous: AuditEntry | None = None
        for entry in entries:
            expected_prev = previous.hash if previous is not None else None
            if entry.prev_hash != expected_prev:
                logger.critical("audit_chain_broken", extra={"seq": entry.seq})
                raise AuditChainBrokenError(
                    str(entry.id), str(expected_prev), str(entry.prev_hash)
                )

            expected_payload_hash = hash_payload(
                _entry_payload(entry.actor, entry.before, entry.after)
            )
            if entry.payload_hash != expected_payload_hash:
                logger.critical("audit_chain_broken", extra={"seq": entry.seq})
                raise AuditChainBrokenError(
                    str(entry.id), expected_payload_hash, entry.payload_hash
                )

            expected_hash = hash_audit_entry(
                target_type=entry.target_type,
                target_id=entry.target_id,
                action=entry.action,
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if entry.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": entry.seq})
                raise AuditChainBrokenError(str(entry.id), expected_hash, entry.hash)

            previous = entry

        return True
