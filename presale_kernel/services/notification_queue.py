"""
NotificationQueue -- durable outbound notification queue with leased claims.

Responsibility:
    Enqueues notification jobs, hands them to delivery workers under a
    time-bounded lease, records delivery outcomes with exponential backoff,
    and applies the admin retry/cancel operations (single and bulk).

Architecture position:
    Kernel > Services -- imperative shell.  Called by
    PaymentConfirmationService (enqueue), DeliveryWorker (claim, complete,
    fail) and CommandGateway (admin operations).

Invariants enforced:
    - Claim linearizability: the lock is taken by ONE conditional UPDATE
      whose WHERE clause re-checks eligibility (status, due time, attempts,
      lock absent or expired).  Two workers racing on a row cannot both
      match it.  On PostgreSQL the candidate scan additionally uses
      ``FOR UPDATE SKIP LOCKED``.
    - Every job mutation is a compare-and-swap on the expected prior state.
      A job under an unexpired lock is never cancelled or retried.
    - attempt_count only grows (fail) or resets to zero through an audited
      manual retry.  It never exceeds max_attempts.
    - SENT and CANCELLED are terminal; complete/fail on them are no-ops.

Failure modes:
    - JobNotFoundError, InvalidJobTransitionError, JobLeaseHeldError,
      UnknownTemplateError.
    - ConcurrentModificationError when a single-job admin operation loses a
      race; nothing was written.

Audit relevance:
    JOB_ENQUEUED, JOB_RETRIED, JOB_CANCELLED and JOB_EXHAUSTED are written
    through AuditLog inside the caller's transaction.  Claims and successful
    sends are operational events and only logged.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from presale_config.schema import DeliveryConfig
from presale_kernel.domain.clock import Clock
from presale_kernel.domain.delivery import (
    RETRYABLE_JOB_STATUSES,
    ClaimResult,
    ClaimStatus,
    CompleteResult,
    CompleteStatus,
    EnqueueRequest,
    FailResult,
    FailStatus,
    JobStatus,
    compute_backoff,
    lock_is_live,
)
from presale_kernel.domain.templates import TemplateRegistry
from presale_kernel.exceptions import (
    ConcurrentModificationError,
    InvalidJobTransitionError,
    InvalidLeaseError,
    JobLeaseHeldError,
    JobNotFoundError,
    UnknownTemplateError,
)
from presale_kernel.logging_config import get_logger
from presale_kernel.models.audit_entry import AuditAction
from presale_kernel.models.notification_job import NotificationJob
from presale_kernel.services.audit_log import AuditLog
from presale_kernel.services.base import BaseService

logger = get_logger("services.notification_queue")

SYSTEM_ACTOR = "system"
MAX_ERROR_LENGTH = 2000

# Candidate rows examined per claim before reporting UNAVAILABLE.
_CLAIM_SCAN_LIMIT = 10

_RETRYABLE = tuple(s.value for s in RETRYABLE_JOB_STATUSES)


def _lock_free(now: datetime):
    """SQL condition: nobody holds an unexpired lease."""
    return or_(
        NotificationJob.locked_by.is_(None),
        NotificationJob.lock_expires_at.is_(None),
        NotificationJob.lock_expires_at <= now,
    )


def _open():
    """SQL condition: PENDING, or FAILED but still scheduled."""
    return or_(
        NotificationJob.status == JobStatus.PENDING.value,
        and_(
            NotificationJob.status == JobStatus.FAILED.value,
            NotificationJob.next_attempt_at.is_not(None),
        ),
    )


def _is_open(job: NotificationJob) -> bool:
    return job.status == JobStatus.PENDING.value or (
        job.status == JobStatus.FAILED.value and job.next_attempt_at is not None
    )


def _held_by(worker_id: str, now: datetime):
    """SQL condition: the lease is ``worker_id``'s, or nobody's."""
    return or_(NotificationJob.locked_by == worker_id, _lock_free(now))


def _held_by_other(job: NotificationJob, worker_id: str | None, now: datetime) -> bool:
    return (
        worker_id is not None
        and job.locked_by not in (None, worker_id)
        and lock_is_live(job.locked_by, job.lock_expires_at, now)
    )


def _claimable(now: datetime):
    """SQL condition for a job a worker may claim at ``now``."""
    return and_(
        _open(),
        NotificationJob.next_attempt_at.is_not(None),
        NotificationJob.next_attempt_at <= now,
        NotificationJob.attempt_count < NotificationJob.max_attempts,
        _lock_free(now),
    )


def _as_uuid(job_id: UUID | str) -> UUID:
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except ValueError:
        raise JobNotFoundError(str(job_id)) from None


class NotificationQueue(BaseService):
    """
    Service for the notification delivery queue.

    Contract:
        Flush-only.  ``claim_next`` must be committed by the caller before
        the send happens, so the lease is visible to other workers.
    """

    def __init__(
        self,
        session: Session,
        config: DeliveryConfig,
        clock: Clock | None = None,
        templates: TemplateRegistry | None = None,
        audit_log: AuditLog | None = None,
    ):
        super().__init__(session, clock)
        self.config = config
        self.templates = templates or TemplateRegistry()
        self.audit_log = audit_log or AuditLog(session, self.clock)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: UUID | str) -> NotificationJob:
        """Load a job with fresh column values, or raise JobNotFoundError."""
        job = self.session.execute(
            select(NotificationJob)
            .where(NotificationJob.id == _as_uuid(job_id))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    def _cas(self, job_id: UUID, *conditions, **values) -> bool:
        """Conditional UPDATE of one job; True if the row matched."""
        result = self.session.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id, *conditions)
            .values(updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, request: EnqueueRequest, actor: str = SYSTEM_ACTOR) -> NotificationJob:
        """
        Insert a PENDING job due now.

        A request whose ``dedupe_key`` already exists returns the existing
        job unchanged.

        Raises:
            UnknownTemplateError: template_id is not registered.
        """
        if request.template_id not in self.templates:
            raise UnknownTemplateError(request.template_id)

        if request.dedupe_key is not None:
            existing = self.session.execute(
                select(NotificationJob).where(NotificationJob.dedupe_key == request.dedupe_key)
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(
                    "job_enqueue_deduplicated",
                    extra={"job_id": str(existing.id), "dedupe_key": request.dedupe_key},
                )
                return existing

        now = self.clock.now()
        job = NotificationJob(
            recipient=request.recipient,
            template_id=request.template_id,
            variables=dict(request.variables),
            status=JobStatus.PENDING.value,
            attempt_count=0,
            max_attempts=request.max_attempts or self.config.max_attempts,
            next_attempt_at=now,
            lease_seconds=self.config.lease_seconds,
            dedupe_key=request.dedupe_key,
            source_type=request.source_type,
            source_id=request.source_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(job)
        self.session.flush()

        self.audit_log.append(
            AuditAction.JOB_ENQUEUED,
            actor=actor,
            target_type="NotificationJob",
            target_id=str(job.id),
            after={
                "template_id": job.template_id,
                "recipient": job.recipient,
                "source_type": job.source_type,
                "source_id": job.source_id,
            },
        )

        logger.info(
            "job_enqueued",
            extra={
                "job_id": str(job.id),
                "template_id": job.template_id,
                "source_type": job.source_type,
                "source_id": job.source_id,
            },
        )
        return job

    # ------------------------------------------------------------------
    # Worker operations
    # ------------------------------------------------------------------

    def claim_next(self, worker_id: str, lease_seconds: int | None = None) -> ClaimResult:
        """
        Atomically lock the next due job for ``worker_id``.

        Returns ClaimStatus.UNAVAILABLE when no row qualifies.  Recovering a
        job whose previous lease expired is reported via ``reclaimed_from``.

        Raises:
            InvalidLeaseError: ``lease_seconds`` is zero or negative.
        """
        lease = self.config.lease_seconds if lease_seconds is None else lease_seconds
        if lease <= 0:
            raise InvalidLeaseError(lease)
        now = self.clock.now()

        scan = (
            select(NotificationJob.id, NotificationJob.locked_by)
            .where(_claimable(now))
            .order_by(NotificationJob.next_attempt_at, NotificationJob.created_at)
            .limit(_CLAIM_SCAN_LIMIT)
        )
        if self.session.get_bind().dialect.name == "postgresql":
            scan = scan.with_for_update(skip_locked=True)

        for job_id, previous_holder in self.session.execute(scan).all():
            claimed = self._cas(
                job_id,
                _claimable(now),
                locked_by=worker_id,
                locked_at=now,
                lock_expires_at=now + timedelta(seconds=lease),
                last_attempt_at=now,
                lease_seconds=lease,
            )
            if not claimed:
                # Another worker won this row; try the next candidate.
                continue

            job = self.get_job(job_id)
            if previous_holder is not None:
                logger.warning(
                    "lease_expired_reclaimed",
                    extra={
                        "job_id": str(job_id),
                        "worker_id": worker_id,
                        "previous_holder": previous_holder,
                    },
                )
            logger.info(
                "job_claimed",
                extra={
                    "job_id": str(job_id),
                    "worker_id": worker_id,
                    "attempt": job.attempt_count + 1,
                    "lease_seconds": lease,
                },
            )
            return ClaimResult(
                status=ClaimStatus.CLAIMED,
                job=job.to_view(now),
                reclaimed_from=previous_holder,
            )

        return ClaimResult.unavailable()

    def complete(self, job_id: UUID | str, worker_id: str | None = None) -> CompleteResult:
        """Mark a job SENT.  A second call on a terminal job is a no-op."""
        job = self.get_job(job_id)
        now = self.clock.now()

        done = self._cas(
            job.id,
            _open(),
            status=JobStatus.SENT.value,
            sent_at=now,
            next_attempt_at=None,
            last_error=None,
            locked_by=None,
            locked_at=None,
            lock_expires_at=None,
        )
        if not done:
            current = self.get_job(job.id)
            logger.info(
                "job_complete_noop",
                extra={"job_id": str(job.id), "status": current.status},
            )
            return CompleteResult(CompleteStatus.NOOP, str(job.id), JobStatus(current.status))

        if worker_id is not None and job.locked_by not in (None, worker_id):
            logger.warning(
                "job_completed_by_non_holder",
                extra={"job_id": str(job.id), "worker_id": worker_id, "locked_by": job.locked_by},
            )
        logger.info("job_sent", extra={"job_id": str(job.id), "worker_id": worker_id})
        return CompleteResult(CompleteStatus.SENT, str(job.id), JobStatus.SENT)

    def fail(
        self,
        job_id: UUID | str,
        error: str,
        worker_id: str | None = None,
        permanent: bool = False,
    ) -> FailResult:
        """
        Record a failed delivery attempt.

        Increments attempt_count.  Below max_attempts (and not permanent)
        the job stays PENDING and is rescheduled after the backoff delay.
        Otherwise it becomes FAILED with no next attempt.

        A result from ``worker_id`` after its lease expired and another
        worker reclaimed the job is ignored (NOOP): the live lease, the
        attempt count and the schedule stay as the new holder left them.
        """
        job = self.get_job(job_id)
        if not _is_open(job):
            return FailResult(FailStatus.NOOP, str(job.id), JobStatus(job.status), job.attempt_count)

        now = self.clock.now()
        if _held_by_other(job, worker_id, now):
            return self._ignore_stale_result(job, worker_id)
        attempts = job.attempt_count + 1
        exhausted = permanent or attempts >= job.max_attempts
        error_text = (error or "")[:MAX_ERROR_LENGTH]
        before = job.snapshot()

        if exhausted:
            new_status = JobStatus.FAILED
            next_attempt_at = None
        else:
            new_status = JobStatus.PENDING
            next_attempt_at = now + timedelta(
                seconds=compute_backoff(attempts, self.config.backoff)
            )

        conditions = [
            NotificationJob.status == job.status,
            NotificationJob.attempt_count == job.attempt_count,
        ]
        if worker_id is not None:
            conditions.append(_held_by(worker_id, now))

        applied = self._cas(
            job.id,
            *conditions,
            status=new_status.value,
            attempt_count=attempts,
            next_attempt_at=next_attempt_at,
            last_error=error_text,
            locked_by=None,
            locked_at=None,
            lock_expires_at=None,
        )
        if not applied:
            current = self.get_job(job.id)
            if not _is_open(current):
                return FailResult(
                    FailStatus.NOOP, str(job.id), JobStatus(current.status), current.attempt_count
                )
            if _held_by_other(current, worker_id, now):
                return self._ignore_stale_result(current, worker_id)
            raise ConcurrentModificationError("NotificationJob", str(job.id), job.status)

        if exhausted:
            job = self.get_job(job.id)
            self.audit_log.append(
                AuditAction.JOB_EXHAUSTED,
                actor=worker_id or SYSTEM_ACTOR,
                target_type="NotificationJob",
                target_id=str(job.id),
                before=before,
                after=job.snapshot(),
            )
            logger.error(
                "job_exhausted",
                extra={
                    "job_id": str(job.id),
                    "worker_id": worker_id,
                    "attempt_count": attempts,
                    "permanent": permanent,
                    "error": error_text,
                },
            )
            return FailResult(FailStatus.EXHAUSTED, str(job.id), JobStatus.FAILED, attempts)

        logger.warning(
            "job_rescheduled",
            extra={
                "job_id": str(job.id),
                "worker_id": worker_id,
                "attempt_count": attempts,
                "next_attempt_at": next_attempt_at,
                "error": error_text,
            },
        )
        return FailResult(
            FailStatus.RESCHEDULED, str(job.id), JobStatus.PENDING, attempts, next_attempt_at
        )

    def _ignore_stale_result(self, job: NotificationJob, worker_id: str) -> FailResult:
        logger.warning(
            "job_fail_ignored_stale_holder",
            extra={
                "job_id": str(job.id),
                "worker_id": worker_id,
                "locked_by": job.locked_by,
                "lock_expires_at": job.lock_expires_at,
            },
        )
        return FailResult(FailStatus.NOOP, str(job.id), JobStatus(job.status), job.attempt_count)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def _retry_row(self, job: NotificationJob, actor: str, now: datetime) -> bool:
        before = job.snapshot()
        applied = self._cas(
            job.id,
            NotificationJob.status.in_(_RETRYABLE),
            _lock_free(now),
            status=JobStatus.PENDING.value,
            attempt_count=0,
            next_attempt_at=now,
            locked_by=None,
            locked_at=None,
            lock_expires_at=None,
        )
        if applied:
            self.audit_log.append(
                AuditAction.JOB_RETRIED,
                actor=actor,
                target_type="NotificationJob",
                target_id=str(job.id),
                before=before,
                after=self.get_job(job.id).snapshot(),
            )
        return applied

    def _cancel_row(self, job: NotificationJob, actor: str, now: datetime) -> bool:
        before = job.snapshot()
        applied = self._cas(
            job.id,
            NotificationJob.status == JobStatus.PENDING.value,
            _lock_free(now),
            status=JobStatus.CANCELLED.value,
            next_attempt_at=None,
            locked_by=None,
            locked_at=None,
            lock_expires_at=None,
        )
        if applied:
            self.audit_log.append(
                AuditAction.JOB_CANCELLED,
                actor=actor,
                target_type="NotificationJob",
                target_id=str(job.id),
                before=before,
                after=self.get_job(job.id).snapshot(),
            )
        return applied

    def _raise_if_leased(self, job: NotificationJob, now: datetime) -> None:
        if lock_is_live(job.locked_by, job.lock_expires_at, now):
            raise JobLeaseHeldError(str(job.id), job.locked_by, job.lock_expires_at.isoformat())

    def manual_retry(self, job_id: UUID | str, actor: str) -> NotificationJob:
        """
        Reset a FAILED or CANCELLED job to PENDING, due now, attempts zero.

        Raises:
            InvalidJobTransitionError: job is PENDING or SENT.
            JobLeaseHeldError: job is under an unexpired lease.
        """
        job = self.get_job(job_id)
        now = self.clock.now()
        if job.status not in _RETRYABLE:
            raise InvalidJobTransitionError(str(job.id), job.status, "retry")
        self._raise_if_leased(job, now)

        if not self._retry_row(job, actor, now):
            raise ConcurrentModificationError("NotificationJob", str(job.id), job.status)

        logger.info("job_retried", extra={"job_id": str(job.id), "actor": actor})
        return self.get_job(job.id)

    def cancel_job(self, job_id: UUID | str, actor: str) -> NotificationJob:
        """
        Cancel a PENDING job so it is never claimed.

        Raises:
            InvalidJobTransitionError: job is not PENDING.
            JobLeaseHeldError: a worker holds an unexpired lease on it.
        """
        job = self.get_job(job_id)
        now = self.clock.now()
        if job.status != JobStatus.PENDING.value:
            raise InvalidJobTransitionError(str(job.id), job.status, "cancel")
        self._raise_if_leased(job, now)

        if not self._cancel_row(job, actor, now):
            current = self.get_job(job.id)
            self._raise_if_leased(current, now)
            raise ConcurrentModificationError("NotificationJob", str(job.id), JobStatus.PENDING.value)

        logger.info("job_cancelled", extra={"job_id": str(job.id), "actor": actor})
        return self.get_job(job.id)

    def _bulk(self, job_ids: Iterable[UUID | str], actor: str, operation: str) -> int:
        now = self.clock.now()
        apply_row = self._retry_row if operation == "retry" else self._cancel_row
        affected = 0
        seen: set[UUID] = set()

        for raw_id in job_ids:
            try:
                job = self.get_job(raw_id)
            except JobNotFoundError:
                continue
            if job.id in seen:
                continue
            seen.add(job.id)
            if apply_row(job, actor, now):
                affected += 1

        logger.info(
            f"bulk_{operation}_applied",
            extra={"actor": actor, "requested": len(seen), "affected": affected},
        )
        return affected

    def bulk_retry(self, job_ids: Iterable[UUID | str], actor: str) -> int:
        """Retry every FAILED/CANCELLED, unleased job; return how many changed."""
        return self._bulk(job_ids, actor, "retry")

    def bulk_cancel(self, job_ids: Iterable[UUID | str], actor: str) -> int:
        """Cancel every PENDING, unleased job; return how many changed."""
        return self._bulk(job_ids, actor, "cancel")
