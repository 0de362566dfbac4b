"""
presale_kernel.services.command_gateway -- single entry point for buyer and
admin commands.

Responsibility:
    Maps each request variant from ``presale_kernel.domain.commands`` onto
    the service operation that implements it, runs it inside its own
    ``session_scope()`` and returns a tagged response.

Architecture position:
    Services -- the RPC seam.  An HTTP layer (out of scope here) would
    decode a request body into a command dataclass and encode the response.

Invariants enforced:
    - One command, one transaction: the state change, its audit entry and
      its notification job commit together or roll back together.
    - Dispatch is by request type through a handler table; an unregistered
      type is a programming error (TypeError), not a domain rejection.

Failure modes:
    - Any ``PresaleKernelError`` becomes ``CommandRejected(code, message)``
      after the transaction is rolled back.
    - Everything else (database outages, bugs) propagates.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from presale_config.schema import PresaleConfig
from presale_kernel.db.engine import session_scope
from presale_kernel.domain.clock import Clock, SystemClock
from presale_kernel.domain.commands import (
    ApproveInvoice,
    BulkApplied,
    BulkCancel,
    BulkRetry,
    CancelInvoice,
    CancelUnpaidInvoice,
    ClaimNext,
    Command,
    CommandRejected,
    CompleteJob,
    EnqueueNotification,
    ExpireInvoice,
    FailJob,
    GetInvoiceStatus,
    GetQueueSnapshot,
    InvoiceStatusView,
    InvoiceTransitioned,
    JobClaimed,
    JobEnqueued,
    JobResolved,
    ManualRetry,
    RejectInvoice,
    Response,
    SubmitProof,
)
from presale_kernel.domain.delivery import EnqueueRequest, JobStatus
from presale_kernel.domain.invoice import TransitionResult
from presale_kernel.domain.templates import TemplateRegistry
from presale_kernel.exceptions import PresaleKernelError
from presale_kernel.logging_config import LogContext, get_logger
from presale_kernel.selectors.invoice_selector import InvoiceSelector
from presale_kernel.selectors.queue_selector import QueueSelector
from presale_kernel.services.notification_queue import NotificationQueue
from presale_kernel.services.payment_confirmation import PaymentConfirmationService

logger = get_logger("services.command_gateway")

Handler = Callable[[Session, Any], Response]


def _transitioned(result: TransitionResult) -> InvoiceTransitioned:
    return InvoiceTransitioned(
        invoice_no=result.invoice_no,
        status=result.status,
        invoice_status=result.to_status,
        job_id=result.job_id,
    )


class CommandGateway:
    """Executes command dataclasses against the kernel services."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: PresaleConfig,
        clock: Clock | None = None,
        templates: TemplateRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()
        self._templates = templates or TemplateRegistry()
        self._handlers: dict[type, Handler] = {
            SubmitProof: self._submit_proof,
            ApproveInvoice: self._approve,
            RejectInvoice: self._reject,
            ExpireInvoice: self._expire,
            CancelInvoice: self._cancel,
            CancelUnpaidInvoice: self._cancel_unpaid,
            EnqueueNotification: self._enqueue,
            ClaimNext: self._claim_next,
            CompleteJob: self._complete,
            FailJob: self._fail,
            ManualRetry: self._manual_retry,
            BulkRetry: self._bulk_retry,
            BulkCancel: self._bulk_cancel,
            GetInvoiceStatus: self._invoice_status,
            GetQueueSnapshot: self._queue_snapshot,
        }

    def execute(self, command: Command) -> Response:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {type(command).__name__}")

        command_name = type(command).__name__
        actor = getattr(command, "actor", None)
        with LogContext.bind(actor=actor, command=command_name):
            try:
                with session_scope(self._session_factory) as session:
                    response = handler(session, command)
            except PresaleKernelError as exc:
                logger.info(
                    "command_rejected",
                    extra={"code": exc.code, "reason": str(exc)},
                )
                return CommandRejected(code=exc.code, message=str(exc))

        logger.debug("command_executed", extra={"command": command_name})
        return response

    # -------------------------------------------------------------------------
    # Service construction
    # -------------------------------------------------------------------------

    def _payments(self, session: Session) -> PaymentConfirmationService:
        queue = NotificationQueue(session, self._config.delivery, self._clock, self._templates)
        return PaymentConfirmationService(
            session, self._config, self._clock, queue=queue, audit_log=queue.audit_log
        )

    def _queue(self, session: Session) -> NotificationQueue:
        return NotificationQueue(session, self._config.delivery, self._clock, self._templates)

    # -------------------------------------------------------------------------
    # Invoice handlers
    # -------------------------------------------------------------------------

    def _submit_proof(self, session: Session, command: SubmitProof) -> Response:
        return _transitioned(
            self._payments(session).submit_proof(command.invoice_no, command.proof, command.actor)
        )

    def _approve(self, session: Session, command: ApproveInvoice) -> Response:
        return _transitioned(
            self._payments(session).approve(command.invoice_no, command.note, command.actor)
        )

    def _reject(self, session: Session, command: RejectInvoice) -> Response:
        return _transitioned(
            self._payments(session).reject(command.invoice_no, command.note, command.actor)
        )

    def _expire(self, session: Session, command: ExpireInvoice) -> Response:
        return _transitioned(self._payments(session).expire(command.invoice_no, command.actor))

    def _cancel(self, session: Session, command: CancelInvoice) -> Response:
        return _transitioned(
            self._payments(session).cancel(command.invoice_no, command.note, command.actor)
        )

    def _cancel_unpaid(self, session: Session, command: CancelUnpaidInvoice) -> Response:
        return _transitioned(
            self._payments(session).cancel_unpaid(command.invoice_no, command.actor)
        )

    # -------------------------------------------------------------------------
    # Queue handlers
    # -------------------------------------------------------------------------

    def _enqueue(self, session: Session, command: EnqueueNotification) -> Response:
        job = self._queue(session).enqueue(
            EnqueueRequest(
                recipient=command.recipient,
                template_id=command.template_id,
                variables=dict(command.variables),
                dedupe_key=command.dedupe_key,
                source_type=command.source_type,
                source_id=command.source_id,
            ),
            actor=command.actor,
        )
        return JobEnqueued(job_id=str(job.id), status=JobStatus(job.status))

    def _claim_next(self, session: Session, command: ClaimNext) -> Response:
        result = self._queue(session).claim_next(command.worker_id, command.lease_seconds)
        return JobClaimed(status=result.status, job=result.job, reclaimed_from=result.reclaimed_from)

    def _complete(self, session: Session, command: CompleteJob) -> Response:
        result = self._queue(session).complete(command.job_id, command.worker_id)
        return JobResolved(
            job_id=result.job_id, outcome=result.status.value, job_status=result.job_status
        )

    def _fail(self, session: Session, command: FailJob) -> Response:
        result = self._queue(session).fail(
            command.job_id, command.error, command.worker_id, permanent=command.permanent
        )
        return JobResolved(
            job_id=result.job_id,
            outcome=result.status.value,
            job_status=result.job_status,
            attempt_count=result.attempt_count,
        )

    def _manual_retry(self, session: Session, command: ManualRetry) -> Response:
        job = self._queue(session).manual_retry(command.job_id, command.actor)
        return JobResolved(
            job_id=str(job.id),
            outcome="retried",
            job_status=JobStatus(job.status),
            attempt_count=job.attempt_count,
        )

    def _bulk_retry(self, session: Session, command: BulkRetry) -> Response:
        affected = self._queue(session).bulk_retry(command.job_ids, command.actor)
        return BulkApplied(requested=len(command.job_ids), affected=affected)

    def _bulk_cancel(self, session: Session, command: BulkCancel) -> Response:
        affected = self._queue(session).bulk_cancel(command.job_ids, command.actor)
        return BulkApplied(requested=len(command.job_ids), affected=affected)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _invoice_status(self, session: Session, command: GetInvoiceStatus) -> Response:
        status = InvoiceSelector(session, self._clock).get_status(command.invoice_no)
        return InvoiceStatusView(invoice_no=command.invoice_no, status=status)

    def _queue_snapshot(self, session: Session, command: GetQueueSnapshot) -> Response:
        return QueueSelector(session, self._clock).snapshot()
