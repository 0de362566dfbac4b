"""
PaymentConfirmationService -- the invoice payment lifecycle.

Responsibility:
    Turns purchase intent into a priced invoice, validates buyer-submitted
    payment proof, applies admin review decisions and administrative
    expire/cancel, and sweeps overdue unpaid invoices.  Every status change
    writes its audit entry and enqueues exactly one buyer notification in
    the caller's transaction.

Architecture position:
    Kernel > Services -- imperative shell.  Uses InvoiceStore for atomic
    transitions, NotificationQueue for the announcement, AuditLog for the
    trail.

Invariants enforced:
    - Transitions follow ``INVOICE_TRANSITIONS`` only; a rejected command
      leaves the invoice unchanged.
    - approve/reject/expire/cancel are idempotent: repeating the command on
      an invoice already in its target state returns ALREADY_PROCESSED and
      enqueues nothing.
    - Transition, audit entry and notification job commit together or not
      at all (flush-only service).

Failure modes:
    - InvoiceNotFoundError, InvalidStateTransitionError, InvalidProofError,
      InvoiceOwnershipError, InvalidInvoiceRequestError,
      InvoiceAlreadyExistsError.
    - ConcurrentModificationError when another transaction moved the
      invoice to a different state between read and write.
"""

from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from presale_config.schema import PresaleConfig
from presale_kernel.domain.clock import Clock
from presale_kernel.domain.delivery import EnqueueRequest
from presale_kernel.domain.invoice import (
    EVENT_TEMPLATES,
    InvoiceEvent,
    InvoiceStatus,
    ProofSubmission,
    TransitionResult,
    TransitionStatus,
    is_terminal,
    price_invoice,
    validate_proof,
)
from presale_kernel.exceptions import (
    ConcurrentModificationError,
    InvalidInvoiceRequestError,
    InvalidProofError,
    InvalidStateTransitionError,
    InvoiceOwnershipError,
)
from presale_kernel.logging_config import LogContext, get_logger
from presale_kernel.models.audit_entry import AuditAction
from presale_kernel.models.invoice import Invoice
from presale_kernel.services.audit_log import AuditLog
from presale_kernel.services.base import BaseService
from presale_kernel.services.invoice_store import InvoiceStore
from presale_kernel.services.notification_queue import SYSTEM_ACTOR, NotificationQueue

logger = get_logger("services.payment_confirmation")


class PaymentConfirmationService(BaseService):
    """
    Service driving the invoice lifecycle.

    Contract:
        Flush-only.  The caller commits.  All commands take an ``actor``
        string recorded in the audit trail.
    """

    def __init__(
        self,
        session: Session,
        config: PresaleConfig,
        clock: Clock | None = None,
        queue: NotificationQueue | None = None,
        audit_log: AuditLog | None = None,
    ):
        super().__init__(session, clock)
        self.config = config
        self.audit_log = audit_log or AuditLog(session, self.clock)
        self.store = InvoiceStore(session, self.clock)
        self.queue = queue or NotificationQueue(
            session, config.delivery, self.clock, audit_log=self.audit_log
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _new_invoice_no(self) -> str:
        now = self.clock.now()
        return f"{self.config.invoice.invoice_prefix}{now:%Y%m%d}{uuid4().hex[:6].upper()}"

    def create_invoice(
        self,
        buyer: str,
        token_amount: Decimal | str | int,
        stage: str,
        payment_method: str,
        invoice_no: str | None = None,
        actor: str | None = None,
    ) -> Invoice:
        """
        Create an UNPAID invoice priced from the configured stage.

        Raises:
            InvalidInvoiceRequestError: blank buyer, non-positive amount,
                unknown or inactive stage, or unaccepted payment method.
            InvoiceAlreadyExistsError: ``invoice_no`` is taken.
        """
        invoice_config = self.config.invoice

        if not buyer or not buyer.strip():
            raise InvalidInvoiceRequestError("buyer is required")
        try:
            amount = Decimal(str(token_amount))
        except (InvalidOperation, ValueError):
            raise InvalidInvoiceRequestError(f"token amount {token_amount!r} is not a number") from None
        if not amount.is_finite() or amount <= 0:
            raise InvalidInvoiceRequestError("token amount must be positive")

        stage_config = invoice_config.stage(stage)
        if stage_config is None or not stage_config.active:
            raise InvalidInvoiceRequestError(f"stage {stage!r} is not open")
        if payment_method not in invoice_config.payment_methods:
            raise InvalidInvoiceRequestError(f"payment method {payment_method!r} is not accepted")

        pricing = price_invoice(amount, stage_config.price_usd, invoice_config.usd_idr_rate)
        invoice = self.store.create(
            invoice_no or self._new_invoice_no(),
            buyer_email=buyer.strip(),
            stage=stage,
            token_amount=amount,
            price_usd=pricing.price_usd,
            total_usd=pricing.total_usd,
            total_idr=pricing.total_idr,
            usd_idr_rate=pricing.usd_idr_rate,
            payment_method=payment_method,
        )

        self.audit_log.append(
            AuditAction.INVOICE_CREATED,
            actor=actor or invoice.buyer_email,
            target_type="Invoice",
            target_id=invoice.invoice_no,
            after=invoice.snapshot(),
        )
        return invoice

    # ------------------------------------------------------------------
    # Shared transition plumbing
    # ------------------------------------------------------------------

    def _notify(self, invoice: Invoice, event: InvoiceEvent, actor: str) -> str:
        app_url = self.config.invoice.app_url
        variables: dict[str, Any] = {
            "name": invoice.buyer_email.split("@")[0],
            "invoice_no": invoice.invoice_no,
            "token_amount": str(invoice.token_amount.normalize()),
            "total_usd": str(invoice.total_usd),
            "total_idr": str(invoice.total_idr),
            "status": invoice.status,
            "note": invoice.admin_note or "",
            "app_url": app_url,
            "invoice_url": f"{app_url}/invoices/{invoice.invoice_no}",
        }
        job = self.queue.enqueue(
            EnqueueRequest(
                recipient=invoice.buyer_email,
                template_id=EVENT_TEMPLATES[event],
                variables=variables,
                source_type="Invoice",
                source_id=invoice.invoice_no,
            ),
            actor=actor,
        )
        return str(job.id)

    def _apply(
        self,
        invoice_no: str,
        target: InvoiceStatus,
        allowed_from: frozenset[InvoiceStatus],
        action: AuditAction,
        event: InvoiceEvent | None,
        actor: str,
        **values: Any,
    ) -> TransitionResult:
        """
        Transition from whichever allowed state the invoice is in now.

        If the invoice is already in ``target`` (before or after losing a
        race to an identical command) the result is ALREADY_PROCESSED.
        """
        with LogContext.bind(invoice_no=invoice_no, actor=actor):
            invoice = self.store.get(invoice_no)
            current = InvoiceStatus(invoice.status)

            if current == target:
                logger.info(
                    "invoice_already_processed",
                    extra={"status": current.value, "action": action.value},
                )
                return TransitionResult.already_processed(invoice_no, current)
            if current not in allowed_from:
                raise InvalidStateTransitionError(invoice_no, current.value, target.value)

            before = invoice.snapshot()
            try:
                invoice = self.store.transition(invoice_no, current, target, **values)
            except ConcurrentModificationError:
                latest = self.store.get(invoice_no)
                if latest.status == target.value:
                    return TransitionResult.already_processed(invoice_no, target)
                raise

            self.audit_log.append(
                action,
                actor=actor,
                target_type="Invoice",
                target_id=invoice_no,
                before=before,
                after=invoice.snapshot(),
            )
            job_id = self._notify(invoice, event, actor) if event is not None else None

            return TransitionResult(
                status=TransitionStatus.TRANSITIONED,
                invoice_no=invoice_no,
                from_status=current,
                to_status=target,
                job_id=job_id,
            )

    # ------------------------------------------------------------------
    # Buyer commands
    # ------------------------------------------------------------------

    def submit_proof(
        self, invoice_no: str, proof: ProofSubmission, actor: str
    ) -> TransitionResult:
        """
        Record payment proof and send the invoice to review.

        Allowed from UNPAID and REJECTED (unlimited resubmission).

        Raises:
            InvoiceOwnershipError: ``actor`` is not the invoice's buyer.
            InvalidStateTransitionError: invoice is PENDING_REVIEW or terminal.
            InvalidProofError: proof failed validation.
        """
        invoice = self.store.get(invoice_no)
        if actor != invoice.buyer_email:
            raise InvoiceOwnershipError(invoice_no, actor)

        current = InvoiceStatus(invoice.status)
        if current not in (InvoiceStatus.UNPAID, InvoiceStatus.REJECTED):
            raise InvalidStateTransitionError(
                invoice_no, current.value, InvoiceStatus.PENDING_REVIEW.value
            )

        reason = validate_proof(proof, self.config.invoice.payment_methods)
        if reason is not None:
            raise InvalidProofError(invoice_no, reason)

        return self._apply(
            invoice_no,
            InvoiceStatus.PENDING_REVIEW,
            frozenset({current}),
            AuditAction.PROOF_SUBMITTED,
            InvoiceEvent.PAYMENT_SUBMITTED,
            actor,
            payment_method=proof.payment_method,
            proof_reference=proof.proof_reference.strip(),
            payer_name=proof.payer_name,
            payer_ref=proof.payer_ref,
            tx_signature=proof.tx_signature,
            proof_submitted_at=self.clock.now(),
            submission_count=Invoice.submission_count + 1,
        )

    def reopen(self, invoice_no: str, actor: str) -> TransitionResult:
        """REJECTED -> UNPAID so the buyer can restart payment."""
        return self._apply(
            invoice_no,
            InvoiceStatus.UNPAID,
            frozenset({InvoiceStatus.REJECTED}),
            AuditAction.INVOICE_REOPENED,
            None,
            actor,
        )

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    def approve(self, invoice_no: str, note: str | None, actor: str) -> TransitionResult:
        """PENDING_REVIEW -> PAID.  Idempotent on an already PAID invoice."""
        now = self.clock.now()
        return self._apply(
            invoice_no,
            InvoiceStatus.PAID,
            frozenset({InvoiceStatus.PENDING_REVIEW}),
            AuditAction.INVOICE_APPROVED,
            InvoiceEvent.APPROVED,
            actor,
            admin_note=note,
            approved_at=now,
            resolved_at=now,
        )

    def reject(self, invoice_no: str, note: str | None, actor: str) -> TransitionResult:
        """PENDING_REVIEW -> REJECTED.  Idempotent on an already REJECTED invoice."""
        return self._apply(
            invoice_no,
            InvoiceStatus.REJECTED,
            frozenset({InvoiceStatus.PENDING_REVIEW}),
            AuditAction.INVOICE_REJECTED,
            InvoiceEvent.REJECTED,
            actor,
            admin_note=note,
            resolved_at=self.clock.now(),
        )

    def _non_terminal(self) -> frozenset[InvoiceStatus]:
        return frozenset(s for s in InvoiceStatus if not is_terminal(s))

    def expire(self, invoice_no: str, actor: str = SYSTEM_ACTOR) -> TransitionResult:
        """Any non-terminal state -> EXPIRED."""
        return self._apply(
            invoice_no,
            InvoiceStatus.EXPIRED,
            self._non_terminal(),
            AuditAction.INVOICE_EXPIRED,
            InvoiceEvent.EXPIRED,
            actor,
            resolved_at=self.clock.now(),
        )

    def cancel(self, invoice_no: str, note: str | None, actor: str) -> TransitionResult:
        """Any non-terminal state -> CANCELLED (admin override)."""
        return self._apply(
            invoice_no,
            InvoiceStatus.CANCELLED,
            self._non_terminal(),
            AuditAction.INVOICE_CANCELLED,
            InvoiceEvent.CANCELLED,
            actor,
            admin_note=note,
            resolved_at=self.clock.now(),
        )

    def cancel_unpaid(self, invoice_no: str, actor: str) -> TransitionResult:
        """
        Buyer withdraws their own UNPAID invoice.

        Raises:
            InvoiceOwnershipError: ``actor`` is not the invoice's buyer.
            InvalidStateTransitionError: proof was already submitted, or the
                invoice is terminal.
        """
        invoice = self.store.get(invoice_no)
        if actor != invoice.buyer_email:
            raise InvoiceOwnershipError(invoice_no, actor)
        return self._apply(
            invoice_no,
            InvoiceStatus.CANCELLED,
            frozenset({InvoiceStatus.UNPAID}),
            AuditAction.INVOICE_CANCELLED,
            InvoiceEvent.CANCELLED,
            actor,
            resolved_at=self.clock.now(),
        )

    def expire_overdue(self, as_of=None, actor: str = SYSTEM_ACTOR) -> list[str]:
        """
        Expire every UNPAID invoice older than ``invoice.unpaid_ttl_hours``.

        Invoices that move on concurrently (paid proof submitted, cancelled)
        are skipped.  Returns the invoice numbers actually expired.
        """
        now = as_of or self.clock.now()
        cutoff = now - timedelta(hours=self.config.invoice.unpaid_ttl_hours)
        expired: list[str] = []

        for invoice_no in self.store.overdue_unpaid(cutoff):
            try:
                result = self._apply(
                    invoice_no,
                    InvoiceStatus.EXPIRED,
                    frozenset({InvoiceStatus.UNPAID}),
                    AuditAction.INVOICE_EXPIRED,
                    InvoiceEvent.EXPIRED,
                    actor,
                    resolved_at=self.clock.now(),
                )
            except (ConcurrentModificationError, InvalidStateTransitionError):
                logger.info("overdue_invoice_skipped", extra={"invoice_no": invoice_no})
                continue
            if result.is_transitioned:
                expired.append(invoice_no)

        logger.info(
            "overdue_invoices_expired",
            extra={"cutoff": cutoff, "expired_count": len(expired)},
        )
        return expired
