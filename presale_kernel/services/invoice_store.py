"""
InvoiceStore -- persistence and atomic status transitions for invoices.

Responsibility:
    Creates invoice rows and applies lifecycle transitions as
    compare-and-swap updates on the expected prior status.

Architecture position:
    Kernel > Services -- leaf of the invoice flow.  Called by
    PaymentConfirmationService.

Invariants enforced:
    - Only edges in ``INVOICE_TRANSITIONS`` are ever written.
    - Every transition is ``UPDATE invoices SET ... WHERE invoice_no = :no
      AND status = :expected``.  Zero matched rows means somebody else moved
      the invoice first: ConcurrentModificationError, nothing written.
      There is no blind overwrite path.

Failure modes:
    - InvoiceNotFoundError, InvoiceAlreadyExistsError,
      InvalidStateTransitionError, ConcurrentModificationError.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select, update

from presale_kernel.domain.invoice import InvoiceStatus, can_transition
from presale_kernel.exceptions import (
    ConcurrentModificationError,
    InvalidStateTransitionError,
    InvoiceAlreadyExistsError,
    InvoiceNotFoundError,
)
from presale_kernel.logging_config import get_logger
from presale_kernel.models.invoice import Invoice
from presale_kernel.services.base import BaseService

logger = get_logger("services.invoice_store")


class InvoiceStore(BaseService):
    """Invoice persistence with compare-and-swap transitions."""

    def find(self, invoice_no: str) -> Invoice | None:
        """Load an invoice with fresh column values, or None."""
        return self.session.execute(
            select(Invoice)
            .where(Invoice.invoice_no == invoice_no)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get(self, invoice_no: str) -> Invoice:
        invoice = self.find(invoice_no)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_no)
        return invoice

    def create(self, invoice_no: str, **fields: Any) -> Invoice:
        """Insert a new UNPAID invoice."""
        if self.find(invoice_no) is not None:
            raise InvoiceAlreadyExistsError(invoice_no)

        now = self.clock.now()
        invoice = Invoice(
            invoice_no=invoice_no,
            status=InvoiceStatus.UNPAID.value,
            submission_count=0,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.session.add(invoice)
        self.session.flush()

        logger.info(
            "invoice_created",
            extra={"invoice_no": invoice_no, "total_usd": invoice.total_usd},
        )
        return invoice

    def transition(
        self,
        invoice_no: str,
        expected: InvoiceStatus,
        target: InvoiceStatus,
        **values: Any,
    ) -> Invoice:
        """
        Move ``invoice_no`` from ``expected`` to ``target`` atomically.

        ``values`` are additional columns written in the same UPDATE (SQL
        expressions such as ``Invoice.submission_count + 1`` are allowed).

        Raises:
            InvalidStateTransitionError: ``expected -> target`` is not an edge.
            InvoiceNotFoundError: no such invoice.
            ConcurrentModificationError: status was no longer ``expected``.
        """
        if not can_transition(expected, target):
            raise InvalidStateTransitionError(invoice_no, expected.value, target.value)

        result = self.session.execute(
            update(Invoice)
            .where(Invoice.invoice_no == invoice_no, Invoice.status == expected.value)
            .values(status=target.value, updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = self.find(invoice_no)
            if current is None:
                raise InvoiceNotFoundError(invoice_no)
            logger.warning(
                "invoice_cas_conflict",
                extra={
                    "invoice_no": invoice_no,
                    "expected_status": expected.value,
                    "actual_status": current.status,
                    "target_status": target.value,
                },
            )
            raise ConcurrentModificationError("Invoice", invoice_no, expected.value)

        logger.info(
            "invoice_transitioned",
            extra={
                "invoice_no": invoice_no,
                "from_status": expected.value,
                "to_status": target.value,
            },
        )
        return self.get(invoice_no)

    def overdue_unpaid(self, cutoff: datetime) -> list[str]:
        """Invoice numbers still UNPAID that were created before ``cutoff``."""
        return list(
            self.session.execute(
                select(Invoice.invoice_no)
                .where(
                    Invoice.status == InvoiceStatus.UNPAID.value,
                    Invoice.created_at < cutoff,
                )
                .order_by(Invoice.created_at)
            ).scalars()
        )
