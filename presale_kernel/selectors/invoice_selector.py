"""
Module: presale_kernel.selectors.invoice_selector
Responsibility: Read-only invoice status for buyers and the admin console.

Failure modes:
    - ``get_status`` raises InvoiceNotFoundError for an unknown invoice;
      ``get`` returns None.
"""

from sqlalchemy import select

from presale_kernel.domain.invoice import InvoiceStatus, InvoiceView
from presale_kernel.exceptions import InvoiceNotFoundError
from presale_kernel.models.invoice import Invoice
from presale_kernel.selectors.base import BaseSelector


class InvoiceSelector(BaseSelector[Invoice]):
    """Selector for invoice snapshots."""

    def _load(self, invoice_no: str) -> Invoice | None:
        return self.session.execute(
            select(Invoice)
            .where(Invoice.invoice_no == invoice_no)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get(self, invoice_no: str) -> InvoiceView | None:
        invoice = self._load(invoice_no)
        return invoice.to_view() if invoice is not None else None

    def get_status(self, invoice_no: str) -> InvoiceStatus:
        invoice = self._load(invoice_no)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_no)
        return InvoiceStatus(invoice.status)

    def list_by_status(self, status: InvoiceStatus, limit: int = 100) -> list[InvoiceView]:
        """Oldest first; used by the review queue."""
        rows = self.session.execute(
            select(Invoice)
            .where(Invoice.status == status.value)
            .order_by(Invoice.created_at)
            .limit(limit)
        ).scalars()
        return [invoice.to_view() for invoice in rows]
