"""Services for the presale kernel (write side)."""

from presale_kernel.services.audit_log import AuditLog
from presale_kernel.services.command_gateway import CommandGateway
from presale_kernel.services.delivery_worker import (
    DeliveryOutcome,
    DeliveryWorker,
    DeliveryWorkerPool,
)
from presale_kernel.services.invoice_store import InvoiceStore
from presale_kernel.services.notification_queue import NotificationQueue
from presale_kernel.services.payment_confirmation import PaymentConfirmationService
from presale_kernel.services.senders import (
    MessageSender,
    RecordingSender,
    ResendEmailSender,
    build_sender,
)
from presale_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditLog",
    "CommandGateway",
    "DeliveryOutcome",
    "DeliveryWorker",
    "DeliveryWorkerPool",
    "InvoiceStore",
    "MessageSender",
    "NotificationQueue",
    "PaymentConfirmationService",
    "RecordingSender",
    "ResendEmailSender",
    "SequenceService",
    "build_sender",
]
