"""
Typed Exception Hierarchy for the Presale Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The invoice lifecycle is driven by untrusted buyer input and privileged admin
commands arriving through an RPC-style gateway.  Callers must be able to
distinguish "you asked for an impossible transition" from "someone else got
there first, re-read and retry" without parsing message strings.

Every error therefore has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        confirmation.approve("INV100", note="ok", actor="admin@tpc")
    except ConcurrentModificationError as e:
        # Another admin changed the invoice under us -- re-read, retry.
        retry_later(e.entity_id)
    except InvalidStateTransitionError as e:
        return reject(code=e.code, current=e.current_status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PresaleKernelError (base)
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- InvoiceAlreadyExistsError
    |   +-- InvalidStateTransitionError
    |   +-- InvalidInvoiceRequestError
    |   +-- InvalidProofError
    |   +-- InvoiceOwnershipError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- NotificationError
    |   +-- JobNotFoundError
    |   +-- InvalidJobTransitionError
    |   +-- JobLeaseHeldError
    |   +-- InvalidLeaseError
    |   +-- UnknownTemplateError
    |
    +-- DeliveryError
    |   +-- PermanentDeliveryError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                        | When Raised
--------------|-----------------------------|-------------------------------------------
Invoice       | INVOICE_NOT_FOUND           | invoice_no does not exist
              | INVOICE_ALREADY_EXISTS      | Duplicate invoice_no on create
              | INVALID_STATE_TRANSITION    | Edge not defined for current status
              | INVALID_INVOICE_REQUEST     | Unknown stage, non-positive amount
              | INVALID_PROOF               | Empty/oversized proof, unknown method
              | INVOICE_OWNERSHIP           | Submitter or canceller is not the buyer
--------------|-----------------------------|-------------------------------------------
Concurrency   | CONCURRENT_MODIFICATION     | Expected prior status did not match
--------------|-----------------------------|-------------------------------------------
Notification  | JOB_NOT_FOUND               | Job id does not exist
              | INVALID_JOB_TRANSITION      | Retry/cancel from an ineligible status
              | JOB_LEASE_HELD              | Cancel on a job held by a live worker
              | INVALID_LEASE               | Claim with a non-positive lease duration
              | UNKNOWN_TEMPLATE            | Template id is not registered
--------------|-----------------------------|-------------------------------------------
Delivery      | DELIVERY_ERROR              | Transient send failure (backoff)
              | PERMANENT_DELIVERY_FAILURE  | Send can never succeed (no retry)
--------------|-----------------------------|-------------------------------------------
Audit         | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
Immutability  | IMMUTABILITY_VIOLATION      | UPDATE/DELETE on an audit row
Config        | CONFIGURATION_ERROR         | Invalid or incomplete configuration

===============================================================================
NOT EXCEPTIONS
===============================================================================

"No job available right now" (ClaimStatus.UNAVAILABLE), "already processed"
(TransitionStatus.ALREADY_PROCESSED), "attempts exhausted"
(FailStatus.EXHAUSTED) and "lease expired" (crash recovery at claim time) are
ordinary typed outcomes returned by the services.  They are part of normal
operation and never raised.

===============================================================================
"""


class PresaleKernelError(Exception):
    """
    Base exception for all presale kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "PRESALE_KERNEL_ERROR"


# Invoice-related exceptions


class InvoiceError(PresaleKernelError):
    """Base exception for invoice lifecycle errors."""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice with given number was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_no: str):
        self.invoice_no = invoice_no
        super().__init__(f"Invoice not found: {invoice_no}")


class InvoiceAlreadyExistsError(InvoiceError):
    """Invoice number is already taken."""

    code: str = "INVOICE_ALREADY_EXISTS"

    def __init__(self, invoice_no: str):
        self.invoice_no = invoice_no
        super().__init__(f"Invoice already exists: {invoice_no}")


class InvalidStateTransitionError(InvoiceError):
    """
    The requested transition is not defined for the invoice's current status.

    The invoice is left unchanged.
    """

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, invoice_no: str, current_status: str, target_status: str):
        self.invoice_no = invoice_no
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invoice {invoice_no} cannot transition from "
            f"{current_status} to {target_status}"
        )


class InvalidInvoiceRequestError(InvoiceError):
    """Purchase intent could not be turned into an invoice."""

    code: str = "INVALID_INVOICE_REQUEST"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid invoice request: {reason}")


class InvalidProofError(InvoiceError):
    """Buyer-submitted payment proof failed validation."""

    code: str = "INVALID_PROOF"

    def __init__(self, invoice_no: str, reason: str):
        self.invoice_no = invoice_no
        self.reason = reason
        super().__init__(f"Invalid payment proof for {invoice_no}: {reason}")


class InvoiceOwnershipError(InvoiceError):
    """A buyer tried to act on somebody else's invoice."""

    code: str = "INVOICE_OWNERSHIP"

    def __init__(self, invoice_no: str, actor: str):
        self.invoice_no = invoice_no
        self.actor = actor
        super().__init__(f"Actor {actor} does not own invoice {invoice_no}")


# Concurrency-related exceptions


class ConcurrencyError(PresaleKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """
    Compare-and-swap on the expected prior status failed.

    The record was changed by another transaction between read and write.
    The caller must re-read and retry; nothing was written.
    """

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str, expected_status: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_status = expected_status
        super().__init__(
            f"Concurrent modification on {entity_type} {entity_id}: "
            f"status is no longer {expected_status}"
        )


# Notification queue exceptions


class NotificationError(PresaleKernelError):
    """Base exception for notification queue errors."""

    code: str = "NOTIFICATION_ERROR"


class JobNotFoundError(NotificationError):
    """Notification job with given id was not found."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Notification job not found: {job_id}")


class InvalidJobTransitionError(NotificationError):
    """Admin queue operation is not allowed from the job's current status."""

    code: str = "INVALID_JOB_TRANSITION"

    def __init__(self, job_id: str, current_status: str, operation: str):
        self.job_id = job_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} notification job {job_id} in status {current_status}"
        )


class JobLeaseHeldError(NotificationError):
    """
    The job is held by a worker under an unexpired lease.

    Retry after the lease expires or the job completes.
    """

    code: str = "JOB_LEASE_HELD"

    def __init__(self, job_id: str, locked_by: str, lock_expires_at: str):
        self.job_id = job_id
        self.locked_by = locked_by
        self.lock_expires_at = lock_expires_at
        super().__init__(
            f"Notification job {job_id} is held by {locked_by} "
            f"until {lock_expires_at}"
        )


class InvalidLeaseError(NotificationError):
    """A claim asked for a lease that is not a positive number of seconds."""

    code: str = "INVALID_LEASE"

    def __init__(self, lease_seconds: int):
        self.lease_seconds = lease_seconds
        super().__init__(f"Lease must be a positive number of seconds, got {lease_seconds}")


class UnknownTemplateError(NotificationError):
    """Template id is not registered."""

    code: str = "UNKNOWN_TEMPLATE"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Unknown notification template: {template_id}")


# Delivery exceptions (raised by senders, consumed by the worker loop)


class DeliveryError(PresaleKernelError):
    """Transient failure while sending; the job is rescheduled with backoff."""

    code: str = "DELIVERY_ERROR"

    def __init__(self, message: str, provider_status: int | None = None):
        self.provider_status = provider_status
        super().__init__(message)


class PermanentDeliveryError(DeliveryError):
    """The message can never be delivered as-is; the job fails immediately."""

    code: str = "PERMANENT_DELIVERY_FAILURE"


# Audit-related exceptions


class AuditError(PresaleKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at entry {audit_entry_id}: "
            f"expected hash {expected_hash}, got {actual_hash}"
        )


# Immutability-related exceptions


class ImmutabilityError(PresaleKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration


class ConfigurationError(PresaleKernelError):
    """Configuration is missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for {field}: {reason}")
