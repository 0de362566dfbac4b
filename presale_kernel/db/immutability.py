"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

The audit log is the record of who approved, rejected, retried or cancelled
what.  If it can be edited, it proves nothing.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/triggers.py (SQLite and PostgreSQL triggers)
    - Catches raw SQL, bulk UPDATE statements, direct database access

Both layers enforce the SAME rule: an AuditEntry is append-only from the
moment it is flushed.

===============================================================================
USAGE
===============================================================================

Called once at startup:

    from presale_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event

from presale_kernel.exceptions import ImmutabilityViolationError
from presale_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_update(mapper, connection, target):
    """Prevent any updates to AuditEntry records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent deletion of AuditEntry records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries cannot be deleted",
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: registering twice does not install duplicate listeners.
    """
    from presale_kernel.models.audit_entry import AuditEntry

    if not event.contains(AuditEntry, "before_update", _check_audit_entry_update):
        event.listen(AuditEntry, "before_update", _check_audit_entry_update)
    if not event.contains(AuditEntry, "before_delete", _check_audit_entry_delete):
        event.listen(AuditEntry, "before_delete", _check_audit_entry_delete)

    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to simulate tampering.
    """
    from presale_kernel.models.audit_entry import AuditEntry

    for event_name, listener_fn in (
        ("before_update", _check_audit_entry_update),
        ("before_delete", _check_audit_entry_delete),
    ):
        if event.contains(AuditEntry, event_name, listener_fn):
            event.remove(AuditEntry, event_name, listener_fn)

    logger.debug("immutability_listeners_unregistered")
