"""
Append-only enforcement for the audit log.

Two layers: ORM listeners stop edits made through mapped objects, database
triggers stop raw SQL.  Both must hold independently.
"""

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError

from conftest import BUYER
from presale_kernel.db.engine import session_scope
from presale_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from presale_kernel.db.triggers import get_installed_triggers, triggers_installed
from presale_kernel.exceptions import ImmutabilityViolationError
from presale_kernel.models.audit_entry import AuditEntry
from presale_kernel.selectors.audit_selector import AuditSelector


@pytest.fixture
def entry(session, make_invoice):
    make_invoice("INV100")
    return session.execute(select(AuditEntry).where(AuditEntry.seq == 1)).scalar_one()


class TestOrmListeners:

    def test_update_blocked(self, session, entry):
        entry.actor = "mallory@example.com"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "AuditEntry"
        assert exc_info.value.code == "IMMUTABILITY_VIOLATION"

    def test_delete_blocked(self, session, entry):
        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_registration_is_idempotent(self, session, entry):
        register_immutability_listeners()
        register_immutability_listeners()

        entry.action = "INVOICE_CANCELLED"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestDatabaseTriggers:

    def test_triggers_installed(self, db_engine):
        if db_engine.dialect.name not in ("sqlite", "postgresql"):
            pytest.skip("no audit triggers for this dialect")
        assert triggers_installed(db_engine)
        assert len(get_installed_triggers(db_engine)) == 2

    @pytest.mark.parametrize(
        "statement",
        [
            "UPDATE audit_log SET actor = 'mallory@example.com'",
            "DELETE FROM audit_log",
        ],
    )
    def test_raw_sql_blocked(self, db_engine, committed_invoice, session_factory, clock, statement):
        committed_invoice("INV100")

        with pytest.raises(DBAPIError):
            with session_scope(session_factory) as sess:
                sess.execute(text(statement))

        with session_scope(session_factory) as sess:
            trace = AuditSelector(sess, clock).trace("Invoice", "INV100")
        assert trace.entries[0].actor == BUYER

    def test_triggers_hold_without_orm_listeners(self, db_engine, committed_invoice, session_factory):
        committed_invoice("INV100")
        unregister_immutability_listeners()
        try:
            with pytest.raises(DBAPIError):
                with session_scope(session_factory) as sess:
                    row = sess.execute(select(AuditEntry)).scalars().first()
                    row.actor = "mallory@example.com"
                    sess.flush()
        finally:
            register_immutability_listeners()


def test_failed_transaction_leaves_no_entries(session_factory, presale_config, clock):
    from presale_kernel.services.payment_confirmation import PaymentConfirmationService

    with pytest.raises(RuntimeError):
        with session_scope(session_factory) as sess:
            PaymentConfirmationService(sess, presale_config, clock).create_invoice(
                buyer=BUYER,
                token_amount="1000",
                stage="stage1",
                payment_method="BANK_TRANSFER",
                invoice_no="INV100",
            )
            raise RuntimeError("boom")

    with session_scope(session_factory) as sess:
        count = sess.execute(select(func.count()).select_from(AuditEntry)).scalar_one()
        assert count == 0
        assert AuditSelector(sess, clock).latest_seq() == 0
