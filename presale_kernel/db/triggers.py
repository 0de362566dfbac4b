"""
Module: presale_kernel.db.triggers
Responsibility: Installing, removing and verifying the database-level
    append-only triggers for the audit log.  This is the database-level
    complement to the ORM listeners in db/immutability.py.
Architecture position: Kernel > DB.  MUST NOT import from models/, services/,
    selectors/, domain/, or outer layers.

Invariants enforced:
    audit_log rows: no UPDATE, no DELETE, ever.  Enforced for PostgreSQL
    (plpgsql trigger function) and SQLite (RAISE(ABORT) triggers).

Failure modes:
    - PostgreSQL RAISE EXCEPTION / SQLite ABORT on any violation, surfaced by
      SQLAlchemy as an IntegrityError, InternalError or OperationalError.

Audit relevance:
    Raw SQL and bulk UPDATE/DELETE statements never reach the ORM listeners.
    These triggers are what stops them.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

ALL_TRIGGER_NAMES = [
    "trg_audit_log_immutability_update",
    "trg_audit_log_immutability_delete",
]

_POSTGRES_INSTALL = [
    """
    CREATE OR REPLACE FUNCTION prevent_audit_log_mutation()
    RETURNS TRIGGER AS $$
    BEGIN
        RAISE EXCEPTION 'audit_log is append-only: % rejected', TG_OP;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS trg_audit_log_immutability_update ON audit_log",
    """
    CREATE TRIGGER trg_audit_log_immutability_update
    BEFORE UPDATE ON audit_log
    FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_mutation()
    """,
    "DROP TRIGGER IF EXISTS trg_audit_log_immutability_delete ON audit_log",
    """
    CREATE TRIGGER trg_audit_log_immutability_delete
    BEFORE DELETE ON audit_log
    FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_mutation()
    """,
]

_POSTGRES_DROP = [
    "DROP TRIGGER IF EXISTS trg_audit_log_immutability_update ON audit_log",
    "DROP TRIGGER IF EXISTS trg_audit_log_immutability_delete ON audit_log",
    "DROP FUNCTION IF EXISTS prevent_audit_log_mutation()",
]

_SQLITE_INSTALL = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_log_immutability_update
    BEFORE UPDATE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only: UPDATE rejected');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_log_immutability_delete
    BEFORE DELETE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only: DELETE rejected');
    END
    """,
]

_SQLITE_DROP = [
    "DROP TRIGGER IF EXISTS trg_audit_log_immutability_update",
    "DROP TRIGGER IF EXISTS trg_audit_log_immutability_delete",
]


def _statements(engine: Engine, install: bool) -> list[str]:
    if engine.dialect.name == "postgresql":
        return _POSTGRES_INSTALL if install else _POSTGRES_DROP
    if engine.dialect.name == "sqlite":
        return _SQLITE_INSTALL if install else _SQLITE_DROP
    return []


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install the audit_log append-only triggers.

    Preconditions: Tables must exist (call after create_all()).
    Postconditions: All triggers in ALL_TRIGGER_NAMES are installed
        (idempotent).
    """
    with engine.connect() as conn:
        for statement in _statements(engine, install=True):
            conn.execute(text(statement))
        conn.commit()


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove the audit_log triggers.

    WARNING: Only for teardown in tests and for schema migrations.
    """
    with engine.connect() as conn:
        for statement in _statements(engine, install=False):
            conn.execute(text(statement))
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """Get list of installed audit_log triggers."""
    names = ", ".join(f"'{name}'" for name in ALL_TRIGGER_NAMES)
    if engine.dialect.name == "postgresql":
        query = f"SELECT tgname FROM pg_trigger WHERE tgname IN ({names}) ORDER BY tgname"
    elif engine.dialect.name == "sqlite":
        query = (
            "SELECT name FROM sqlite_master WHERE type = 'trigger' "
            f"AND name IN ({names}) ORDER BY name"
        )
    else:
        return []

    with engine.connect() as conn:
        return [row[0] for row in conn.execute(text(query))]


def triggers_installed(engine: Engine) -> bool:
    """Check if all audit_log triggers are installed."""
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
