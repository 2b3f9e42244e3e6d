"""
Dialect helpers for INSERT ... ON CONFLICT statements.

PostgreSQL is the production store; SQLite backs local runs and tests.
Both dialects support the same ``on_conflict_do_update`` construct.
"""
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def upsert_insert(db: Session, table):
    """An INSERT construct that supports ``on_conflict_do_update`` for the session's dialect."""
    name = dialect_name(db)
    try:
        return _INSERT_BY_DIALECT[name](table)
    except KeyError:
        raise NotImplementedError(f"Upserts are not supported for database dialect '{name}'")
