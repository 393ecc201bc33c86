"""Dialect-aware INSERT .. ON CONFLICT builder."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def insert_for(session: Session, table):
    """Return an ``insert()`` construct supporting ``on_conflict_do_update``.

    Raises:
        NotImplementedError: For dialects without native upsert support here.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")
