import logging
from typing import Iterable, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

log = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def dialect_insert(db: Session, table):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERTS[dialect](table)
    except KeyError:
        raise NotImplementedError(f"Upserts are not supported on {dialect}") from None


def upsert_rows(
    db: Session,
    table,
    rows: List[dict],
    index_elements: Iterable[str],
    update_columns: Optional[Iterable[str]] = None,
) -> None:
    """
    INSERT ... ON CONFLICT for PostgreSQL and SQLite.

    With `update_columns=None` existing rows are left untouched
    (create-if-absent); otherwise the listed columns take the new values.
    """
    if not rows:
        return

    stmt = dialect_insert(db, table).values(rows)
    if update_columns is None:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
    else:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={col: stmt.excluded[col] for col in update_columns},
        )
    db.execute(stmt)
