"""Dialect-aware INSERT ... ON CONFLICT DO NOTHING."""

from typing import Any

from sqlalchemy import ColumnElement, TextClause
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def insert_ignore(
    session: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: list[str],
    index_where: ColumnElement[bool] | TextClause | None = None,
) -> bool:
    """
    Insert a row unless it collides with the unique key on conflict_columns.

    index_where names the predicate of a partial unique index.

    Returns True when the statement reported an inserted row. Under concurrent
    writers this is the statement's own view, not a guarantee that nobody else
    inserted the same key first.
    """
    dialect = session.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"insert_ignore is not supported for dialect {dialect!r}")

    stmt = insert(model).values(**values).on_conflict_do_nothing(
        index_elements=conflict_columns,
        index_where=index_where,
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0
