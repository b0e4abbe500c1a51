"""
Dialect-aware SQL helpers: PostgreSQL in production, SQLite in tests.
"""
from sqlalchemy import Table
from sqlalchemy.dialects import postgresql, sqlite


def upsert_increment(table: Table, dialect_name: str, *, key_columns: list[str], values: dict, counters: list[str]):
    """INSERT ... ON CONFLICT (key_columns) DO UPDATE SET counter = counter + excluded.counter.

    Both dialects share the ``on_conflict_do_update`` API; only the insert
    construct differs. The increment happens inside the database so concurrent
    writers never lose an update.
    """
    if dialect_name == "postgresql":
        stmt = postgresql.insert(table).values(**values)
    elif dialect_name == "sqlite":
        stmt = sqlite.insert(table).values(**values)
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect_name!r}")

    set_ = {name: table.c[name] + stmt.excluded[name] for name in counters}
    if "updated_at" in table.c and "updated_at" in values:
        set_["updated_at"] = stmt.excluded["updated_at"]

    return stmt.on_conflict_do_update(index_elements=key_columns, set_=set_)
