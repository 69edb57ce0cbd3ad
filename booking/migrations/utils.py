from alembic import op
import sqlalchemy as sa
from sqlalchemy.engine.reflection import Inspector


def _get_bind(conn: sa.engine.Connection | None = None) -> sa.engine.Connection:
    if conn is not None:
        return conn
    return op.get_bind()


def _inspector(conn: sa.engine.Connection | None = None) -> Inspector:
    return sa.inspect(_get_bind(conn))


def dialect_name(conn: sa.engine.Connection | None = None) -> str:
    return _get_bind(conn).dialect.name


def table_exists(table_name: str, conn: sa.engine.Connection | None = None) -> bool:
    return table_name in _inspector(conn).get_table_names()


def index_exists(
    table_name: str, index_name: str, conn: sa.engine.Connection | None = None
) -> bool:
    if not table_exists(table_name, conn):
        return False
    return any(idx.get("name") == index_name for idx in _inspector(conn).get_indexes(table_name))
