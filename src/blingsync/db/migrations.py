"""
Schema migrations for blingsync.

create_all() never alters existing tables, so columns added after a
database was first created are applied here with ALTER TABLE ADD COLUMN.
Each migration is idempotent: columns are only added if absent.

Called automatically from init_db() after create_all().
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # bling_configs: webhook registration target
        _add_column_if_missing(conn, "bling_configs", "webhook_url", "TEXT")

        # bling_sync_logs: who triggered the run, free-form run metadata
        _add_column_if_missing(conn, "bling_sync_logs", "started_by", "TEXT")
        _add_column_if_missing(conn, "bling_sync_logs", "metadata", "JSON")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name.
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "TEXT", "JSON".
    """
    existing_columns = {col["name"] for col in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
