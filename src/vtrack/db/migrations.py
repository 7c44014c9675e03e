"""
Schema migrations for the on-device database.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from init_db() after create_all() so both fresh
installs and databases written by earlier releases are handled without
manual steps. Conversion of the legacy sync bookkeeping lives in
vtrack.sync.migration; this module only deals with table shape.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times — checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # ChangeRecord: failure bookkeeping for parked records
        _add_column_if_missing(conn, "changerecord", "last_error", "VARCHAR")
        _add_column_if_missing(conn, "changerecord", "parked_at", "DATETIME")

        # SyncLog: which trigger started the cycle
        _add_column_if_missing(conn, "synclog", "mode", "VARCHAR DEFAULT 'periodic'")

        # ConflictRecord: why a side won
        _add_column_if_missing(conn, "conflictrecord", "reason", "VARCHAR")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "VARCHAR", "DATETIME".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if not existing_columns:
        return  # table not created yet; create_all will build it whole
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
