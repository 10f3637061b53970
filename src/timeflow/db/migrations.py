"""
Schema migrations for the sync tables.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.

The baseline is the first released shape of the sync tables: syncmapping
with ids, version markers and provider_metadata only, syncrun with counters
and errors only, and webhooksubscription without replay tracking. Every
column below was added after that release; tests/unit/test_sync_migrations.py
builds the baseline by hand.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Non-SQLite databases are left alone; they
    are expected to be managed by the app's own migration tooling.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # SyncMapping: three-way merge base and manual reconciliation flags
        _add_column_if_missing(conn, "syncmapping", "synced_fields", "JSON")
        _add_column_if_missing(conn, "syncmapping", "needs_reconciliation", "BOOLEAN DEFAULT 0")
        _add_column_if_missing(conn, "syncmapping", "conflict_remote_id", "VARCHAR")

        # SyncRun: trigger context and timing
        _add_column_if_missing(conn, "syncrun", "sync_data", "JSON")
        _add_column_if_missing(conn, "syncrun", "duration_ms", "INTEGER")

        # WebhookSubscription: replay detection
        _add_column_if_missing(conn, "webhooksubscription", "last_message_number", "INTEGER")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "JSON", "VARCHAR".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
