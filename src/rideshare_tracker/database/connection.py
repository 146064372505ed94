"""SQLite connection management with context manager."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

# The sync worker thread and the controller write concurrently; wait for
# the other writer instead of failing with "database is locked".
BUSY_TIMEOUT_SECONDS = 10.0


class DatabaseConnection:
    """Manages SQLite connections with foreign key enforcement.

    Every ``get_connection()`` block is one transaction: it commits when
    the block exits normally and rolls back on any exception, so
    multi-row changes (id cascades, totals) are all-or-nothing.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_connection(self):
        """Yield a connection that auto-commits or rolls back."""
        conn = sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute(self, sql: str, params: tuple = ()):
        """Run a single statement and return all rows."""
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_write(self, sql: str, params: tuple = ()) -> int:
        """Run a single write statement and return the affected row count."""
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    def get_user_version(self) -> int:
        """Read the schema version stored in PRAGMA user_version."""
        rows = self.execute("PRAGMA user_version")
        return rows[0][0] if rows else 0
