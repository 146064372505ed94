"""Local -> server identifier mapping table.

One row per local id that has ever been replaced by a server id. The sync
engine uses it to rewrite outbox entries and location batches that still
carry stale local ids. A lookup miss means the id is already current.
"""

from typing import Optional

from .connection import DatabaseConnection
from .models import IdMapping


class IdMappingTable:
    """Durable local_id -> server_id lookups, tagged by entity kind."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def save(self, entity: str, local_id: str, server_id: str, conn=None):
        """Record (or replace) a mapping.

        Pass ``conn`` to join an open transaction, e.g. an id cascade that
        must commit the mapping together with the rewritten rows.
        """
        sql = (
            "INSERT OR REPLACE INTO id_mappings (local_id, server_id, entity) "
            "VALUES (?, ?, ?)"
        )
        if conn is not None:
            conn.execute(sql, (local_id, server_id, entity))
            return
        with self.db.get_connection() as own:
            own.execute(sql, (local_id, server_id, entity))

    def resolve(self, local_id: Optional[str]) -> Optional[str]:
        """Return the server id for ``local_id``, or None on a miss."""
        if not local_id:
            return None
        rows = self.db.execute(
            "SELECT server_id FROM id_mappings WHERE local_id = ? LIMIT 1",
            (local_id,),
        )
        return rows[0]["server_id"] if rows else None

    def resolve_or_self(self, some_id: Optional[str]) -> Optional[str]:
        """Return the current id: the mapped server id, else the input."""
        return self.resolve(some_id) or some_id

    def get(self, local_id: str) -> Optional[IdMapping]:
        rows = self.db.execute(
            "SELECT * FROM id_mappings WHERE local_id = ?", (local_id,)
        )
        return IdMapping(**dict(rows[0])) if rows else None

    def count(self) -> int:
        rows = self.db.execute("SELECT COUNT(*) AS cnt FROM id_mappings")
        return rows[0]["cnt"] if rows else 0
