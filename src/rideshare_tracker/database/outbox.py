"""Outbox: durable queue of mutating requests awaiting delivery."""

import json
import logging
from typing import Optional

from rideshare_tracker.utils.constants import OUTBOX_METHODS
from rideshare_tracker.utils.timeutil import now_iso

from .connection import DatabaseConnection
from .models import PendingRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10


def _to_json(value) -> str:
    """Serialize a body or meta value; strings are stored as-is."""
    if isinstance(value, str):
        return value
    return json.dumps(value if value is not None else {})


class Outbox:
    """Pending request queue backed by the ``pending_requests`` table."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def enqueue(self, method: str, url: str, body=None,
                meta: Optional[dict] = None) -> int:
        """Append a request with retry_count 0. Returns the entry id."""
        method = method.upper()
        if method not in OUTBOX_METHODS:
            raise ValueError(f"Unsupported outbox method: {method}")
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO pending_requests "
                "(method, url, body, meta, retry_count, created_at) "
                "VALUES (?, ?, ?, ?, 0, ?)",
                (
                    method,
                    url,
                    _to_json(body),
                    _to_json(meta) if meta is not None else None,
                    now_iso(),
                ),
            )
            entry_id = cursor.lastrowid
        logger.debug("Queued %s %s as outbox entry %s", method, url, entry_id)
        return entry_id

    def list_pending(self, limit: int = 50) -> list[PendingRequest]:
        """Entries with the fewest failures first, then oldest first.

        A persistently failing entry sinks behind healthy ones, so it
        cannot hide them from a limited batch.
        """
        rows = self.db.execute(
            "SELECT * FROM pending_requests "
            "ORDER BY retry_count ASC, created_at ASC, id ASC LIMIT ?",
            (limit,),
        )
        return [PendingRequest(**dict(r)) for r in rows]

    def get(self, entry_id: int) -> Optional[PendingRequest]:
        rows = self.db.execute(
            "SELECT * FROM pending_requests WHERE id = ?", (entry_id,)
        )
        return PendingRequest(**dict(rows[0])) if rows else None

    def mark_complete(self, entry_id: int):
        """Delete an entry after confirmed delivery."""
        self.db.execute_write(
            "DELETE FROM pending_requests WHERE id = ?", (entry_id,)
        )

    def increment_retry(self, entry_id: int):
        """Record a failed attempt."""
        self.db.execute_write(
            "UPDATE pending_requests "
            "SET retry_count = retry_count + 1, last_attempt_at = ? "
            "WHERE id = ?",
            (now_iso(), entry_id),
        )

    def update(self, entry_id: int, url: Optional[str] = None,
               body: Optional[str] = None, meta: Optional[str] = None):
        """Rewrite url/body/meta in place. retry_count is left alone."""
        fields = []
        values: list = []
        if url is not None:
            fields.append("url = ?")
            values.append(url)
        if body is not None:
            fields.append("body = ?")
            values.append(body)
        if meta is not None:
            fields.append("meta = ?")
            values.append(meta)
        if not fields:
            return
        values.append(entry_id)
        self.db.execute_write(
            f"UPDATE pending_requests SET {', '.join(fields)} WHERE id = ?",
            tuple(values),
        )

    def purge_exhausted(self, max_retries: int = DEFAULT_MAX_RETRIES) -> int:
        """Delete entries whose retry_count exceeds ``max_retries``.

        Returns the number of entries dropped. Dropped mutations are lost
        for good, so callers should log the count.
        """
        return self.db.execute_write(
            "DELETE FROM pending_requests WHERE retry_count > ?",
            (max_retries,),
        )

    def count(self) -> int:
        rows = self.db.execute("SELECT COUNT(*) AS cnt FROM pending_requests")
        return rows[0]["cnt"] if rows else 0
