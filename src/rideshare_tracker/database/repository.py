"""Repository layer: local entity store for shifts, rides, pings, expenses.

Rows are created with locally generated UUIDs and keep them until the
server confirms the entity; ``replace_id`` then swaps in the server id and
cascades it to every dependent row.

The sync worker may swap an id between a caller reading a row and writing
it back, so writes addressed by id match the given id or the server id it
has been mapped to, within the same statement.
"""

import logging
import uuid
from typing import Optional

from rideshare_tracker.utils.constants import (
    ENTITY_EXPENSE,
    ENTITY_RIDE,
    ENTITY_SHIFT,
    PING_SOURCES,
    RIDE_STATUS_COMPLETED,
    RIDE_STATUS_EN_ROUTE,
    RIDE_STATUS_IN_PROGRESS,
)
from rideshare_tracker.utils.timeutil import days_ago_iso, now_iso

from .connection import DatabaseConnection
from .id_mappings import IdMappingTable
from .models import Expense, LocationPing, Ride, Shift

logger = logging.getLogger(__name__)

# Columns a totals update may touch
_SHIFT_TOTAL_FIELDS = ("earnings_cents", "tips_cents", "distance_miles", "ride_count")

# entity -> (table, [(child_table, fk_column), ...])
_CASCADES = {
    ENTITY_SHIFT: ("shifts", [("rides", "shift_id"), ("location_pings", "shift_id")]),
    ENTITY_RIDE: ("rides", [("location_pings", "ride_id")]),
    ENTITY_EXPENSE: ("expenses", []),
}

# "<column> IN (id, mapped server id)"; bind the id twice
_ID_OR_MAPPED = "IN (?, (SELECT server_id FROM id_mappings WHERE local_id = ?))"

# The mapped server id, else the id itself; bind the id twice
_RESOLVED_ID = "COALESCE((SELECT server_id FROM id_mappings WHERE local_id = ?), ?)"

# Ids the server has confirmed: every mapped id, old or new
_CONFIRMED_IDS = "(SELECT server_id FROM id_mappings UNION SELECT local_id FROM id_mappings)"

# Pings with this many failed uploads are set aside
DEFAULT_MAX_UPLOAD_ATTEMPTS = 10


class RecordNotFoundError(LookupError):
    """No row has the id, nor the server id it was mapped to."""


def new_local_id() -> str:
    """Generate a local identifier for an entity not yet known to the server."""
    return str(uuid.uuid4())


def _shift(row) -> Shift:
    data = dict(row)
    data["synced"] = bool(data["synced"])
    return Shift(**data)


def _ride(row) -> Ride:
    data = dict(row)
    data["synced"] = bool(data["synced"])
    return Ride(**data)


def _ping(row) -> LocationPing:
    data = dict(row)
    data["synced"] = bool(data["synced"])
    return LocationPing(**data)


def _expense(row) -> Expense:
    data = dict(row)
    data["synced"] = bool(data["synced"])
    return Expense(**data)


class Repository:
    """Provides all local entity operations for the tracker."""

    def __init__(self, db: DatabaseConnection):
        self.db = db
        self.id_mappings = IdMappingTable(db)

    def _update_by_id(self, table: str, assignments: str, params: tuple,
                      row_id: str, required: bool = True) -> int:
        """UPDATE one row of ``table`` by id or by its mapped server id."""
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id {_ID_OR_MAPPED}",
                (*params, row_id, row_id),
            )
            count = cursor.rowcount
        if required and count == 0:
            raise RecordNotFoundError(f"No {table} row with id {row_id}")
        return count

    # ── Identifier remapping ────────────────────────────────────

    def replace_id(self, entity: str, old_id: str, new_id: str):
        """Replace a local id with the server id, atomically.

        Rewrites the entity row, every dependent foreign key and the id
        mapping in one transaction; a failure leaves all of them as they
        were.
        """
        if entity not in _CASCADES:
            raise ValueError(f"Unknown entity kind: {entity}")
        if not old_id or not new_id:
            return
        if old_id == new_id:
            # Nothing to cascade; still record that the server knows the id
            self.id_mappings.save(entity, old_id, new_id)
            return
        table, children = _CASCADES[entity]
        with self.db.get_connection() as conn:
            for child_table, fk_column in children:
                conn.execute(
                    f"UPDATE {child_table} SET {fk_column} = ? "
                    f"WHERE {fk_column} = ?",
                    (new_id, old_id),
                )
            conn.execute(
                f"UPDATE {table} SET id = ? WHERE id = ?", (new_id, old_id)
            )
            self.id_mappings.save(entity, old_id, new_id, conn=conn)
        logger.info("Remapped %s %s -> %s", entity, old_id, new_id)

    # ── Shifts ──────────────────────────────────────────────────

    def create_shift(self) -> Shift:
        """Insert a new active shift with a local id."""
        shift = Shift(id=new_local_id(), started_at=now_iso())
        with self.db.get_connection() as conn:
            conn.execute(
                "INSERT INTO shifts (id, started_at, synced) VALUES (?, ?, 0)",
                (shift.id, shift.started_at),
            )
        return shift

    def get_shift_by_id(self, shift_id: str) -> Optional[Shift]:
        rows = self.db.execute("SELECT * FROM shifts WHERE id = ?", (shift_id,))
        return _shift(rows[0]) if rows else None

    def get_active_shift(self) -> Optional[Shift]:
        """The shift with no end timestamp, if any."""
        rows = self.db.execute(
            "SELECT * FROM shifts WHERE ended_at IS NULL "
            "ORDER BY started_at DESC LIMIT 1"
        )
        return _shift(rows[0]) if rows else None

    def end_shift(self, shift_id: str) -> Optional[Shift]:
        self._update_by_id(
            "shifts", "ended_at = ?, synced = 0", (now_iso(),), shift_id
        )
        return self.get_shift_by_id(self.id_mappings.resolve_or_self(shift_id))

    def _check_totals(self, totals: dict):
        unknown = set(totals) - set(_SHIFT_TOTAL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown shift totals: {sorted(unknown)}")

    def update_shift_totals(self, shift_id: str, **totals):
        """Set only the supplied totals; always clears ``synced``.

        Accepts any of earnings_cents, tips_cents, distance_miles,
        ride_count.
        """
        self._check_totals(totals)
        names = [name for name in _SHIFT_TOTAL_FIELDS if name in totals]
        if not names:
            return
        assignments = ", ".join(f"{name} = ?" for name in names)
        self._update_by_id(
            "shifts", assignments + ", synced = 0",
            tuple(totals[name] for name in names), shift_id,
        )

    def add_shift_totals(self, shift_id: str, **deltas):
        """Add ``deltas`` to the stored totals in one statement.

        Unlike ``update_shift_totals`` the new value is computed by SQLite
        from the row as it is now, so nothing read earlier can be written
        back stale. Raises RecordNotFoundError when the shift is gone.
        """
        self._check_totals(deltas)
        names = [name for name in _SHIFT_TOTAL_FIELDS if deltas.get(name)]
        if not names:
            return
        assignments = ", ".join(f"{name} = {name} + ?" for name in names)
        self._update_by_id(
            "shifts", assignments + ", synced = 0",
            tuple(deltas[name] for name in names), shift_id,
        )

    def mark_shift_synced(self, shift_id: str):
        self._update_by_id("shifts", "synced = 1", (), shift_id, required=False)

    def get_shift_history(self, limit: int = 10) -> list[Shift]:
        """Most recent ended shifts, newest first."""
        rows = self.db.execute(
            "SELECT * FROM shifts WHERE ended_at IS NOT NULL "
            "ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )
        return [_shift(r) for r in rows]

    def get_all_shifts(self) -> list[Shift]:
        rows = self.db.execute("SELECT * FROM shifts ORDER BY started_at ASC")
        return [_shift(r) for r in rows]

    # ── Rides ───────────────────────────────────────────────────

    def create_ride(self, shift_id: str, pickup_lat: float = None,
                    pickup_lng: float = None) -> Ride:
        """Insert a new en-route ride for a shift with a local id."""
        ride = Ride(
            id=new_local_id(),
            shift_id=shift_id,
            status=RIDE_STATUS_EN_ROUTE,
            started_at=now_iso(),
            pickup_lat=pickup_lat,
            pickup_lng=pickup_lng,
        )
        with self.db.get_connection() as conn:
            conn.execute(f"""
                INSERT INTO rides
                    (id, shift_id, status, started_at,
                     pickup_lat, pickup_lng, synced)
                VALUES (?, {_RESOLVED_ID}, ?, ?, ?, ?, 0)
            """, (
                ride.id, shift_id, shift_id, ride.status, ride.started_at,
                ride.pickup_lat, ride.pickup_lng,
            ))
        return self.get_ride_by_id(ride.id)

    def get_ride_by_id(self, ride_id: str) -> Optional[Ride]:
        rows = self.db.execute("SELECT * FROM rides WHERE id = ?", (ride_id,))
        return _ride(rows[0]) if rows else None

    def get_active_ride(self, shift_id: str) -> Optional[Ride]:
        """The ride of ``shift_id`` that is not completed, if any."""
        rows = self.db.execute("""
            SELECT * FROM rides
            WHERE shift_id = ? AND status != ?
            ORDER BY started_at DESC LIMIT 1
        """, (shift_id, RIDE_STATUS_COMPLETED))
        return _ride(rows[0]) if rows else None

    def get_last_ride_for_shift(self, shift_id: str) -> Optional[Ride]:
        """The most recently created ride of a shift."""
        rows = self.db.execute(f"""
            SELECT * FROM rides WHERE shift_id {_ID_OR_MAPPED}
            ORDER BY started_at DESC, rowid DESC LIMIT 1
        """, (shift_id, shift_id))
        return _ride(rows[0]) if rows else None

    def get_rides_for_shift(self, shift_id: str) -> list[Ride]:
        rows = self.db.execute(
            "SELECT * FROM rides WHERE shift_id = ? ORDER BY started_at ASC",
            (shift_id,),
        )
        return [_ride(r) for r in rows]

    def mark_rider_picked_up(self, ride_id: str) -> Optional[Ride]:
        self._update_by_id(
            "rides", "status = ?, pickup_at = ?, synced = 0",
            (RIDE_STATUS_IN_PROGRESS, now_iso()), ride_id,
        )
        return self.get_ride_by_id(self.id_mappings.resolve_or_self(ride_id))

    def end_ride(self, ride_id: str, gross_cents: int,
                 dropoff_lat: float = None, dropoff_lng: float = None,
                 distance_miles: float = None) -> Optional[Ride]:
        """Complete a ride; dropoff and end share one timestamp."""
        ended_at = now_iso()
        self._update_by_id("rides", """
            status = ?, ended_at = ?, dropoff_at = ?, gross_cents = ?,
            dropoff_lat = ?, dropoff_lng = ?,
            distance_miles = COALESCE(?, distance_miles),
            synced = 0
        """, (
            RIDE_STATUS_COMPLETED, ended_at, ended_at, gross_cents,
            dropoff_lat, dropoff_lng, distance_miles,
        ), ride_id)
        return self.get_ride_by_id(self.id_mappings.resolve_or_self(ride_id))

    def add_tip_to_ride(self, ride_id: str, tip_cents: int):
        """Accumulate a tip onto the ride."""
        self._update_by_id(
            "rides", "tip_cents = tip_cents + ?, synced = 0",
            (tip_cents,), ride_id,
        )

    def mark_ride_synced(self, ride_id: str):
        self._update_by_id("rides", "synced = 1", (), ride_id, required=False)

    # ── Location Pings ──────────────────────────────────────────

    def save_ping(self, shift_id: str, lat: float, lng: float,
                  accuracy: float, source: str = "gps",
                  ride_id: str = None, speed: float = None,
                  heading: float = None, ts: str = None) -> int:
        """Append a location ping. Returns its local id."""
        if source not in PING_SOURCES:
            raise ValueError(f"Unknown ping source: {source}")
        with self.db.get_connection() as conn:
            cursor = conn.execute(f"""
                INSERT INTO location_pings
                    (shift_id, ride_id, ts, lat, lng, speed_mps,
                     heading_deg, accuracy_m, source, synced)
                VALUES ({_RESOLVED_ID}, {_RESOLVED_ID}, ?, ?, ?, ?, ?, ?, ?, 0)
            """, (
                shift_id, shift_id, ride_id, ride_id, ts or now_iso(), lat, lng,
                speed, heading, accuracy, source,
            ))
            return cursor.lastrowid

    def get_pending_pings(self, limit: int = 100) -> list[LocationPing]:
        """Unsynced pings, oldest first."""
        rows = self.db.execute(
            "SELECT * FROM location_pings WHERE synced = 0 "
            "ORDER BY ts ASC, id ASC LIMIT ?",
            (limit,),
        )
        return [_ping(r) for r in rows]

    def get_pending_ping_batch(
            self, limit: int = 100,
            max_attempts: int = DEFAULT_MAX_UPLOAD_ATTEMPTS) -> list[LocationPing]:
        """Unsynced pings that share one (shift, ride) pair.

        The location endpoint takes a single shift/ride per request, so a
        batch never mixes owners. The pair is picked by fewest failed
        uploads, then age, so one failing pair cannot starve the others.
        Pings at ``max_attempts`` are set aside and never returned; pings
        whose shift or ride the server has not confirmed yet wait for it.
        """
        heads = self.db.execute(f"""
            SELECT shift_id, ride_id FROM location_pings
            WHERE synced = 0 AND upload_attempts < ?
              AND shift_id IN {_CONFIRMED_IDS}
              AND (ride_id IS NULL OR ride_id IN {_CONFIRMED_IDS})
            ORDER BY upload_attempts ASC, ts ASC, id ASC LIMIT 1
        """, (max_attempts,))
        if not heads:
            return []
        head = heads[0]
        rows = self.db.execute("""
            SELECT * FROM location_pings
            WHERE synced = 0 AND upload_attempts < ?
              AND shift_id = ? AND ride_id IS ?
            ORDER BY ts ASC, id ASC LIMIT ?
        """, (max_attempts, head["shift_id"], head["ride_id"], limit))
        return [_ping(r) for r in rows]

    def mark_pings_synced(self, ping_ids: list[int]):
        if not ping_ids:
            return
        placeholders = ",".join("?" for _ in ping_ids)
        self.db.execute_write(
            f"UPDATE location_pings SET synced = 1 WHERE id IN ({placeholders})",
            tuple(ping_ids),
        )

    def mark_pings_failed(self, ping_ids: list[int],
                          set_aside_at: Optional[int] = None):
        """Count one failed upload of ``ping_ids``.

        With ``set_aside_at`` the attempt count jumps to that value, so a
        batch the server rejected outright is not offered again.
        """
        if not ping_ids:
            return
        placeholders = ",".join("?" for _ in ping_ids)
        if set_aside_at is None:
            assignment, params = "upload_attempts = upload_attempts + 1", ()
        else:
            assignment, params = "upload_attempts = MAX(upload_attempts, ?)", (
                set_aside_at,
            )
        self.db.execute_write(
            f"UPDATE location_pings SET {assignment} "
            f"WHERE id IN ({placeholders})",
            (*params, *ping_ids),
        )

    def delete_old_pings(self, days_to_keep: int = 30,
                         max_attempts: int = DEFAULT_MAX_UPLOAD_ATTEMPTS) -> int:
        """Delete synced or set-aside pings older than the retention window."""
        return self.db.execute_write(
            "DELETE FROM location_pings "
            "WHERE (synced = 1 OR upload_attempts >= ?) AND ts < ?",
            (max_attempts, days_ago_iso(days_to_keep)),
        )

    def get_pings_for_shift(self, shift_id: str) -> list[LocationPing]:
        rows = self.db.execute(
            "SELECT * FROM location_pings WHERE shift_id = ? ORDER BY ts ASC",
            (shift_id,),
        )
        return [_ping(r) for r in rows]

    def get_pings_for_ride(self, ride_id: str) -> list[LocationPing]:
        rows = self.db.execute(
            "SELECT * FROM location_pings WHERE ride_id = ? ORDER BY ts ASC",
            (ride_id,),
        )
        return [_ping(r) for r in rows]

    # ── Expenses ────────────────────────────────────────────────

    def create_expense(self, category: str, amount_cents: int,
                       note: str = None, ts: str = None,
                       receipt_base64: str = None,
                       receipt_mime: str = None) -> Expense:
        """Insert an expense with a local id."""
        if amount_cents < 0:
            raise ValueError("Expense amount cannot be negative")
        expense = Expense(
            id=new_local_id(),
            ts=ts or now_iso(),
            category=category,
            amount_cents=amount_cents,
            note=note,
            receipt_base64=receipt_base64,
            receipt_mime=receipt_mime,
        )
        with self.db.get_connection() as conn:
            conn.execute("""
                INSERT INTO expenses
                    (id, ts, category, amount_cents, note,
                     receipt_base64, receipt_mime, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """, (
                expense.id, expense.ts, expense.category,
                expense.amount_cents, expense.note,
                expense.receipt_base64, expense.receipt_mime,
            ))
        return expense

    def get_expense_by_id(self, expense_id: str) -> Optional[Expense]:
        rows = self.db.execute(
            "SELECT * FROM expenses WHERE id = ? LIMIT 1", (expense_id,)
        )
        return _expense(rows[0]) if rows else None

    def list_expenses(self, limit: int = 50) -> list[Expense]:
        rows = self.db.execute(
            "SELECT * FROM expenses ORDER BY ts DESC LIMIT ?", (limit,)
        )
        return [_expense(r) for r in rows]

    def mark_expense_synced(self, local_id: str, server_id: str = None,
                            receipt_url: str = None):
        """Confirm an expense: adopt the server id, keep the receipt URL
        and drop the local receipt binary, in one transaction."""
        target_id = server_id or local_id
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE expenses SET
                    id = ?, synced = 1,
                    receipt_url = COALESCE(?, receipt_url),
                    receipt_base64 = CASE
                        WHEN COALESCE(?, receipt_url) IS NULL
                        THEN receipt_base64 ELSE NULL END
                WHERE id = ?
            """, (target_id, receipt_url, receipt_url, local_id))
            if target_id != local_id:
                self.id_mappings.save(ENTITY_EXPENSE, local_id, target_id, conn=conn)
