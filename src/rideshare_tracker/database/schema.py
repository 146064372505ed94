"""Database schema definition, initialization, and migrations.

The schema version lives in ``PRAGMA user_version``. Migrations are
forward-only; each one runs inside the connection's transaction and
bumps the version as its last statement.
"""

import logging

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 4

# ── v1: core tables ─────────────────────────────────────────────
# Foreign keys are DEFERRABLE so an id cascade can rewrite children and
# parent within one transaction in any order.
_MIGRATION_V1_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS shifts (
        id TEXT PRIMARY KEY NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        earnings_cents INTEGER NOT NULL DEFAULT 0,
        tips_cents INTEGER NOT NULL DEFAULT 0,
        distance_miles REAL NOT NULL DEFAULT 0.0,
        ride_count INTEGER NOT NULL DEFAULT 0,
        synced INTEGER NOT NULL DEFAULT 0
    )""",

    """CREATE TABLE IF NOT EXISTS rides (
        id TEXT PRIMARY KEY NOT NULL,
        shift_id TEXT NOT NULL,
        status TEXT NOT NULL
            CHECK (status IN ('en_route', 'in_progress', 'completed')),
        started_at TEXT NOT NULL,
        pickup_at TEXT,
        dropoff_at TEXT,
        ended_at TEXT,
        gross_cents INTEGER NOT NULL DEFAULT 0,
        tip_cents INTEGER NOT NULL DEFAULT 0,
        distance_miles REAL NOT NULL DEFAULT 0.0,
        pickup_lat REAL,
        pickup_lng REAL,
        dropoff_lat REAL,
        dropoff_lng REAL,
        synced INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (shift_id) REFERENCES shifts(id)
            ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED
    )""",

    """CREATE TABLE IF NOT EXISTS location_pings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_id TEXT NOT NULL,
        ride_id TEXT,
        ts TEXT NOT NULL,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        speed_mps REAL,
        heading_deg REAL,
        accuracy_m REAL NOT NULL,
        source TEXT NOT NULL CHECK (source IN ('gps', 'network', 'fused')),
        synced INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (shift_id) REFERENCES shifts(id)
            ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
        FOREIGN KEY (ride_id) REFERENCES rides(id)
            ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED
    )""",

    """CREATE TABLE IF NOT EXISTS pending_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        method TEXT NOT NULL CHECK (method IN ('POST', 'PATCH')),
        url TEXT NOT NULL,
        body TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        last_attempt_at TEXT
    )""",

    "CREATE INDEX IF NOT EXISTS idx_shifts_ended ON shifts(ended_at)",
    "CREATE INDEX IF NOT EXISTS idx_rides_shift ON rides(shift_id)",
    "CREATE INDEX IF NOT EXISTS idx_rides_synced ON rides(synced)",
    "CREATE INDEX IF NOT EXISTS idx_location_shift ON location_pings(shift_id)",
    "CREATE INDEX IF NOT EXISTS idx_location_ride ON location_pings(ride_id)",
    "CREATE INDEX IF NOT EXISTS idx_location_synced ON location_pings(synced)",
    "CREATE INDEX IF NOT EXISTS idx_pending_retry "
    "ON pending_requests(retry_count, created_at)",

    "PRAGMA user_version = 1",
]

# ── v2: outbox metadata + id mapping table ──────────────────────
_MIGRATION_V2_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS id_mappings (
        local_id TEXT PRIMARY KEY NOT NULL,
        server_id TEXT NOT NULL,
        entity TEXT NOT NULL
            CHECK (entity IN ('shift', 'ride', 'expense'))
    )""",

    "PRAGMA user_version = 2",
]

# ── v3: expenses ────────────────────────────────────────────────
_MIGRATION_V3_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS expenses (
        id TEXT PRIMARY KEY NOT NULL,
        ts TEXT NOT NULL,
        category TEXT NOT NULL,
        amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
        note TEXT,
        receipt_base64 TEXT,
        receipt_mime TEXT,
        receipt_url TEXT,
        synced INTEGER NOT NULL DEFAULT 0
    )""",

    "CREATE INDEX IF NOT EXISTS idx_expenses_ts ON expenses(ts)",
    "CREATE INDEX IF NOT EXISTS idx_expenses_synced ON expenses(synced)",

    "PRAGMA user_version = 3",
]

# ── v4: ping upload attempts ────────────────────────────────────
# Pings rejected by the server (or failing past MAX_RETRIES) are set aside
# instead of blocking the upload of every later batch.
_MIGRATION_V4_STATEMENTS = [
    "CREATE INDEX IF NOT EXISTS idx_location_attempts "
    "ON location_pings(synced, upload_attempts)",

    "PRAGMA user_version = 4",
]


def _get_schema_version(conn) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def _has_column(conn, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == column for r in rows)


def _migrate_to_v1(conn):
    """Create the core tables."""
    for stmt in _MIGRATION_V1_STATEMENTS:
        conn.execute(stmt)


def _migrate_v1_to_v2(conn):
    """Add pending_requests.meta and the id_mappings table."""
    if not _has_column(conn, "pending_requests", "meta"):
        conn.execute("ALTER TABLE pending_requests ADD COLUMN meta TEXT")
    for stmt in _MIGRATION_V2_STATEMENTS:
        conn.execute(stmt)


def _migrate_v2_to_v3(conn):
    """Add the expenses table."""
    for stmt in _MIGRATION_V3_STATEMENTS:
        conn.execute(stmt)


def _migrate_v3_to_v4(conn):
    """Add location_pings.upload_attempts."""
    if not _has_column(conn, "location_pings", "upload_attempts"):
        conn.execute(
            "ALTER TABLE location_pings "
            "ADD COLUMN upload_attempts INTEGER NOT NULL DEFAULT 0"
        )
    for stmt in _MIGRATION_V4_STATEMENTS:
        conn.execute(stmt)


_MIGRATIONS = [
    (1, _migrate_to_v1),
    (2, _migrate_v1_to_v2),
    (3, _migrate_v2_to_v3),
    (4, _migrate_v3_to_v4),
]


def initialize_database(db_connection):
    """Create or upgrade the local schema to SCHEMA_VERSION.

    Applies every migration newer than the stored user_version, in order.
    A database written by a newer build is left untouched.
    """
    with db_connection.get_connection() as conn:
        version = _get_schema_version(conn)
        if version > SCHEMA_VERSION:
            logger.warning(
                "Database schema v%d is newer than this build (v%d)",
                version, SCHEMA_VERSION,
            )
            return

        for target, migrate in _MIGRATIONS:
            if version < target:
                logger.info("Migrating local database to v%d", target)
                migrate(conn)
