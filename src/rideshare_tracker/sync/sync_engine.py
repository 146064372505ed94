"""SyncEngine: drains the outbox and uploads location pings.

Each cycle:
1. Replays pending outbox entries (fewest failures first), rewriting any
   local ids that have since been mapped to server ids.
2. Uploads one batch of pending location pings for a single shift/ride
   (every batch when flushing before a shift closes). A batch the server
   rejects with a 4xx is set aside so it cannot hold up later ones.
3. Drops entries that have exhausted their retries and old synced pings.

Cycles run on a worker thread, scheduled by a QTimer and by the
application returning to the foreground. A lock keeps two cycles from
replaying the same entry at once.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from PySide6.QtCore import QCoreApplication, QObject, Qt, QThread, QTimer, Signal
from PySide6.QtGui import QGuiApplication

from rideshare_tracker.api.client import (
    ApiClient,
    ApiClientError,
    ApiConfigurationError,
    ApiConnectionError,
    ApiError,
)
from rideshare_tracker.config import Config
from rideshare_tracker.database.models import PendingRequest
from rideshare_tracker.database.outbox import Outbox
from rideshare_tracker.database.repository import Repository
from rideshare_tracker.utils.constants import (
    BODY_ID_FIELDS,
    CREATE_META_ENTITIES,
    ENTITY_RIDE,
    ENTITY_SHIFT,
    META_EXPENSE_CREATE,
    META_ID_SLOTS,
    META_RIDE_CREATE,
    META_RIDE_END,
    META_RIDE_TIP,
    META_SHIFT_CREATE,
    META_SHIFT_END,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """What a single sync cycle did."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0  # create entries already confirmed by an earlier cycle
    pings_uploaded: int = 0
    pings_rejected: int = 0
    purged: int = 0
    pings_purged: int = 0
    connection_errors: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and self.connection_errors == 0


# ── Identifier rewriting ────────────────────────────────────────

def _rewrite_url(url: str, mappings: dict[str, str]) -> str:
    parts = urlsplit(url)
    segments = parts.path.split("/")
    rewritten = [mappings.get(seg, seg) for seg in segments]
    if rewritten == segments:
        return url
    return urlunsplit(parts._replace(path="/".join(rewritten)))


def _rewrite_body(body: str, mappings: dict[str, str]) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body
    if not isinstance(data, dict):
        return body
    changed = False
    for name in BODY_ID_FIELDS:
        value = data.get(name)
        if isinstance(value, str) and value in mappings:
            data[name] = mappings[value]
            changed = True
    return json.dumps(data) if changed else body


def rewrite_entry(entry: PendingRequest,
                  mappings: dict[str, str]) -> tuple[str, str, Optional[str]]:
    """Return (url, body, meta) with mapped local ids replaced.

    Only URL path segments, the ``shift_id``/``ride_id`` body fields and
    the meta id slots are touched. Unchanged parts come back as the very
    same strings, so a second pass over a rewritten entry is a no-op.
    """
    if not mappings:
        return entry.url, entry.body, entry.meta

    url = _rewrite_url(entry.url, mappings)
    body = _rewrite_body(entry.body, mappings)

    meta_text = entry.meta
    meta = entry.meta_dict
    if meta is not None:
        changed = False
        for slot in META_ID_SLOTS:
            value = meta.get(slot)
            if isinstance(value, str) and value in mappings:
                meta[slot] = mappings[value]
                changed = True
        if changed:
            meta_text = json.dumps(meta)
    return url, body, meta_text


class SyncWorker(QThread):
    """Runs one sync cycle off the UI thread."""

    cycle_done = Signal(object)  # SyncReport or None
    error = Signal(str)

    def __init__(self, engine: "SyncEngine"):
        super().__init__()
        self.engine = engine

    def run(self):
        try:
            self.cycle_done.emit(self.engine.perform_sync_cycle())
        except Exception as e:
            self.error.emit(str(e))


class SyncEngine(QObject):
    """Owns the outbox drain, the ping upload and their schedule."""

    sync_finished = Signal(object)  # SyncReport

    def __init__(self, repo: Repository, outbox: Outbox,
                 client: ApiClient = None, parent=None):
        super().__init__(parent)
        self.repo = repo
        self.outbox = outbox
        self.id_mappings = repo.id_mappings
        self.client = client or ApiClient()
        self.is_online = True
        self.last_report: Optional[SyncReport] = None
        self._lock = threading.Lock()
        self._timer: Optional[QTimer] = None
        self._worker: Optional[SyncWorker] = None
        self._app: Optional[QGuiApplication] = None

    # ── Lifecycle ───────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._timer is not None and self._timer.isActive()

    def start(self):
        """Start periodic syncing and run a cycle now. Idempotent."""
        if self.is_running:
            return
        if self._timer is None:
            self._timer = QTimer(self)
            self._timer.timeout.connect(self.trigger_sync)
        self._timer.start(max(Config.SYNC_INTERVAL_SECONDS, 1) * 1000)
        self._connect_foreground_listener()
        logger.info(
            "Sync engine started (every %ss)", Config.SYNC_INTERVAL_SECONDS
        )
        self.trigger_sync()

    def stop(self):
        """Stop the timer and the foreground listener.

        A cycle already running on the worker thread is left to finish.
        """
        if self._timer is not None:
            self._timer.stop()
        self._disconnect_foreground_listener()
        logger.info("Sync engine stopped")

    def trigger_sync(self):
        """Run a cycle on a worker thread unless one is in flight."""
        if self._worker is not None and self._worker.isRunning():
            return
        worker = SyncWorker(self)
        worker.cycle_done.connect(self._on_cycle_done)
        worker.error.connect(self._on_worker_error)
        self._worker = worker
        worker.start()

    def wait_for_worker(self, timeout_ms: int = 30000) -> bool:
        """Block until the current worker finishes. True if none is left."""
        if self._worker is None:
            return True
        return self._worker.wait(timeout_ms)

    def _on_cycle_done(self, report):
        if report is not None:
            self.sync_finished.emit(report)

    def _on_worker_error(self, message: str):
        self.is_online = False
        logger.error("Sync worker failed: %s", message)

    def _connect_foreground_listener(self):
        app = QCoreApplication.instance()
        if self._app is not None or not isinstance(app, QGuiApplication):
            return
        app.applicationStateChanged.connect(self._on_application_state_changed)
        self._app = app

    def _disconnect_foreground_listener(self):
        if self._app is None:
            return
        try:
            self._app.applicationStateChanged.disconnect(
                self._on_application_state_changed
            )
        except (RuntimeError, TypeError):
            logger.debug("Foreground listener already disconnected")
        self._app = None

    def _on_application_state_changed(self, state):
        if state == Qt.ApplicationState.ApplicationActive:
            logger.debug("Application returned to foreground; syncing")
            self.trigger_sync()

    # ── Sync cycle ──────────────────────────────────────────────

    def perform_sync_cycle(self, wait: bool = False,
                           flush: bool = False) -> Optional[SyncReport]:
        """Drain the outbox, upload pings and purge.

        Returns None without doing anything when another cycle holds the
        lock, unless ``wait`` is set, in which case it waits its turn.
        ``flush`` uploads ping batches until none are left or one fails,
        instead of a single batch.
        """
        if not self._lock.acquire(blocking=wait):
            logger.debug("Sync cycle already in progress; skipping")
            return None
        try:
            report = SyncReport()
            try:
                self._replay_pending_requests(report)
                self._upload_pending_pings(report, drain=flush)
                self._purge(report)
            except sqlite3.Error as e:
                report.error = str(e)
                logger.error("Sync cycle aborted: %s", e)

            self.is_online = report.ok
            self.last_report = report
            if (report.processed or report.pings_uploaded or report.pings_rejected
                    or report.error):
                logger.info(
                    "Sync cycle: %d sent, %d failed, %d skipped, %d pings, "
                    "%d pings set aside",
                    report.succeeded, report.failed, report.skipped,
                    report.pings_uploaded, report.pings_rejected,
                )
            return report
        finally:
            self._lock.release()

    def _resolve_mappings(self, meta: Optional[dict]) -> dict[str, str]:
        """local id -> server id for every id slot in ``meta`` that maps."""
        mappings = {}
        if not meta:
            return mappings
        for slot in META_ID_SLOTS:
            local_id = meta.get(slot)
            if not isinstance(local_id, str):
                continue
            server_id = self.id_mappings.resolve(local_id)
            if server_id and server_id != local_id:
                mappings[local_id] = server_id
        return mappings

    def _replay_pending_requests(self, report: SyncReport):
        entries = self.outbox.list_pending(Config.SYNC_BATCH_SIZE)
        if not entries:
            return
        try:
            self.client.credentials()
        except ApiConfigurationError as e:
            report.error = str(e)
            logger.warning("Skipping outbox replay: %s", e)
            return

        for entry in entries:
            report.processed += 1
            meta = entry.meta_dict
            mappings = self._resolve_mappings(meta)

            if self._already_confirmed(meta, mappings):
                self.outbox.mark_complete(entry.id)
                report.skipped += 1
                logger.info(
                    "Outbox entry %s already confirmed; dropping", entry.id
                )
                continue

            url, body, meta_text = rewrite_entry(entry, mappings)
            if (url, body, meta_text) != (entry.url, entry.body, entry.meta):
                self.outbox.update(
                    entry.id,
                    url=url if url != entry.url else None,
                    body=body if body != entry.body else None,
                    meta=meta_text if meta_text != entry.meta else None,
                )
                meta = json.loads(meta_text) if meta_text else meta

            try:
                response = self.client.request(entry.method, url, body, retries=1)
            except ApiError as e:
                self.outbox.increment_retry(entry.id)
                report.failed += 1
                if isinstance(e, ApiConnectionError):
                    report.connection_errors += 1
                logger.warning(
                    "Outbox entry %s (%s %s) failed, attempt %d: %s",
                    entry.id, entry.method, url, entry.retry_count + 1, e,
                )
                continue

            self._confirm(meta, response)
            self.outbox.mark_complete(entry.id)
            report.succeeded += 1

    @staticmethod
    def _already_confirmed(meta: Optional[dict], mappings: dict) -> bool:
        if not meta or meta.get("type") not in CREATE_META_ENTITIES:
            return False
        return meta.get("localId") in mappings

    def _confirm(self, meta: Optional[dict], response: dict):
        """Apply the local side effects of a replayed request."""
        if not meta:
            return
        kind = meta.get("type")
        server_id = response.get("id")
        local_id = meta.get("localId")

        if kind in CREATE_META_ENTITIES and local_id and not server_id:
            logger.warning(
                "Server accepted %s %s without returning an id; "
                "leaving it unsynced", kind, local_id,
            )
        elif kind == META_SHIFT_CREATE and local_id:
            self.repo.replace_id(ENTITY_SHIFT, local_id, server_id)
            self.repo.mark_shift_synced(server_id)
        elif kind == META_RIDE_CREATE and local_id:
            self.repo.replace_id(ENTITY_RIDE, local_id, server_id)
            self.repo.mark_ride_synced(server_id)
        elif kind == META_EXPENSE_CREATE and local_id:
            self.repo.mark_expense_synced(
                local_id, server_id, response.get("receipt_url")
            )
        elif kind == META_SHIFT_END and meta.get("shiftId"):
            self.repo.mark_shift_synced(meta["shiftId"])
        elif kind in (META_RIDE_END, META_RIDE_TIP):
            if meta.get("rideId"):
                self.repo.mark_ride_synced(meta["rideId"])
            if meta.get("shiftId"):
                self.repo.mark_shift_synced(meta["shiftId"])

    def _upload_pending_pings(self, report: SyncReport, drain: bool = False):
        """Upload one ping batch, or every batch when ``drain`` is set.

        A 4xx sets the batch aside and moves on to the next one. Other
        failures end the upload for this cycle; a 5xx counts against the
        batch, an unreachable server does not.
        """
        while True:
            pings = self.repo.get_pending_ping_batch(
                Config.PING_BATCH_SIZE, Config.MAX_RETRIES
            )
            if not pings:
                return
            ping_ids = [p.id for p in pings]
            shift_id = self.id_mappings.resolve_or_self(pings[0].shift_id)
            ride_id = self.id_mappings.resolve_or_self(pings[0].ride_id)
            try:
                self.client.upload_location_batch(
                    shift_id, ride_id, [p.to_payload() for p in pings]
                )
            except ApiClientError as e:
                self.repo.mark_pings_failed(ping_ids, set_aside_at=Config.MAX_RETRIES)
                report.pings_rejected += len(pings)
                logger.warning(
                    "Server rejected %d pings for shift %s; set aside: %s",
                    len(pings), shift_id, e,
                )
                continue
            except ApiError as e:
                if isinstance(e, ApiConnectionError):
                    report.connection_errors += 1
                elif not isinstance(e, ApiConfigurationError):
                    self.repo.mark_pings_failed(ping_ids)
                logger.warning(
                    "Location batch of %d pings for shift %s failed: %s",
                    len(pings), shift_id, e,
                )
                return
            self.repo.mark_pings_synced(ping_ids)
            report.pings_uploaded += len(pings)
            if not drain:
                return

    def _purge(self, report: SyncReport):
        report.purged = self.outbox.purge_exhausted(Config.MAX_RETRIES)
        if report.purged:
            logger.warning(
                "Dropped %d outbox entries after %d failed attempts; "
                "those changes will not reach the server",
                report.purged, Config.MAX_RETRIES,
            )
        report.pings_purged = self.repo.delete_old_pings(
            Config.PING_RETENTION_DAYS, Config.MAX_RETRIES
        )
