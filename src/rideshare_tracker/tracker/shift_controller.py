"""Shift/ride state machine and offline-first orchestration.

Every action writes to the local store and advances the state first, then
hands its server request to a worker thread and returns. Requests go out
one at a time, in the order the actions happened. A failed attempt is
queued in the outbox for the sync engine; local state is never rolled
back. Each request's Confirmed/Queued outcome is reported through
``action_finished``.

    idle -> shift_active -> en_route -> in_ride -> shift_active
         -> shift_ended -> (summary delay) -> idle
"""

import logging
import sqlite3
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional, Union

from PySide6.QtCore import QObject, QThread, QTimer, Signal

from rideshare_tracker.api.client import (
    ApiCall,
    ApiClient,
    ApiError,
    add_tip_call,
    create_expense_call,
    end_ride_call,
    end_shift_call,
    start_ride_call,
    start_shift_call,
)
from rideshare_tracker.config import Config
from rideshare_tracker.database.models import Expense, Ride, Shift, ShiftStats
from rideshare_tracker.database.outbox import Outbox
from rideshare_tracker.database.repository import RecordNotFoundError, Repository
from rideshare_tracker.sync.sync_engine import SyncEngine
from rideshare_tracker.tracker.location_tracker import LocationTracker
from rideshare_tracker.tracker.stats import compute_shift_stats
from rideshare_tracker.utils.constants import (
    ENTITY_RIDE,
    ENTITY_SHIFT,
    META_EXPENSE_CREATE,
    META_RIDE_CREATE,
    META_RIDE_END,
    META_RIDE_TIP,
    META_SHIFT_CREATE,
    META_SHIFT_END,
    RIDE_STATUS_EN_ROUTE,
    SHIFT_STATES,
    TRACKING_MODE_RIDE,
    TRACKING_MODE_WAITING,
    TrackerState,
)

logger = logging.getLogger(__name__)


class TrackerError(Exception):
    """Base exception for illegal tracker actions."""


class InvalidStateError(TrackerError):
    """The action is not allowed in the current state."""


class RideInProgressError(TrackerError):
    """The shift cannot end while a ride is active."""


class NoRideFoundError(TrackerError):
    """A tip was added to a shift without rides."""


@dataclass(frozen=True)
class Confirmed:
    """The server accepted the action; ``entity_id`` is the current id."""

    entity_id: str


@dataclass(frozen=True)
class Queued:
    """The action was queued as outbox entry ``entry_id``."""

    entry_id: int


Outcome = Union[Confirmed, Queued]


@dataclass
class ServerRequest:
    """The server side of one action.

    ``build`` runs on the worker right before sending and returns the call
    and its outbox meta, so ids remapped in the meantime are picked up.
    ``confirm`` runs back on the controller's thread after a success.
    """

    action: str
    build: Callable[[], tuple[ApiCall, dict]]
    confirm: Callable[[dict, dict], Outcome]
    prepare: Optional[Callable[[], None]] = None  # runs on the worker first
    finish: Optional[Callable[[], None]] = None  # runs after confirm/enqueue


class RequestWorker(QThread):
    """Sends one ServerRequest off the UI thread."""

    request_done = Signal(object, object, object, str)  # call, meta, response, error
    error = Signal(str)

    def __init__(self, client: ApiClient, request: ServerRequest):
        super().__init__()
        self.client = client
        self.request = request

    def run(self):
        try:
            if self.request.prepare is not None:
                self.request.prepare()
            call, meta = self.request.build()
        except Exception as e:
            self.error.emit(str(e))
            return
        try:
            response = self.client.send(call)
        except ApiError as e:
            self.request_done.emit(call, meta, None, str(e))
        except Exception as e:
            self.error.emit(str(e))
        else:
            self.request_done.emit(call, meta, response, "")


class ShiftController(QObject):
    """Owns the tracker state and drives store, outbox, sync and GPS."""

    state_changed = Signal(str)
    error_changed = Signal(str)
    action_finished = Signal(str, object)  # action name, Outcome or None

    def __init__(self, repo: Repository, outbox: Outbox,
                 client: ApiClient = None, sync_engine: SyncEngine = None,
                 location_tracker: LocationTracker = None, parent=None):
        super().__init__(parent)
        self.repo = repo
        self.outbox = outbox
        self.client = client or ApiClient()
        self.sync_engine = sync_engine or SyncEngine(
            repo, outbox, self.client, parent=self
        )
        self.location_tracker = location_tracker or LocationTracker(repo)

        self._state = TrackerState.IDLE
        self.active_shift: Optional[Shift] = None
        self.active_ride: Optional[Ride] = None
        self.error: Optional[str] = None
        self.last_outcome: Optional[Outcome] = None

        self._requests: deque[ServerRequest] = deque()
        self._current: Optional[ServerRequest] = None
        self._worker: Optional[RequestWorker] = None

        self._summary_timer = QTimer(self)
        self._summary_timer.setSingleShot(True)
        self._summary_timer.timeout.connect(self._return_to_idle)

    # ── Observable state ────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def stats(self) -> ShiftStats:
        return compute_shift_stats(self.active_shift)

    @property
    def is_loading(self) -> bool:
        """True while server requests are in flight or waiting to go."""
        return self._current is not None or bool(self._requests)

    def clear_error(self):
        self._set_error(None)

    def _set_state(self, state: str):
        if state == self._state:
            return
        logger.debug("Tracker state %s -> %s", self._state, state)
        self._state = state
        self.state_changed.emit(state)

    def _set_error(self, message: Optional[str]):
        self.error = message
        self.error_changed.emit(message or "")

    @contextmanager
    def _action(self, failure_message: str):
        """Record a failure of the local part of an action in the error slot."""
        self.clear_error()
        try:
            yield
        except (TrackerError, ValueError, RecordNotFoundError,
                sqlite3.Error) as e:
            self._set_error(str(e) or failure_message)
            raise

    def _refresh(self):
        """Reload the in-memory shift and ride under their current ids.

        The sync engine may have swapped local ids for server ids since
        they were loaded.
        """
        mappings = self.repo.id_mappings
        if self.active_shift is not None:
            shift_id = mappings.resolve_or_self(self.active_shift.id)
            self.active_shift = (
                self.repo.get_shift_by_id(shift_id) or self.active_shift
            )
        if self.active_ride is not None:
            ride_id = mappings.resolve_or_self(self.active_ride.id)
            self.active_ride = self.repo.get_ride_by_id(ride_id) or self.active_ride

    # ── Server requests ─────────────────────────────────────────

    def _submit(self, request: ServerRequest):
        self._requests.append(request)
        self._start_next()

    def _start_next(self):
        if self._current is not None or not self._requests:
            return
        request = self._requests.popleft()
        worker = RequestWorker(self.client, request)
        worker.request_done.connect(self._on_request_done)
        worker.error.connect(self._on_request_error)
        self._current = request
        self._worker = worker
        worker.start()

    def _take_current(self) -> ServerRequest:
        request, self._current = self._current, None
        # The worker emits as its last step; let run() return
        self._worker.wait()
        return request

    def _on_request_done(self, call: ApiCall, meta: dict,
                         response: Optional[dict], error: str):
        """Confirm the action, or queue its request on any API error."""
        request = self._take_current()
        try:
            if error:
                entry_id = self.outbox.enqueue(
                    call.method, call.path, call.body, meta
                )
                logger.warning(
                    "%s %s failed, queued as entry %s: %s",
                    call.method, call.path, entry_id, error,
                )
                outcome = Queued(entry_id)
            else:
                outcome = request.confirm(response, meta)
        except (RecordNotFoundError, sqlite3.Error) as e:
            logger.error("Could not record result of %s: %s", request.action, e)
            self._set_error(f"Failed to save {request.action} result")
            outcome = None
        self._complete(request, outcome)

    def _on_request_error(self, message: str):
        request = self._take_current()
        logger.error("%s request failed: %s", request.action, message)
        self._set_error(f"Failed to send {request.action}")
        self._complete(request, None)

    def _complete(self, request: ServerRequest, outcome: Optional[Outcome]):
        if request.finish is not None:
            request.finish()
        if isinstance(outcome, Queued):
            self._kick_sync()
        self.last_outcome = outcome
        self.action_finished.emit(request.action, outcome)
        self._start_next()

    def _kick_sync(self):
        if self.sync_engine.is_running:
            self.sync_engine.trigger_sync()

    def wait_for_worker(self, timeout_ms: int = 30000) -> bool:
        """Block until the request in flight is sent. True if none is left."""
        if self._worker is None:
            return True
        return self._worker.wait(timeout_ms)

    def _current_id(self, some_id: Optional[str]) -> Optional[str]:
        return self.repo.id_mappings.resolve_or_self(some_id)

    # ── Confirm steps ───────────────────────────────────────────

    def _confirm_shift_create(self, response: dict, meta: dict) -> Outcome:
        local_id = meta["localId"]
        server_id = response.get("id")
        if not server_id:
            logger.warning("Server accepted shift %s without an id", local_id)
            return Confirmed(local_id)
        self.repo.replace_id(ENTITY_SHIFT, local_id, server_id)
        self.repo.mark_shift_synced(server_id)
        self._refresh()
        logger.info("Shift started on server: %s", server_id)
        return Confirmed(server_id)

    def _confirm_ride_create(self, response: dict, meta: dict) -> Outcome:
        local_id = meta["localId"]
        server_id = response.get("id")
        if not server_id:
            logger.warning("Server accepted ride %s without an id", local_id)
            return Confirmed(local_id)
        self.repo.replace_id(ENTITY_RIDE, local_id, server_id)
        self.repo.mark_ride_synced(server_id)
        self._refresh()
        return Confirmed(server_id)

    def _confirm_ride_change(self, response: dict, meta: dict) -> Outcome:
        self.repo.mark_ride_synced(meta["rideId"])
        self.repo.mark_shift_synced(meta["shiftId"])
        self._refresh()
        return Confirmed(meta["rideId"])

    def _confirm_shift_end(self, response: dict, meta: dict) -> Outcome:
        self.repo.mark_shift_synced(meta["shiftId"])
        self._refresh()
        return Confirmed(meta["shiftId"])

    def _confirm_expense(self, response: dict, meta: dict) -> Outcome:
        local_id = meta["localId"]
        server_id = response.get("id")
        if not server_id:
            logger.warning("Server accepted expense %s without an id", local_id)
            return Confirmed(local_id)
        self.repo.mark_expense_synced(
            local_id, server_id, response.get("receipt_url")
        )
        return Confirmed(server_id)

    # ── Actions ─────────────────────────────────────────────────

    def start_shift(self):
        with self._action("Failed to start shift"):
            if self._state != TrackerState.IDLE:
                raise InvalidStateError(
                    "Cannot start shift: already in an active shift"
                )
            shift = self.repo.create_shift()
            self.active_shift = shift
            self.active_ride = None
            self._set_state(TrackerState.SHIFT_ACTIVE)
            self.location_tracker.start(shift.id, mode=TRACKING_MODE_WAITING)
            self.sync_engine.start()

        self._submit(ServerRequest(
            "start_shift",
            build=lambda: (
                start_shift_call(),
                {"type": META_SHIFT_CREATE, "localId": shift.id},
            ),
            confirm=self._confirm_shift_create,
        ))

    def start_ride(self, pickup_lat: float = None, pickup_lng: float = None):
        with self._action("Failed to start ride"):
            self._refresh()
            if self.active_shift is None:
                raise InvalidStateError("Cannot start ride: no active shift")
            if self._state != TrackerState.SHIFT_ACTIVE:
                raise InvalidStateError(
                    f"Cannot start ride while {self._state}"
                )
            ride = self.repo.create_ride(
                self.active_shift.id, pickup_lat, pickup_lng
            )
            self.active_ride = ride
            self._set_state(TrackerState.EN_ROUTE)
            self.location_tracker.set_mode(TRACKING_MODE_RIDE, ride.id)

        def build():
            shift_id = self._current_id(ride.shift_id)
            return (
                start_ride_call(shift_id, pickup_lat, pickup_lng),
                {"type": META_RIDE_CREATE, "localId": ride.id,
                 "shiftId": shift_id},
            )

        self._submit(ServerRequest(
            "start_ride", build=build, confirm=self._confirm_ride_create,
        ))

    def mark_pickup(self) -> None:
        """Rider is on board. Local only; the server learns of it at ride end."""
        with self._action("Failed to mark pickup"):
            self._refresh()
            if self.active_ride is None or self._state != TrackerState.EN_ROUTE:
                raise InvalidStateError(
                    "Cannot mark pickup: no active ride en route"
                )
            self.active_ride = self.repo.mark_rider_picked_up(self.active_ride.id)
            self._set_state(TrackerState.IN_RIDE)

    def end_ride(self, gross_cents: int, dropoff_lat: float = None,
                 dropoff_lng: float = None, distance_miles: float = None):
        with self._action("Failed to end ride"):
            self._refresh()
            if self.active_ride is None or self.active_shift is None:
                raise InvalidStateError("Cannot end ride: no active ride")
            if self._state != TrackerState.IN_RIDE:
                raise InvalidStateError(f"Cannot end ride while {self._state}")
            if gross_cents < 0:
                raise ValueError("Fare cannot be negative")

            ride_id = self.active_ride.id
            shift_id = self.active_shift.id
            self.repo.end_ride(
                ride_id, gross_cents, dropoff_lat, dropoff_lng, distance_miles
            )
            self.repo.add_shift_totals(
                shift_id, earnings_cents=gross_cents, ride_count=1,
                distance_miles=distance_miles or 0,
            )
            self.active_ride = None
            self._refresh()
            self._set_state(TrackerState.SHIFT_ACTIVE)
            self.location_tracker.set_mode(TRACKING_MODE_WAITING)

        def build():
            current_ride = self._current_id(ride_id)
            return (
                end_ride_call(current_ride, gross_cents, dropoff_lat,
                              dropoff_lng, distance_miles),
                {"type": META_RIDE_END, "rideId": current_ride,
                 "shiftId": self._current_id(shift_id)},
            )

        self._submit(ServerRequest(
            "end_ride", build=build, confirm=self._confirm_ride_change,
        ))

    def add_tip(self, tip_cents: int):
        """Add a tip to the most recently created ride of the shift."""
        with self._action("Failed to add tip"):
            self._refresh()
            if self.active_shift is None or self._state not in SHIFT_STATES:
                raise InvalidStateError("Cannot add tip: no active shift")
            if tip_cents < 0:
                raise ValueError("Tip cannot be negative")

            shift_id = self.active_shift.id
            ride = self.repo.get_last_ride_for_shift(shift_id)
            if ride is None:
                raise NoRideFoundError("No rides found for this shift")

            self.repo.add_tip_to_ride(ride.id, tip_cents)
            self.repo.add_shift_totals(shift_id, tips_cents=tip_cents)
            self._refresh()

        def build():
            current_ride = self._current_id(ride.id)
            return (
                add_tip_call(current_ride, tip_cents),
                {"type": META_RIDE_TIP, "rideId": current_ride,
                 "shiftId": self._current_id(shift_id)},
            )

        self._submit(ServerRequest(
            "add_tip", build=build, confirm=self._confirm_ride_change,
        ))

    def end_shift(self):
        """End the shift, flush pending work and show the summary.

        The flush and the end request run on the worker. The state returns
        to idle Config.SHIFT_SUMMARY_DELAY_MS after they finish.
        """
        with self._action("Failed to end shift"):
            self._refresh()
            if self.active_shift is None or self._state in (
                TrackerState.IDLE, TrackerState.SHIFT_ENDED,
            ):
                raise InvalidStateError("No active shift to end")
            if self.active_ride is not None or self._state in (
                TrackerState.EN_ROUTE, TrackerState.IN_RIDE,
            ):
                raise RideInProgressError("Cannot end shift: ride in progress")

            self.active_shift = self.repo.end_shift(self.active_shift.id)
            self._set_state(TrackerState.SHIFT_ENDED)
            self.location_tracker.stop()

        shift_id = self.active_shift.id

        def build():
            current = self._current_id(shift_id)
            return (
                end_shift_call(current),
                {"type": META_SHIFT_END, "shiftId": current},
            )

        self._submit(ServerRequest(
            "end_shift", build=build, confirm=self._confirm_shift_end,
            prepare=self._flush_before_close, finish=self._after_shift_end,
        ))

    def _flush_before_close(self):
        # Queued ride changes and every ping must reach the server before
        # it closes the shift
        self.sync_engine.perform_sync_cycle(wait=True, flush=True)

    def _after_shift_end(self):
        self.sync_engine.stop()
        self._summary_timer.start(Config.SHIFT_SUMMARY_DELAY_MS)

    def create_expense(self, category: str, amount_cents: int,
                       note: str = None, ts: str = None,
                       receipt_base64: str = None,
                       receipt_mime: str = None):
        """Record an expense. Allowed in any state."""
        with self._action("Failed to save expense"):
            expense: Expense = self.repo.create_expense(
                category, amount_cents, note=note, ts=ts,
                receipt_base64=receipt_base64, receipt_mime=receipt_mime,
            )

        self._submit(ServerRequest(
            "create_expense",
            build=lambda: (
                create_expense_call(expense.to_payload()),
                {"type": META_EXPENSE_CREATE, "localId": expense.id},
            ),
            confirm=self._confirm_expense,
        ))

    def _return_to_idle(self):
        if self._state != TrackerState.SHIFT_ENDED:
            return
        self.active_shift = None
        self.active_ride = None
        self._set_state(TrackerState.IDLE)

    # ── Startup ─────────────────────────────────────────────────

    def restore(self) -> str:
        """Rebuild the state from the local store after a restart.

        Resumes tracking and syncing when a shift is still open. When idle
        with queued requests left over, runs one sync so they drain.
        """
        try:
            shift = self.repo.get_active_shift()
            ride = self.repo.get_active_ride(shift.id) if shift else None
        except sqlite3.Error as e:
            logger.error("Failed to restore active shift: %s", e)
            self._set_error("Failed to restore the active shift")
            self._set_state(TrackerState.IDLE)
            return self._state

        self.active_shift = shift
        self.active_ride = ride
        if shift is None:
            self._set_state(TrackerState.IDLE)
            if self.outbox.count():
                self.sync_engine.trigger_sync()
            return self._state

        if ride is None:
            self._set_state(TrackerState.SHIFT_ACTIVE)
            self.location_tracker.start(shift.id, mode=TRACKING_MODE_WAITING)
        else:
            self._set_state(
                TrackerState.EN_ROUTE if ride.status == RIDE_STATUS_EN_ROUTE
                else TrackerState.IN_RIDE
            )
            self.location_tracker.start(shift.id, ride.id, TRACKING_MODE_RIDE)
        self.sync_engine.start()
        logger.info("Restored %s for shift %s", self._state, shift.id)
        return self._state
