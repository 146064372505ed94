"""Location tracking: saves provider fixes as pings for the current shift/ride.

The tracker does not talk to hardware itself. A location provider (GPS
plugin, Qt positioning source, a test double) is configured with the
settings for the current mode and calls :meth:`LocationTracker.handle_fix`
with each fix.
"""

import logging
import sqlite3
from typing import Callable, Optional, Protocol

from rideshare_tracker.database.repository import Repository
from rideshare_tracker.utils.constants import (
    PING_SOURCES,
    TRACKING_CONFIG,
    TRACKING_MODE_WAITING,
)

logger = logging.getLogger(__name__)


class LocationError(Exception):
    """Raised for invalid tracking requests."""


class LocationProvider(Protocol):
    def configure(self, settings: dict) -> None: ...

    def start(self, callback: Callable[[dict], None]) -> None: ...

    def stop(self) -> None: ...


class LocationTracker:
    """Tracks one shift (and optionally one ride) at a time.

    ``waiting`` mode polls coarsely between rides; ``ride`` mode polls
    at high accuracy while a passenger is on board.
    """

    def __init__(self, repo: Repository,
                 provider: Optional[LocationProvider] = None,
                 default_source: str = "gps"):
        if default_source not in PING_SOURCES:
            raise LocationError(f"Unknown ping source: {default_source}")
        self.repo = repo
        self.provider = provider
        self.default_source = default_source
        self.shift_id: Optional[str] = None
        self.ride_id: Optional[str] = None
        self.mode = TRACKING_MODE_WAITING
        self.running = False

    @staticmethod
    def config_for(mode: str) -> dict:
        """Provider settings for a tracking mode."""
        if mode not in TRACKING_CONFIG:
            raise LocationError(f"Unknown tracking mode: {mode}")
        return dict(TRACKING_CONFIG[mode])

    def start(self, shift_id: str, ride_id: str = None,
              mode: str = TRACKING_MODE_WAITING):
        """Begin (or retarget) tracking for a shift."""
        settings = self.config_for(mode)
        self.shift_id = shift_id
        self.ride_id = ride_id
        self.mode = mode
        if self.provider is not None:
            self.provider.configure(settings)
            if not self.running:
                self.provider.start(self.handle_fix)
        self.running = True
        logger.info("Location tracking started (%s mode)", mode)

    def set_mode(self, mode: str, ride_id: str = None):
        """Switch between waiting and ride tracking. Ignored when stopped."""
        if not self.running:
            return
        settings = self.config_for(mode)
        self.mode = mode
        self.ride_id = ride_id
        if self.provider is not None:
            self.provider.configure(settings)
        logger.debug("Location tracking switched to %s mode", mode)

    def stop(self):
        if not self.running:
            return
        if self.provider is not None:
            self.provider.stop()
        self.shift_id = None
        self.ride_id = None
        self.running = False
        logger.info("Location tracking stopped")

    def handle_fix(self, fix: dict) -> Optional[int]:
        """Save one fix as a ping. Returns the ping id, or None if dropped.

        ``fix`` carries lat, lng, accuracy and optionally speed, bearing,
        source and ts. The shift and ride ids are resolved first, since
        the sync engine may have swapped them for server ids since
        tracking started.
        """
        if not self.running or not self.shift_id:
            return None
        mappings = self.repo.id_mappings
        shift_id = mappings.resolve_or_self(self.shift_id)
        ride_id = mappings.resolve_or_self(self.ride_id)
        try:
            return self.repo.save_ping(
                shift_id,
                fix["lat"],
                fix["lng"],
                fix.get("accuracy") or 0.0,
                source=fix.get("source") or self.default_source,
                ride_id=ride_id,
                speed=fix.get("speed"),
                heading=fix.get("bearing"),
                ts=fix.get("ts"),
            )
        except (KeyError, ValueError, sqlite3.Error) as e:
            logger.warning("Failed to save location ping: %s", e)
            return None

