"""Application entry point: opens the local store, restores the tracker and
runs the Qt event loop that drives background sync."""

import logging
import signal
import sys

from PySide6.QtCore import QTimer
from PySide6.QtGui import QGuiApplication

from rideshare_tracker.config import Config
from rideshare_tracker.database.connection import DatabaseConnection
from rideshare_tracker.database.schema import initialize_database
from rideshare_tracker.utils.constants import APP_NAME, APP_ORGANIZATION

logger = logging.getLogger(__name__)


def _configure_logging(level: str | None = None):
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_controller(db: DatabaseConnection, parent=None):
    """Wire repository, outbox, API client and sync engine into a controller."""
    from rideshare_tracker.api.client import ApiClient
    from rideshare_tracker.database.outbox import Outbox
    from rideshare_tracker.database.repository import Repository
    from rideshare_tracker.tracker.shift_controller import ShiftController

    repo = Repository(db)
    outbox = Outbox(db)
    return ShiftController(repo, outbox, client=ApiClient(), parent=parent)


def main():
    """Launch the Rideshare Tracker background service."""
    _configure_logging()

    # Initialize database
    db = DatabaseConnection(Config.DATABASE_PATH)
    initialize_database(db)

    app = QGuiApplication(sys.argv)
    app.setApplicationName(APP_NAME)
    app.setOrganizationName(APP_ORGANIZATION)

    controller = build_controller(db, parent=app)
    controller.state_changed.connect(
        lambda state: logger.info("Tracker state: %s", state)
    )
    controller.sync_engine.sync_finished.connect(
        lambda report: logger.debug("Sync finished: %s", report)
    )
    state = controller.restore()
    logger.info("%s ready (%s)", APP_NAME, state)

    # Let Ctrl+C reach Python while the Qt loop is running
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    heartbeat = QTimer(app)
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)

    exit_code = app.exec()
    controller.sync_engine.stop()
    controller.wait_for_worker()
    controller.sync_engine.wait_for_worker()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
