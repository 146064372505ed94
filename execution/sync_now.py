"""Run one sync cycle from the command line and print what it did."""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rideshare_tracker.config import Config
from rideshare_tracker.database.connection import DatabaseConnection
from rideshare_tracker.database.outbox import Outbox
from rideshare_tracker.database.repository import Repository
from rideshare_tracker.database.schema import initialize_database
from rideshare_tracker.sync.sync_engine import SyncEngine


def main():
    logging.basicConfig(level=Config.LOG_LEVEL.upper())

    db = DatabaseConnection(Config.DATABASE_PATH)
    initialize_database(db)
    repo = Repository(db)
    outbox = Outbox(db)

    print(f"Pending requests: {outbox.count()}")
    engine = SyncEngine(repo, outbox)
    report = engine.perform_sync_cycle(wait=True, flush=True)

    print(f"Sent: {report.succeeded}  Failed: {report.failed}  "
          f"Already confirmed: {report.skipped}")
    print(f"Pings uploaded: {report.pings_uploaded}  "
          f"Set aside: {report.pings_rejected}")
    if report.purged:
        print(f"Dropped after {Config.MAX_RETRIES} retries: {report.purged}")
    if report.error:
        print(f"Error: {report.error}")
    print(f"Still pending: {outbox.count()}")
    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
