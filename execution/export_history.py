"""Standalone export script: write shift, ride and expense history to XLSX."""

import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rideshare_tracker.config import Config
from rideshare_tracker.database.connection import DatabaseConnection
from rideshare_tracker.database.schema import initialize_database
from rideshare_tracker.database.repository import Repository
from rideshare_tracker.io.excel_handler import export_shift_history_excel


def main():
    if len(sys.argv) > 1:
        filepath = Path(sys.argv[1])
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filepath = Config.EXPORT_PATH / f"shift_history_{stamp}.xlsx"

    db = DatabaseConnection(Config.DATABASE_PATH)
    initialize_database(db)
    repo = Repository(db)

    count = export_shift_history_excel(repo, filepath)
    print(f"Exported {count} shifts to {filepath}")


if __name__ == "__main__":
    main()
