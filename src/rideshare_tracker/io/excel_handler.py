"""Excel (XLSX) export of shift, ride and expense history."""

from pathlib import Path

from openpyxl import Workbook

from rideshare_tracker.database.repository import Repository
from rideshare_tracker.tracker.stats import compute_shift_stats

SHIFT_HEADERS = [
    "Shift ID", "Started", "Ended", "Rides", "Earnings", "Tips",
    "Distance (mi)", "Hours", "$/hr", "Synced",
]
RIDE_HEADERS = [
    "Ride ID", "Shift ID", "Status", "Started", "Pickup", "Dropoff",
    "Fare", "Tip", "Distance (mi)", "Synced",
]
EXPENSE_HEADERS = [
    "Expense ID", "Date", "Category", "Amount", "Note", "Receipt", "Synced",
]


def _dollars(cents: int) -> float:
    return round((cents or 0) / 100.0, 2)


def _autofit(ws):
    """Approximate column widths from cell contents."""
    for col in ws.columns:
        max_len = max(len(str(cell.value or "")) for cell in col)
        ws.column_dimensions[col[0].column_letter].width = min(max_len + 2, 40)


def export_shift_history_excel(repo: Repository, filepath: str | Path) -> int:
    """Export every shift with its rides, plus expenses. Returns shift count."""
    shifts = repo.get_all_shifts()
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    ws = wb.active
    ws.title = "Shifts"
    ws.append(SHIFT_HEADERS)

    rides_ws = wb.create_sheet("Rides")
    rides_ws.append(RIDE_HEADERS)

    for shift in shifts:
        stats = compute_shift_stats(shift)
        ws.append([
            shift.id,
            shift.started_at,
            shift.ended_at or "",
            shift.ride_count,
            _dollars(shift.earnings_cents),
            _dollars(shift.tips_cents),
            round(shift.distance_miles, 1),
            round(stats.duration / 3600.0, 2),
            round(stats.rate_per_hour, 2),
            "Yes" if shift.synced else "No",
        ])
        for ride in repo.get_rides_for_shift(shift.id):
            rides_ws.append([
                ride.id,
                ride.shift_id,
                ride.status,
                ride.started_at,
                ride.pickup_at or "",
                ride.dropoff_at or "",
                _dollars(ride.gross_cents),
                _dollars(ride.tip_cents),
                round(ride.distance_miles, 1),
                "Yes" if ride.synced else "No",
            ])

    expenses_ws = wb.create_sheet("Expenses")
    expenses_ws.append(EXPENSE_HEADERS)
    for expense in repo.list_expenses(limit=-1):
        expenses_ws.append([
            expense.id,
            expense.ts,
            expense.category,
            _dollars(expense.amount_cents),
            expense.note or "",
            expense.receipt_url or ("pending upload" if expense.has_receipt else ""),
            "Yes" if expense.synced else "No",
        ])

    for sheet in (ws, rides_ws, expenses_ws):
        _autofit(sheet)

    wb.save(filepath)
    return len(shifts)
