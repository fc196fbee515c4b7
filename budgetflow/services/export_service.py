"""
Budget totals export (CSV / XLSX).
"""

import csv
import io
from datetime import datetime, timezone

from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)

TOTALS_COLUMNS = [
    ("budget_id", "Budget"),
    ("period", "Period"),
    ("title", "Title"),
    ("request_type", "Request type"),
    ("budget_status", "Status"),
    ("items_counted", "Items"),
    ("total", "Total"),
]


def totals_csv(rows: list[dict]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([label for _, label in TOTALS_COLUMNS])
    for row in rows:
        writer.writerow([row.get(key) for key, _ in TOTALS_COLUMNS])
    return output.getvalue()


def totals_xlsx(school_name: str, rows: list[dict]) -> io.BytesIO:
    """
    Styled workbook with one row per budget and a grand total.
    Returns a BytesIO buffer ready for Flask send_file.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Budget Totals"

    ws["A1"] = f"Budget totals: {school_name}"
    ws["A1"].font = Font(size=14, bold=True)
    ws["A2"] = f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}"
    ws["A2"].font = Font(size=10, italic=True, color="666666")

    header_row = 4
    for col, (_, label) in enumerate(TOTALS_COLUMNS, 1):
        cell = ws.cell(row=header_row, column=col, value=label)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER

    r = header_row
    for r, row in enumerate(rows, header_row + 1):
        for col, (key, _) in enumerate(TOTALS_COLUMNS, 1):
            cell = ws.cell(row=r, column=col, value=row.get(key))
            cell.border = THIN_BORDER
            if key == "total":
                cell.number_format = "#,##0.00"

    total_row = r + 1
    ws.cell(row=total_row, column=len(TOTALS_COLUMNS) - 1, value="Grand total").font = Font(bold=True)
    grand = ws.cell(row=total_row, column=len(TOTALS_COLUMNS),
                    value=round(sum(float(x.get("total") or 0) for x in rows), 2))
    grand.font = Font(bold=True)
    grand.number_format = "#,##0.00"

    widths = [10, 10, 36, 14, 24, 8, 16]
    for i, width in enumerate(widths, 1):
        ws.column_dimensions[get_column_letter(i)].width = width

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf
