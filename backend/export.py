"""
Spreadsheet export of the attendance ledger.
"""
import io
from datetime import datetime, tzinfo
from typing import Dict, List, Optional, Sequence

import pandas as pd
from openpyxl.utils import get_column_letter

from schemas import AttendanceRecord, utcnow

EXPORT_COLUMNS = ["ID", "Name", "Date", "Time", "Status"]
COLUMN_WIDTHS = [36, 25, 15, 15, 12]
SHEET_NAME = "Attendance"


def export_rows(records: Sequence[AttendanceRecord], tz: Optional[tzinfo] = None) -> List[Dict]:
    """One row per record, in ledger order."""
    rows = []
    for record in records:
        local = record.timestamp.astimezone(tz)
        rows.append({
            "ID": record.id,
            "Name": record.identity_name,
            "Date": local.strftime("%Y-%m-%d"),
            "Time": local.strftime("%H:%M:%S"),
            "Status": record.status.value,
        })
    return rows


def export_filename(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> str:
    """Report name dated in the same zone as the exported rows."""
    now = (now or utcnow()).astimezone(tz)
    return f"Attendance_Report_{now.date().isoformat()}.xlsx"


def export_to_excel(records: Sequence[AttendanceRecord], tz: Optional[tzinfo] = None) -> bytes:
    """Render the records as an .xlsx workbook and return its bytes."""
    df = pd.DataFrame(export_rows(records, tz), columns=EXPORT_COLUMNS)

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
        worksheet = writer.sheets[SHEET_NAME]
        for index, width in enumerate(COLUMN_WIDTHS, start=1):
            worksheet.column_dimensions[get_column_letter(index)].width = width

    return buffer.getvalue()
