"""
Dashboard statistics computed from the attendance ledger.
"""
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Optional, Sequence

from schemas import AttendanceRecord, utcnow


def _local_date(value: datetime, tz: Optional[tzinfo]):
    return value.astimezone(tz).date()


def summarize(
    records: Sequence[AttendanceRecord],
    enrolled_count: int,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    days: int = 7
) -> Dict:
    """
    Headline numbers and weekly activity.

    Dates are bucketed in ``tz`` (server local time when omitted).
    "Present today" counts distinct names, so repeat visits count once.
    """
    now = now or utcnow()
    today = _local_date(now, tz)

    present_today = len({
        r.identity_name for r in records if _local_date(r.timestamp, tz) == today
    })
    absent_today = max(0, enrolled_count - present_today)
    rate = round(present_today / enrolled_count * 100) if enrolled_count > 0 else 0

    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    counts = {day: 0 for day in window}
    for record in records:
        day = _local_date(record.timestamp, tz)
        if day in counts:
            counts[day] += 1

    return {
        "total_enrolled": enrolled_count,
        "total_records": len(records),
        "present_today": present_today,
        "absent_today": absent_today,
        "attendance_rate": rate,
        "weekly_activity": [
            {"date": day.isoformat(), "day": day.strftime("%a"), "count": counts[day]}
            for day in window
        ],
    }
