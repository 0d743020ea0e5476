"""
Attendance ingestion: the only writer of the attendance ledger.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from config import ATTENDANCE_WINDOW_MINUTES
from errors import InvalidTimestamp
from schemas import AttendanceRecord, AttendanceStatus, RecordOutcome, utcnow
from store import Store

logger = logging.getLogger("faceguard.attendance")

TimestampLike = Union[datetime, str]


def parse_timestamp(value: TimestampLike) -> datetime:
    """
    Coerce a datetime or ISO-8601 string into an aware UTC datetime.
    Naive values are taken to be UTC.

    Raises:
        InvalidTimestamp: if the value cannot be interpreted as a time.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidTimestamp(f"Unparsable timestamp: {value!r}") from e
    else:
        raise InvalidTimestamp(f"Unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class AttendanceEngine:
    """
    Owns the attendance ledger and applies the per-name dedup window.

    The ledger is kept newest-first in a ``Store`` so that persistence can
    subscribe to it.
    """

    def __init__(self, ledger: Optional[Store] = None, window: Optional[timedelta] = None):
        self.ledger = ledger if ledger is not None else Store()
        self.window = window if window is not None else timedelta(minutes=ATTENDANCE_WINDOW_MINUTES)
        self._lock = threading.Lock()

    def record(
        self,
        name: str,
        now: Optional[TimestampLike] = None,
        confidence: Optional[float] = None
    ) -> RecordOutcome:
        """
        Append a Present record for ``name`` unless one already exists inside
        the dedup window ending at ``now``.

        Args:
            name: Already-normalized identity name (matched exactly)
            now: Time of the detection; defaults to the current UTC time
            confidence: Recognizer confidence to keep on the record

        Returns:
            RecordOutcome.RECORDED or RecordOutcome.SUPPRESSED
        """
        when = utcnow() if now is None else parse_timestamp(now)
        window_start = when - self.window

        with self._lock:
            recent = next(
                (
                    r for r in self.ledger.get()
                    if r.identity_name == name and r.timestamp >= window_start
                ),
                None
            )
            if recent:
                logger.debug("Suppressed duplicate attendance for %s (last at %s)",
                             name, recent.timestamp.isoformat())
                return RecordOutcome.SUPPRESSED

            record = AttendanceRecord(
                identity_name=name,
                timestamp=when,
                status=AttendanceStatus.PRESENT,
                confidence=confidence
            )
            self.ledger.update(lambda current: (record,) + current)

        logger.info("Attendance recorded: %s at %s", name, when.isoformat())
        return RecordOutcome.RECORDED

    def clear(self):
        """Empty the ledger. Irreversible."""
        with self._lock:
            count = len(self.ledger)
            self.ledger.set(())
        logger.info("Attendance ledger cleared (%d records removed)", count)

    def list_recent(self, n: int) -> List[AttendanceRecord]:
        if n <= 0:
            return []
        return list(self.ledger.get()[:n])

    def list_all(self) -> List[AttendanceRecord]:
        return list(self.ledger.get())
