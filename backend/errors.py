"""
Error types raised by the attendance core and its collaborators.
"""
from typing import Optional


class AttendanceError(Exception):
    """Base class for all attendance backend errors."""


class CaptureUnavailable(AttendanceError):
    """No frame could be obtained from the video source."""


class RecognizerFailure(AttendanceError):
    """The recognizer errored, timed out or returned malformed data."""


class DecodeFailure(AttendanceError):
    """An image payload could not be decoded."""

    def __init__(self, message: str, label: Optional[str] = None):
        super().__init__(message)
        self.label = label


class InvalidTimestamp(AttendanceError, ValueError):
    """A caller supplied a time that cannot be interpreted."""
