"""
Pydantic models shared by the attendance core, the persistence layer and the API.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class AttendanceStatus(str, Enum):
    PRESENT = "Present"
    LATE = "Late"  # reserved, never produced


class RecordOutcome(str, Enum):
    RECORDED = "recorded"
    SUPPRESSED = "suppressed"


class EnrolledIdentity(BaseModel):
    """Named reference photo that live captures are matched against."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    reference_image: str  # data URL or bare base64
    enrolled_at: datetime = Field(default_factory=utcnow)


class AttendanceRecord(BaseModel):
    """One ledger entry. Matched by name, not by identity id."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    identity_name: str
    timestamp: datetime
    status: AttendanceStatus = AttendanceStatus.PRESENT
    confidence: Optional[float] = None


class GalleryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    image: bytes


class Match(BaseModel):
    name: str
    confidence: float = Field(ge=0.0, le=1.0)


class RecognitionResponse(BaseModel):
    """JSON body the cloud recognizer is instructed to produce."""
    matches: List[Match] = Field(default_factory=list)


class Detection(BaseModel):
    """A recognizer match that passed the confidence and name checks."""
    name: str
    label: str
    confidence: float
    outcome: RecordOutcome
