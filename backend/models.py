"""
SQLAlchemy models for persisted enrollments and attendance.
"""
from sqlalchemy import Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class EnrollmentRow(Base):
    """Enrolled person with the reference photo sent to the recognizer."""
    __tablename__ = "enrollments"

    id = Column(String, primary_key=True)
    position = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    reference_image = Column(Text, nullable=False)  # data URL
    enrolled_at = Column(DateTime, nullable=False)


class AttendanceRow(Base):
    """Attendance ledger entry. ``position`` 0 is the newest record."""
    __tablename__ = "attendance"

    id = Column(String, primary_key=True)
    position = Column(Integer, nullable=False, index=True)
    identity_name = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    status = Column(String, nullable=False)
    confidence = Column(Float, nullable=True)
