"""
Database configuration and store persistence.

The in-memory stores are the source of truth while the service runs.
StorePersistence restores them at startup and rewrites the whole collection
after every mutation.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL
from models import AttendanceRow, Base, EnrollmentRow
from schemas import AttendanceRecord, AttendanceStatus, EnrolledIdentity
from store import EnrollmentStore, Store

logger = logging.getLogger("faceguard.database")


def init_db(database_url: str = DATABASE_URL) -> sessionmaker:
    """Create tables and return a session factory."""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StorePersistence:
    """Mirrors the enrollment store and the attendance ledger into the database."""

    def __init__(self, session_factory: sessionmaker):
        self.SessionLocal = session_factory
        self._unsubscribers: List[Callable[[], None]] = []

    def load(self, enrollments: EnrollmentStore, ledger: Store):
        """Populate both stores from the database. Call before ``attach``."""
        db = self.SessionLocal()
        try:
            enrollment_rows = db.query(EnrollmentRow).order_by(EnrollmentRow.position).all()
            attendance_rows = db.query(AttendanceRow).order_by(AttendanceRow.position).all()

            enrollments.set(
                EnrolledIdentity(
                    id=row.id,
                    name=row.name,
                    reference_image=row.reference_image,
                    enrolled_at=_from_naive_utc(row.enrolled_at)
                )
                for row in enrollment_rows
            )
            ledger.set(
                AttendanceRecord(
                    id=row.id,
                    identity_name=row.identity_name,
                    timestamp=_from_naive_utc(row.timestamp),
                    status=AttendanceStatus(row.status),
                    confidence=row.confidence
                )
                for row in attendance_rows
            )
        finally:
            db.close()

        logger.info("Loaded %d enrollments and %d attendance records",
                    len(enrollments), len(ledger))

    def attach(self, enrollments: EnrollmentStore, ledger: Store):
        self._unsubscribers.append(enrollments.subscribe(self.save_enrollments))
        self._unsubscribers.append(ledger.subscribe(self.save_ledger))

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def save_enrollments(self, identities):
        db = self.SessionLocal()
        try:
            db.query(EnrollmentRow).delete()
            db.add_all(
                EnrollmentRow(
                    id=identity.id,
                    position=position,
                    name=identity.name,
                    reference_image=identity.reference_image,
                    enrolled_at=_to_naive_utc(identity.enrolled_at)
                )
                for position, identity in enumerate(identities)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save_ledger(self, records):
        db = self.SessionLocal()
        try:
            db.query(AttendanceRow).delete()
            db.add_all(
                AttendanceRow(
                    id=record.id,
                    position=position,
                    identity_name=record.identity_name,
                    timestamp=_to_naive_utc(record.timestamp),
                    status=record.status.value,
                    confidence=record.confidence
                )
                for position, record in enumerate(records)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
