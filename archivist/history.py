"""
Run history stored with SQLAlchemy.

Every archive outcome of a run becomes one ArchiveRun row with one
DeliveryRecord per destination. The history is informational only; the
pipeline never reads it back.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, Boolean,
    create_engine, select
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from archivist.backup.report import ArchiveOutcome


logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class ArchiveRun(Base):
    """One archive pipeline execution"""
    __tablename__ = 'archive_runs'

    id = Column(Integer, primary_key=True)
    run_id = Column(String(32), nullable=False, index=True)
    archive = Column(String(255), nullable=False)  # Name template
    name = Column(String(255))  # Rendered name
    file_name = Column(String(255))
    status = Column(String(20), nullable=False)  # success, partial, failed, cancelled
    failed_stage = Column(String(20))
    started_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime)
    file_size_bytes = Column(BigInteger)
    error_message = Column(Text)
    logs = Column(Text)  # Detailed execution logs

    # Relationship
    deliveries = relationship('DeliveryRecord', back_populates='run', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<ArchiveRun archive={self.archive} status={self.status}>'


class DeliveryRecord(Base):
    """Delivery of an archive to one destination"""
    __tablename__ = 'archive_deliveries'

    id = Column(Integer, primary_key=True)
    archive_run_id = Column(Integer, ForeignKey('archive_runs.id'), nullable=False)
    destination_id = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)
    success = Column(Boolean, default=False, nullable=False)
    location = Column(String(1000))
    error_message = Column(Text)
    attempts = Column(Integer, default=0, nullable=False)

    run = relationship('ArchiveRun', back_populates='deliveries')

    def __repr__(self):
        return f'<DeliveryRecord destination={self.destination_id} success={self.success}>'


class HistoryStore:
    """
    Records archive outcomes in a database.
    """

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy URL, e.g. sqlite:////var/lib/archivist/history.db
        """
        engine_kwargs = {}
        if database_url.startswith('sqlite') and ':memory:' in database_url:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs = {'connect_args': {'check_same_thread': False}, 'poolclass': StaticPool}

        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def record(self, run_id: str, outcome: ArchiveOutcome) -> ArchiveRun:
        """Store one archive outcome with its deliveries."""
        run = ArchiveRun(
            run_id=run_id,
            archive=outcome.archive,
            name=outcome.name,
            file_name=outcome.file_name,
            status=outcome.status,
            failed_stage=outcome.failed_stage,
            started_at=outcome.started_at or _utcnow(),
            completed_at=outcome.completed_at,
            file_size_bytes=outcome.file_size_bytes,
            error_message=outcome.error,
            logs='\n'.join(outcome.logs)
        )
        for destination in outcome.destinations:
            run.deliveries.append(DeliveryRecord(
                destination_id=destination.destination_id,
                kind=destination.kind,
                success=destination.success,
                location=destination.location,
                error_message=destination.error,
                attempts=destination.attempts
            ))

        with self.Session() as session:
            session.add(run)
            session.commit()
            # Load deliveries while the session is open
            list(run.deliveries)

        logger.debug(f"Recorded history for {outcome.archive} ({outcome.status})")
        return run

    def recent(self, limit: int = 20, archive: Optional[str] = None) -> List[ArchiveRun]:
        """
        Get the most recent archive runs, newest first.

        Args:
            limit: Maximum number of rows
            archive: Optional name template filter
        """
        query = select(ArchiveRun).order_by(ArchiveRun.started_at.desc(), ArchiveRun.id.desc()).limit(limit)
        if archive:
            query = query.where(ArchiveRun.archive == archive)

        with self.Session() as session:
            runs = list(session.scalars(query))
            # Load deliveries while the session is open
            for run in runs:
                list(run.deliveries)
            return runs

    def close(self):
        self.engine.dispose()
