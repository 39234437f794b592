"""
Run history persisted with SQLAlchemy.

One row per pipeline run: status, failing stage, delivered artifact and the
run's log lines. Enabled when `history_db` is configured.
"""

from datetime import datetime
from typing import List

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import ConfigurationError


Base = declarative_base()


class RunRecord(Base):
    """Backup run history and logs"""
    __tablename__ = 'backup_runs'

    id = Column(Integer, primary_key=True)
    run_id = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # running, completed, failed
    failed_stage = Column(String(20))
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    artifact_name = Column(String(500))
    file_size_bytes = Column(BigInteger)
    remote_reference = Column(String(500))
    error_message = Column(Text)
    logs = Column(Text)

    def __repr__(self):
        return f'<RunRecord {self.run_id} status={self.status}>'


class RunHistory:
    """Thin wrapper around a SQLAlchemy session factory for run records."""

    def __init__(self, url: str):
        """
        Open (and create if needed) the history database.

        Args:
            url: SQLAlchemy database URL, e.g. sqlite:////var/lib/backup-courier/history.db

        Raises:
            ConfigurationError: If the URL is invalid or the database cannot be opened
        """
        try:
            self.engine = create_engine(url)
            Base.metadata.create_all(self.engine)
        except (SQLAlchemyError, ImportError) as e:
            raise ConfigurationError(f"Cannot open history database: {e}")
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def start(self, run_id: str, started_at: datetime) -> RunRecord:
        record = RunRecord(run_id=run_id, status='running', started_at=started_at)
        with self.Session() as session:
            session.add(record)
            session.commit()
        return record

    def finish(self, record: RunRecord, **fields) -> RunRecord:
        """Update a record with the run's outcome."""
        with self.Session() as session:
            record = session.merge(record)
            for name, value in fields.items():
                setattr(record, name, value)
            session.commit()
        return record

    def recent(self, limit: int = 20) -> List[RunRecord]:
        with self.Session() as session:
            return (
                session.query(RunRecord)
                .order_by(RunRecord.started_at.desc(), RunRecord.id.desc())
                .limit(limit)
                .all()
            )
