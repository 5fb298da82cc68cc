# src/engine/store.py
"""
ScanRecordStore: durable scan records on top of a SQLAlchemy session factory.

The store only persists what it is given. State transitions belong to ScanJob and the orchestrator.
"""
import logging
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from engine.errors import ConflictError, PersistenceError
from engine.models import IN_FLIGHT_STATUSES, ScanJob, ScanStatus

# columns a state transition may touch
_MUTABLE_FIELDS = (
    "status",
    "result",
    "error_message",
    "duration_seconds",
    "finding_count",
    "verified_finding_count",
    "scan_metadata",
    "updated_at",
    "started_at",
    "finished_at",
)


class ScanRecordStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, job: ScanJob) -> str:
        with self.session_factory() as db:
            db.add(job)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(
                    f"An in-flight scan already exists for {job.repo_url} ({job.provider.value})"
                ) from e
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"Failed to create scan record: {e}") from e
        return job.id

    def save(self, job: ScanJob, expected_status: Optional[ScanStatus] = None):
        """
        Write the job's mutable fields back. With expected_status the write only lands if the stored
        row still has that status. A missing row is never re-inserted.
        """
        values = {field: getattr(job, field) for field in _MUTABLE_FIELDS}
        with self.session_factory() as db:
            try:
                query = db.query(ScanJob).filter(ScanJob.id == job.id)
                if expected_status is not None:
                    query = query.filter(ScanJob.status == expected_status)
                updated = query.update(values, synchronize_session=False)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"Failed to save scan {job.id}: {e}") from e
        if not updated:
            raise PersistenceError(
                f"Scan {job.id} was deleted or changed concurrently; "
                f"status {job.status.value} not saved"
            )

    def find_by_id(self, job_id: str) -> Optional[ScanJob]:
        with self.session_factory() as db:
            return db.query(ScanJob).filter(ScanJob.id == job_id).first()

    def find_one_in_flight(self, repo_url: str, provider) -> Optional[ScanJob]:
        with self.session_factory() as db:
            return (
                db.query(ScanJob)
                .filter(
                    ScanJob.repo_url == repo_url,
                    ScanJob.provider == provider,
                    ScanJob.status.in_(IN_FLIGHT_STATUSES),
                )
                .order_by(ScanJob.created_at.desc())
                .first()
            )

    def find_and_count(self, repo_url=None, provider=None, status=None,
                       order_by: str = "created_at", descending: bool = True,
                       offset: int = 0, limit: int = 10) -> Tuple[List[ScanJob], int]:
        with self.session_factory() as db:
            query = db.query(ScanJob)
            if repo_url:
                query = query.filter(ScanJob.repo_url.contains(repo_url, autoescape=True))
            if provider:
                query = query.filter(ScanJob.provider == provider)
            if status:
                query = query.filter(ScanJob.status == status)
            total = query.count()
            column = getattr(ScanJob, order_by)
            ordering = column.desc() if descending else column.asc()
            jobs = query.order_by(ordering, ScanJob.id).offset(offset).limit(limit).all()
        return jobs, total

    def count(self, statuses=None) -> int:
        with self.session_factory() as db:
            query = db.query(func.count(ScanJob.id))
            if statuses:
                query = query.filter(ScanJob.status.in_(statuses))
            return query.scalar() or 0

    def sum_finding_count(self, status: ScanStatus) -> int:
        with self.session_factory() as db:
            total = (
                db.query(func.coalesce(func.sum(ScanJob.finding_count), 0))
                .filter(ScanJob.status == status)
                .scalar()
            )
        return int(total or 0)

    def completed_detector_types(self) -> Iterator[list]:
        """
        Yield the detector_types list of every completed scan summary, oldest scan first.
        """
        with self.session_factory() as db:
            rows = (
                db.query(ScanJob.result)
                .filter(ScanJob.status == ScanStatus.COMPLETED, ScanJob.result.isnot(None))
                .order_by(ScanJob.created_at.asc(), ScanJob.id)
                .all()
            )
        for (result,) in rows:
            summary = result.get("summary") if isinstance(result, dict) else None
            detector_types = summary.get("detector_types") if isinstance(summary, dict) else None
            if isinstance(detector_types, list):
                yield detector_types

    def find_stale_in_flight(self, cutoff: datetime) -> List[ScanJob]:
        with self.session_factory() as db:
            return (
                db.query(ScanJob)
                .filter(ScanJob.status.in_(IN_FLIGHT_STATUSES), ScanJob.updated_at < cutoff)
                .order_by(ScanJob.updated_at.asc())
                .all()
            )

    def remove(self, job_id: str) -> bool:
        with self.session_factory() as db:
            deleted = db.query(ScanJob).filter(ScanJob.id == job_id).delete(synchronize_session=False)
            db.commit()
        return bool(deleted)

    def delete_older_than(self, cutoff: datetime) -> int:
        with self.session_factory() as db:
            deleted = (
                db.query(ScanJob)
                .filter(ScanJob.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        logging.info(f"Deleted {deleted} scan records created before {cutoff.isoformat()}")
        return deleted

    def ping(self) -> bool:
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logging.error(f"Database ping failed: {e}")
            return False
