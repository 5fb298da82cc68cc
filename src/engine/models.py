# src/engine/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text, text
from sqlalchemy.orm import declarative_base

from engine.errors import InvalidTransitionError
from utils.report_utils import count_findings

Base = declarative_base()


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class GitProvider(str, enum.Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    AZURE_DEVOPS = "azure_devops"
    GENERIC = "generic"


IN_FLIGHT_STATUSES = (ScanStatus.PENDING, ScanStatus.RUNNING)

_IN_FLIGHT_CLAUSE = "status IN ('pending', 'running')"


def utcnow() -> datetime:
    # naive UTC, the way SQLite hands datetimes back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ScanJob(Base):
    __tablename__ = 'scan_jobs'
    __table_args__ = (
        Index('ix_scan_jobs_repo_provider', 'repo_url', 'provider'),
        # at most one pending/running scan per (repo_url, provider)
        Index(
            'uq_scan_jobs_in_flight', 'repo_url', 'provider',
            unique=True,
            sqlite_where=text(_IN_FLIGHT_CLAUSE),
            postgresql_where=text(_IN_FLIGHT_CLAUSE),
        ),
    )

    id = Column(String(36), primary_key=True)
    repo_url = Column(Text, nullable=False)
    provider = Column(
        Enum(GitProvider, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=GitProvider.GITHUB,
    )
    status = Column(
        Enum(ScanStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=ScanStatus.PENDING,
        index=True,
    )
    result = Column(JSON(none_as_null=True), nullable=True)
    error_message = Column(Text, nullable=True)
    duration_seconds = Column(Integer, nullable=False, default=0)
    finding_count = Column(Integer, nullable=False, default=0)
    verified_finding_count = Column(Integer, nullable=False, default=0)
    scan_metadata = Column(JSON(none_as_null=True), nullable=True)  # scanner version, config used
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    @classmethod
    def create(cls, repo_url: str, provider) -> "ScanJob":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            repo_url=repo_url,
            provider=GitProvider(provider),
            status=ScanStatus.PENDING,
            result=None,
            error_message=None,
            duration_seconds=0,
            finding_count=0,
            verified_finding_count=0,
            created_at=now,
            updated_at=now,
        )

    def start(self):
        self._transition((ScanStatus.PENDING,), ScanStatus.RUNNING)
        self.started_at = self.updated_at

    def succeed(self, report: dict, metadata: dict = None):
        self._transition((ScanStatus.RUNNING,), ScanStatus.COMPLETED)
        self.result = report
        self.update_summary()
        self._finish()
        if metadata is not None:
            self.scan_metadata = metadata

    def fail(self, message: str):
        self._transition((ScanStatus.RUNNING,), ScanStatus.FAILED)
        self.error_message = message or "Scan failed"
        self._finish()

    def expire(self, message: str):
        """
        Force an in-flight scan into FAILED. Used by the stale sweep and by forced rescans.
        """
        self._transition(IN_FLIGHT_STATUSES, ScanStatus.FAILED)
        self.error_message = message
        self._finish()

    def update_summary(self):
        self.finding_count, self.verified_finding_count = count_findings(self.result)

    def _transition(self, allowed_from, target: ScanStatus):
        if self.status not in allowed_from:
            current = getattr(self.status, "value", self.status)
            raise InvalidTransitionError(
                f"Scan {self.id} cannot move from {current} to {target.value}"
            )
        self.status = target
        self.updated_at = utcnow()

    def _finish(self):
        self.finished_at = self.updated_at
        if self.started_at:
            self.duration_seconds = int(round((self.finished_at - self.started_at).total_seconds()))
        else:
            self.duration_seconds = 0
