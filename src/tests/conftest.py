import copy
import threading

import pytest
import redis

from engine.cache import ResultCache
from engine.db import init_db, make_engine, make_session_factory
from engine.job_manager import JobManager
from engine.models import GitProvider, ScanJob, ScanStatus
from engine.orchestrator import ScanOrchestrator
from engine.store import ScanRecordStore
from tools.base import SecretScanner
from utils.report_utils import build_report


def make_finding(detector, verified, file="config/settings.yaml", commit="abc123"):
    return {
        "detector_type": detector,
        "detector_name": detector,
        "decoder_name": "PLAIN",
        "verified": verified,
        "raw": f"{detector.lower()}-secret",
        "redacted": f"{detector.lower()}-****",
        "extra_data": None,
        "source": {
            "commit": commit,
            "file": file,
            "email": "dev@example.com",
            "repository": "https://example.com/a.git",
            "timestamp": "2024-01-01 00:00:00 +0000",
            "line": 3,
            "visibility": None,
        },
    }


def sample_report():
    return build_report([
        make_finding("AWS", False, file="config/aws.yaml", commit="abc123"),
        make_finding("GitHub", True, file=".env", commit="def456"),
    ])


class MemoryRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    def ping(self):
        return True


class BrokenRedis:
    def _fail(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    get = set = delete = ping = _fail


class FakeScanner(SecretScanner):
    def __init__(self, report=None, error=None, gate=None):
        self.report = report if report is not None else sample_report()
        self.error = error
        self.gate = gate
        self.calls = []

    def scan(self, target):
        self.calls.append(target)
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.report)

    def supported_detectors(self):
        return ["AWS", "GitHub"]

    def scanner_info(self):
        return {"image": "fake", "version": "trufflehog 3.0.0", "supported_detectors": self.supported_detectors()}


def persist_job(store, repo_url="https://example.com/a.git", provider=GitProvider.GITHUB,
                status=ScanStatus.COMPLETED, report=None, error="boom", **overrides):
    job = ScanJob.create(repo_url, provider)
    if status != ScanStatus.PENDING:
        job.start()
        if status == ScanStatus.COMPLETED:
            job.succeed(report if report is not None else sample_report())
        elif status == ScanStatus.FAILED:
            job.fail(error)
    for field, value in overrides.items():
        setattr(job, field, value)
    store.create(job)
    return job


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'scans.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ScanRecordStore(session_factory)


@pytest.fixture
def redis_client():
    return MemoryRedis()


@pytest.fixture
def cache(redis_client):
    return ResultCache(redis_client, ttl=60)


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
def orchestrator(store, cache, scanner):
    orchestrator = ScanOrchestrator(store, cache, scanner, JobManager())
    yield orchestrator
    if scanner.gate is not None:
        scanner.gate.set()
    orchestrator.job_manager.join_all(5)
