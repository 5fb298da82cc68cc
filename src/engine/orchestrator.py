# src/engine/orchestrator.py
"""
ScanOrchestrator: decides for every scan request whether to answer from cache, join the scan already
in flight for the repository, or start a new one, and drives each scan through
pending -> running -> completed/failed on a background thread.

The store is the source of truth. The cache only holds snapshots of completed scans and may vanish
at any time.
"""
import logging
import math
import threading
from collections import Counter
from datetime import timedelta

from engine.config import RETENTION_DAYS, STALE_SCAN_SECONDS
from engine.errors import ConflictError, NotFoundError, PersistenceError, ScanServiceError, ValidationError
from engine.job_manager import JobManager
from engine.models import IN_FLIGHT_STATUSES, GitProvider, ScanJob, ScanStatus, utcnow
from utils.report_utils import filter_verified_findings

SORTABLE_FIELDS = ("created_at", "updated_at", "duration_seconds", "finding_count")
MAX_PAGE_LIMIT = 100
TOP_DETECTORS = 10
_LOCK_STRIPES = 64


def _value(member):
    return getattr(member, "value", member)


def _iso(moment):
    return moment.isoformat() if moment else None


def _round_half_up(number: float) -> int:
    return int(math.floor(number + 0.5))


def _parse_enum(enum_cls, raw, field):
    if raw is None or raw == "":
        return None
    try:
        return enum_cls(_value(raw))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}")


def pagination_meta(page: int, limit: int, total_items: int) -> dict:
    total_pages = math.ceil(total_items / limit)
    return {
        "page": page,
        "limit": limit,
        "total_items": total_items,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_previous": page > 1,
    }


class ScanOrchestrator:
    def __init__(self, store, cache, scanner, job_manager: JobManager = None):
        self.store = store
        self.cache = cache
        self.scanner = scanner
        self.job_manager = job_manager or JobManager()
        # serialises check-then-create per (repo_url, provider) inside this process;
        # the partial unique index covers other processes
        self._submit_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def submit(self, repo_url: str, provider=GitProvider.GITHUB, force_rescan: bool = False,
               verified_only: bool = False) -> dict:
        provider = _parse_enum(GitProvider, provider, "provider") or GitProvider.GITHUB
        logging.info(f"Scan requested for {repo_url} ({provider.value}), force_rescan: {force_rescan}")

        if not self.scanner.validate_target_url(repo_url):
            raise ValidationError("Invalid repository URL format")

        if not force_rescan:
            cached = self.cache.get_scan_result(repo_url, provider)
            if cached and cached.get("repo_url") == repo_url and cached.get("provider") == provider.value:
                logging.info(f"Returning cached result for {repo_url}")
                return {**cached, "from_cache": True}

        with self._lock_for(repo_url, provider):
            existing = self.store.find_one_in_flight(repo_url, provider)
            if existing is not None:
                if not force_rescan:
                    logging.info(f"[scan_id={existing.id}] Scan already in progress for {repo_url}")
                    return self._format(existing)
                self._supersede(existing)

            job = ScanJob.create(repo_url, provider)
            try:
                self.store.create(job)
            except ConflictError:
                existing = self.store.find_one_in_flight(repo_url, provider)
                if existing is None:
                    raise
                logging.info(f"[scan_id={existing.id}] Joined scan started concurrently for {repo_url}")
                return self._format(existing)

        logging.info(f"[scan_id={job.id}] Created new scan record for {repo_url}")
        snapshot = self._format(job)
        self.job_manager.launch(job.id, self._execute, job, verified_only)
        return snapshot

    def get_by_id(self, scan_id: str) -> dict:
        return self._format(self._get_job(scan_id))

    def list_history(self, repo_url=None, provider=None, status=None, page=1, limit=10,
                     sort_by="created_at", sort_order="DESC") -> dict:
        """
        Page through scan records. Filters are ANDed; repo_url matches as a substring.
        """
        if isinstance(page, bool) or not isinstance(page, int):
            raise ValidationError("Page must be an integer")
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("Limit must be an integer")
        if limit < 1:
            raise ValidationError("Limit must be at least 1")
        if limit > MAX_PAGE_LIMIT:
            raise ValidationError(f"Limit cannot exceed {MAX_PAGE_LIMIT}")
        sort_by = sort_by or "created_at"
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"sort_by must be one of: {', '.join(SORTABLE_FIELDS)}")
        sort_order = (sort_order or "DESC").upper()
        if sort_order not in ("ASC", "DESC"):
            raise ValidationError("sort_order must be ASC or DESC")
        provider = _parse_enum(GitProvider, provider, "provider")
        status = _parse_enum(ScanStatus, status, "status")

        jobs, total_items = self.store.find_and_count(
            repo_url=repo_url,
            provider=provider,
            status=status,
            order_by=sort_by,
            descending=sort_order == "DESC",
            offset=(page - 1) * limit,
            limit=limit,
        )
        return {
            "data": [self._format(job) for job in jobs],
            "meta": pagination_meta(page, limit, total_items),
        }

    def get_statistics(self) -> dict:
        total_scans = self.store.count()
        completed_scans = self.store.count([ScanStatus.COMPLETED])
        failed_scans = self.store.count([ScanStatus.FAILED])
        running_scans = self.store.count(IN_FLIGHT_STATUSES)
        total_vulnerabilities = self.store.sum_finding_count(ScanStatus.COMPLETED)

        detector_counts = Counter()
        for detector_types in self.store.completed_detector_types():
            for detector in detector_types:
                detector_counts[detector] += 1
        # sorted() is stable, so ties keep first-seen order
        ranked = sorted(detector_counts.items(), key=lambda item: item[1], reverse=True)
        top_detectors = [{"detector": detector, "count": count} for detector, count in ranked[:TOP_DETECTORS]]

        return {
            "total_scans": total_scans,
            "completed_scans": completed_scans,
            "failed_scans": failed_scans,
            "running_scans": running_scans,
            "total_vulnerabilities": total_vulnerabilities,
            "average_vulnerabilities_per_scan": (
                _round_half_up(total_vulnerabilities / completed_scans) if completed_scans else 0
            ),
            "top_detectors": top_detectors,
            "success_rate": _round_half_up(100 * completed_scans / total_scans) if total_scans else 0,
        }

    def delete(self, scan_id: str):
        """
        Drop the cached snapshot, then the record. A pipeline still running for this scan is not
        stopped; its final save will find no row and is discarded.
        """
        job = self._get_job(scan_id)
        self.cache.delete_scan_result(job.repo_url, job.provider)
        if not self.store.remove(scan_id):
            raise NotFoundError(f"Scan result not found: {scan_id}")
        logging.info(f"[scan_id={scan_id}] Deleted scan result")

    def supported_detectors(self) -> list:
        return self.scanner.supported_detectors()

    def cleanup_old_scans(self, days_to_keep: int = RETENTION_DAYS) -> int:
        if days_to_keep < 0:
            raise ValidationError("days_to_keep must not be negative")
        cutoff = utcnow() - timedelta(days=days_to_keep)
        deleted = self.store.delete_older_than(cutoff)
        logging.info(f"Cleaned up {deleted} old scan results")
        return deleted

    def reap_stale_scans(self, max_age_seconds: int = STALE_SCAN_SECONDS) -> int:
        """
        Mark scans that have sat in pending/running longer than max_age_seconds as failed.
        """
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        reaped = 0
        for job in self.store.find_stale_in_flight(cutoff):
            previous = job.status
            job.expire(f"Scan exceeded {max_age_seconds}s without completing and was marked as failed")
            try:
                self.store.save(job, expected_status=previous)
            except PersistenceError as e:
                logging.info(f"[scan_id={job.id}] Stale scan moved on before it was reaped: {e}")
                continue
            reaped += 1
            logging.warning(f"[scan_id={job.id}] Marked stale {previous.value} scan as failed")
        return reaped

    def run_maintenance(self, stale_after: int = STALE_SCAN_SECONDS, days_to_keep: int = RETENTION_DAYS) -> dict:
        return {
            "reaped": self.reap_stale_scans(stale_after),
            "deleted": self.cleanup_old_scans(days_to_keep),
        }

    def readiness(self) -> dict:
        cache_ok = self.cache.ping()
        return {
            "database": "ok" if self.store.ping() else "unavailable",
            "cache": "disabled" if cache_ok is None else ("ok" if cache_ok else "unavailable"),
        }

    def _execute(self, job: ScanJob, verified_only: bool):
        scan_id = job.id
        try:
            job.start()
            self.store.save(job, expected_status=ScanStatus.PENDING)
        except ScanServiceError as e:
            logging.error(f"[scan_id={scan_id}] Could not mark scan as running: {e}")
            return
        logging.info(f"[scan_id={scan_id}] Starting scan for {job.repo_url}")

        try:
            report = self.scanner.scan(job.repo_url)
            if verified_only:
                report = filter_verified_findings(report)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logging.error(f"[scan_id={scan_id}] Scan failed for {job.repo_url}: {message}")
            job.fail(message)
            self._persist(job, ScanStatus.RUNNING)
            return

        job.succeed(report, self._scan_metadata(scan_id, verified_only))
        if not self._persist(job, ScanStatus.RUNNING):
            return
        self.cache.set_scan_result(job.repo_url, job.provider, self._format(job))
        logging.info(
            f"[scan_id={scan_id}] Scan completed for {job.repo_url}: "
            f"{job.finding_count} vulnerabilities found"
        )

    def _scan_metadata(self, scan_id: str, verified_only: bool) -> dict:
        try:
            environment_info = self.scanner.scanner_info()
        except Exception as e:
            # a completed scan stays completed without version info
            logging.warning(f"[scan_id={scan_id}] Could not read scanner info: {e}")
            environment_info = {}
        return {
            "scanner_version": environment_info.get("version"),
            "config_used": {"verified_only": verified_only},
            "environment_info": environment_info,
        }

    def _persist(self, job: ScanJob, expected_status: ScanStatus) -> bool:
        try:
            self.store.save(job, expected_status=expected_status)
        except PersistenceError as e:
            logging.error(f"[scan_id={job.id}] Could not save {job.status.value} result: {e}")
            return False
        return True

    def _supersede(self, job: ScanJob, attempts: int = 3):
        # the pipeline may move the job from pending to running under us; re-read and retry
        for _ in range(attempts):
            previous = job.status
            job.expire("Superseded by a forced rescan")
            try:
                self.store.save(job, expected_status=previous)
                logging.info(f"[scan_id={job.id}] Superseded in-flight scan by a forced rescan")
                return
            except PersistenceError as e:
                logging.warning(f"[scan_id={job.id}] Could not supersede in-flight scan: {e}")
            job = self.store.find_one_in_flight(job.repo_url, job.provider)
            if job is None:
                return

    def _get_job(self, scan_id: str) -> ScanJob:
        job = self.store.find_by_id(scan_id)
        if job is None:
            raise NotFoundError(f"Scan result not found: {scan_id}")
        return job

    def _lock_for(self, repo_url: str, provider: GitProvider):
        return self._submit_locks[hash((repo_url, provider.value)) % _LOCK_STRIPES]

    @staticmethod
    def _format(job: ScanJob, from_cache: bool = False) -> dict:
        return {
            "scan_id": job.id,
            "repo_url": job.repo_url,
            "provider": _value(job.provider),
            "status": _value(job.status),
            "result": job.result,
            "error_message": job.error_message,
            "duration_seconds": job.duration_seconds or 0,
            "finding_count": job.finding_count or 0,
            "verified_finding_count": job.verified_finding_count or 0,
            "created_at": _iso(job.created_at),
            "updated_at": _iso(job.updated_at),
            "from_cache": from_cache,
        }
