# src/api/schemas.py
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from engine.models import GitProvider


class ScanRequest(BaseModel):
    repo_url: str = Field(..., description="Git repository URL to scan for secrets", examples=["https://github.com/octocat/Hello-World"])
    provider: GitProvider = Field(GitProvider.GITHUB, description="Git provider hosting the repository")
    force_rescan: bool = Field(False, description="Ignore cached and in-flight scans and start a new one")
    verified_only: bool = Field(False, description="Keep only verified findings in the stored result")


class ScanResponse(BaseModel):
    scan_id: str
    repo_url: str
    provider: str
    status: str
    result: Optional[Any] = None  # findings report, present once completed
    error_message: Optional[str] = None
    duration_seconds: int = 0
    finding_count: int = 0
    verified_finding_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    from_cache: bool = False


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool


class HistoryResponse(BaseModel):
    data: List[ScanResponse]
    meta: PaginationMeta


class DetectorCount(BaseModel):
    detector: str
    count: int


class StatisticsResponse(BaseModel):
    total_scans: int
    completed_scans: int
    failed_scans: int
    running_scans: int
    total_vulnerabilities: int
    average_vulnerabilities_per_scan: int
    success_rate: int
    top_detectors: List[DetectorCount]


class DeleteResponse(BaseModel):
    success: bool
    message: str
