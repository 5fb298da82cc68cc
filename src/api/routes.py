# src/api/routes.py
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from typing import Optional
import threading
import logging

from api.schemas import DeleteResponse, HistoryResponse, ScanRequest, ScanResponse, StatisticsResponse
from engine.cache import ResultCache
from engine.db import SessionLocal
from engine.job_manager import JobManager
from engine.orchestrator import ScanOrchestrator
from engine.store import ScanRecordStore
from tools.trufflehog_adapter import TruffleHogAdapter

router = APIRouter()

_orchestrator = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> ScanOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = ScanOrchestrator(
                store=ScanRecordStore(SessionLocal),
                cache=ResultCache.from_config(),
                scanner=TruffleHogAdapter(),
                job_manager=JobManager(),
            )
        return _orchestrator


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/health/ready", summary="Check database and cache connectivity", tags=["Health"])
def readiness_check(orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    checks = orchestrator.readiness()
    if checks["database"] != "ok":
        return JSONResponse(status_code=503, content={"status": "unavailable", "checks": checks})
    return {"status": "ok", "checks": checks}


@router.post(
    "/scan",
    summary="Scan a repository for exposed secrets",
    response_description="Cached result, the scan already in progress, or a newly started scan",
    tags=["Secret Scanning"],
    response_model=ScanResponse,
    responses={
        200: {"description": "Scan started, joined, or served from cache"},
        400: {"description": "Invalid repository URL"},
        409: {"description": "Concurrent scan conflict"},
        500: {"description": "Internal server error"}
    },
)
def submit_scan(request: ScanRequest, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    """
    Returns immediately. Poll GET /scan/{scan_id} until the status is completed or failed.
    """
    return orchestrator.submit(
        request.repo_url,
        provider=request.provider,
        force_rescan=request.force_rescan,
        verified_only=request.verified_only,
    )


@router.get(
    "/scan/history",
    summary="Query scan history",
    response_description="Page of scans with pagination metadata",
    tags=["Secret Scanning"],
    response_model=HistoryResponse,
    responses={
        200: {"description": "Scan history"},
        400: {"description": "Invalid query parameters"},
    },
)
def get_scan_history(
    repo_url: Optional[str] = Query(None, description="Filter by repository URL (partial match)"),
    provider: Optional[str] = Query(None, description="Filter by git provider"),
    status: Optional[str] = Query(None, description="Filter by scan status"),
    page: int = Query(1, description="Page number (1-based)"),
    limit: int = Query(10, description="Items per page (max 100)"),
    sort_by: str = Query("created_at", description="created_at, updated_at, duration_seconds or finding_count"),
    sort_order: str = Query("DESC", description="ASC or DESC"),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.list_history(
        repo_url=repo_url,
        provider=provider,
        status=status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get(
    "/scan/statistics",
    summary="Get scan statistics",
    tags=["Secret Scanning"],
    response_model=StatisticsResponse,
)
def get_scan_statistics(orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_statistics()


@router.get("/scan/detectors", summary="List supported detector types", tags=["Secret Scanning"])
def list_detectors(orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    return {"detectors": orchestrator.supported_detectors()}


@router.get(
    "/scan/{scan_id}",
    summary="Get scan status and result",
    tags=["Secret Scanning"],
    response_model=ScanResponse,
    responses={
        200: {"description": "Scan status and result"},
        404: {"description": "Scan not found"},
    },
)
def get_scan(scan_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_by_id(scan_id)


@router.delete(
    "/scan/{scan_id}",
    summary="Delete a scan and its cached result",
    tags=["Secret Scanning"],
    response_model=DeleteResponse,
    responses={
        200: {"description": "Scan deleted"},
        404: {"description": "Scan not found"},
    },
)
def delete_scan(scan_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    """
    A scan still in progress keeps running; its result is discarded when it finishes.
    """
    orchestrator.delete(scan_id)
    logging.info(f"[scan_id={scan_id}] Deleted via API")
    return {"success": True, "message": f"Scan {scan_id} deleted."}
