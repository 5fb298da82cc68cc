# src/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import router, get_orchestrator
from engine.config import LOG_LEVEL, MAINTENANCE_INTERVAL_SECONDS
from engine.db import init_db
from engine.errors import ConflictError, NotFoundError, ScanServiceError, ValidationError
import logging
import time
import uuid


# Configure structured logging
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)

app = FastAPI(title="Secret Scan Orchestrator")

_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
)


def _trace_id_for(request: Request) -> str:
    # honour an upstream trace id
    incoming = request.headers.get("X-Trace-Id", "").strip()
    if incoming and len(incoming) <= 64 and incoming.isprintable():
        return incoming
    return str(uuid.uuid4())


def _error_response(status_code: int, message: str, trace_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "trace_id": trace_id},
        headers={"X-Trace-Id": trace_id},
    )


@app.middleware("http")
async def add_trace_id_and_log(request: Request, call_next):
    trace_id = _trace_id_for(request)
    request.state.trace_id = trace_id
    started = time.monotonic()
    logging.info(f"[trace_id={trace_id}] {request.method} {request.url.path}")
    try:
        response = await call_next(request)
    except Exception:
        logging.exception(f"[trace_id={trace_id}] Unhandled error on {request.method} {request.url.path}")
        return _error_response(500, "Internal server error", trace_id)
    elapsed_ms = int((time.monotonic() - started) * 1000)
    logging.info(f"[trace_id={trace_id}] {request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms")
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(ScanServiceError)
async def scan_service_exception_handler(request: Request, exc: ScanServiceError):
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
    status_code = next((code for error_cls, code in _ERROR_STATUS if isinstance(exc, error_cls)), 500)
    log = logging.warning if status_code < 500 else logging.error
    log(f"[trace_id={trace_id}] {type(exc).__name__}: {exc}")
    # only client errors carry their message back
    return _error_response(status_code, str(exc) if status_code < 500 else "Internal server error", trace_id)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
    logging.error(f"[trace_id={trace_id}] {type(exc).__name__}: {exc}")
    return _error_response(500, "Internal server error", trace_id)

app.include_router(router)


@app.on_event("startup")
def on_startup():
    init_db()
    if MAINTENANCE_INTERVAL_SECONDS > 0:
        orchestrator = get_orchestrator()
        orchestrator.job_manager.start_periodic(
            "scan-maintenance", orchestrator.run_maintenance, MAINTENANCE_INTERVAL_SECONDS
        )
    logging.info("Secret scan API started.")


@app.on_event("shutdown")
def on_shutdown():
    job_manager = get_orchestrator().job_manager
    job_manager.stop()
    abandoned = job_manager.active_scan_ids()
    if abandoned:
        # these stay in flight until the stale sweep fails them
        logging.warning(f"Shutting down with {len(abandoned)} scans still running: {', '.join(abandoned)}")
    logging.info("Secret scan API stopped.")
