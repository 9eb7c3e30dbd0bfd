import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from audit_swarm.config import get_settings
from audit_swarm.models.api import (
    AuditStatusView,
    AuditSubmitRequest,
    AuditSubmitResponse,
    CleanupRequest,
    CleanupResponse,
    CredentialRequest,
    CredentialResponse,
    JobView,
    ProcessRequest,
    ProcessResponse,
    SnapshotInfo,
    SnapshotRequest,
    SnapshotResponse,
    SweepResponse,
)
from audit_swarm.models.audit import FinalReport
from audit_swarm.models.error_codes import get_error_code
from audit_swarm.models.job import JobStatus
from audit_swarm.models.metrics import MetricsSummary, QueueStats, TimeRange
from audit_swarm.services.exceptions import (
    AuditError,
    DependencyUnavailable,
    JobConflict,
    SnapshotInvalid,
    SnapshotResolutionError,
    SnapshotStale,
)
from audit_swarm.services.job_queue import JobQueueService
from audit_swarm.services.logger import LoggingService
from audit_swarm.services.metrics import MetricsService
from audit_swarm.services.preflight import SnapshotService
from audit_swarm.services.processor import AuditProcessor, run_sweeper
from audit_swarm.services.prompts import resolve_tier
from audit_swarm.services.router import RoutingService
from audit_swarm.services.status import get_status
from audit_swarm.utils.db import AsyncSessionLocal, Base, engine, get_db

settings = get_settings()

# Setup Logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("audit_swarm")


# ─── Dependencies ───────────────────────────────────────

@lru_cache
def get_processor() -> AuditProcessor:
    reasoning = RoutingService(request_log=LoggingService.session_logger(AsyncSessionLocal))
    return AuditProcessor(AsyncSessionLocal, reasoning=reasoning)


def get_nudge(processor: AuditProcessor = Depends(get_processor)) -> Callable[[str], None]:
    return processor.nudge


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity set by the upstream gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Ensure DB tables exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sweeper = None
    if settings.SWEEP_ENABLED:
        sweeper = asyncio.create_task(run_sweeper(get_processor()))
    yield
    # Shutdown
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    await engine.dispose()

app = FastAPI(
    title="Audit Swarm",
    description="Parallel LLM code audits of GitHub repositories, queued and leased per snapshot.",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:5174", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Error responses ────────────────────────────────────

AUDIT_ERROR_STATUS = {
    JobConflict: 409,
    SnapshotInvalid: 404,
    SnapshotStale: 409,
    DependencyUnavailable: 503,
}


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "errorCode": get_error_code(exc.status_code).value},
    )


@app.exception_handler(AuditError)
async def audit_error_handler(request: Request, exc: AuditError):
    status_code = next((s for t, s in AUDIT_ERROR_STATUS.items() if isinstance(exc, t)), 400)
    body = {"error": exc.message, "errorCode": exc.code}
    if isinstance(exc, JobConflict):
        body["existingJobId"] = exc.existing_job_id
        body["existingStatus"] = exc.status
    logger.warning(f"[API] {request.method} {request.url.path} → {status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content=body)


# ─── Snapshots & credentials ────────────────────────────

@app.post("/snapshots", response_model=SnapshotResponse)
async def resolve_snapshot(
    body: SnapshotRequest,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    processor: AuditProcessor = Depends(get_processor),
):
    """
    Resolve a repository URL into a cached snapshot. Repository-origin
    failures come back as 200 with a structured error so callers can
    branch on errorCode.
    """
    service = SnapshotService(
        db,
        credentials=processor.credentials,
        content_cache=processor.content_cache,
        client_factory=processor.client_factory,
    )
    try:
        snapshot = await service.resolve(body.action, body.repoUrl, user_id=user_id, account_ref=body.accountRef)
    except SnapshotResolutionError as e:
        logger.info(f"[API] Snapshot resolution for {body.repoUrl} failed: {e.error_code}")
        return SnapshotResponse(error=e.message, errorCode=e.error_code, requiresAuth=e.requires_auth)
    return SnapshotResponse(snapshot=SnapshotInfo.from_row(snapshot))


@app.post("/credentials", response_model=CredentialResponse, status_code=201)
async def store_credential(
    body: CredentialRequest,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    processor: AuditProcessor = Depends(get_processor),
):
    account = await processor.credentials.store(db, user_id, body.token, login=body.login)
    return CredentialResponse(accountRef=account.id)


# ─── Audits ─────────────────────────────────────────────

@app.post("/audits", response_model=AuditSubmitResponse, status_code=202)
async def submit_audit(
    body: AuditSubmitRequest,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    processor: AuditProcessor = Depends(get_processor),
    nudge: Callable[[str], None] = Depends(get_nudge),
):
    try:
        tier = resolve_tier(body.tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    job = await processor.submit(
        db, body.snapshotId, tier, user_id=user_id, priority=body.priority, max_attempts=body.maxRetries,
    )
    snapshot = await SnapshotService(db).get_by_id(body.snapshotId)

    # Best effort; the sweeper picks the job up if this never runs
    try:
        nudge(job.id)
    except Exception as e:
        logger.warning(f"[job {job.id}] Immediate trigger failed, leaving it to the sweeper: {e}")

    return AuditSubmitResponse(jobId=job.id, snapshotInfo=SnapshotInfo.from_row(snapshot, include_fingerprint=False))


async def _owned_job(job_id: str, user_id: str, db: AsyncSession):
    job = await JobQueueService(db).get(job_id, user_id=user_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Audit not found")
    return job


@app.get("/audits/{job_id}", response_model=JobView)
async def get_audit(job_id: str, user_id: str = Depends(get_user_id), db: AsyncSession = Depends(get_db)):
    return JobView.from_row(await _owned_job(job_id, user_id, db))


@app.get("/audits/{job_id}/status", response_model=AuditStatusView)
async def get_audit_status(job_id: str, user_id: str = Depends(get_user_id), db: AsyncSession = Depends(get_db)):
    record = await get_status(db, job_id, user_id=user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Audit status not found")
    return AuditStatusView.from_row(record)


@app.get("/audits/{job_id}/report", response_model=FinalReport)
async def get_audit_report(job_id: str, user_id: str = Depends(get_user_id), db: AsyncSession = Depends(get_db)):
    job = await _owned_job(job_id, user_id, db)
    if job.status != JobStatus.succeeded.value or not job.output:
        raise HTTPException(status_code=404, detail=f"Report not available (job is {job.status})")
    return FinalReport.model_validate(job.output["report"])


# ─── Operator endpoints ─────────────────────────────────

@app.post("/jobs/process", response_model=ProcessResponse)
async def process_jobs(body: ProcessRequest, processor: AuditProcessor = Depends(get_processor)):
    """Process one job now: the given id, or the next due one."""
    if body.jobId:
        status = await processor.process_job(body.jobId)
        return ProcessResponse(processed=status is not None, jobId=body.jobId, status=status)

    job_id = await processor.process_next()
    return ProcessResponse(processed=job_id is not None, jobId=job_id)


@app.post("/jobs/recover", response_model=SweepResponse)
async def recover_jobs(processor: AuditProcessor = Depends(get_processor)):
    result = await processor.sweep()
    return SweepResponse(recovered=result.recovered, processed=result.processed)


@app.post("/jobs/cleanup", response_model=CleanupResponse)
async def cleanup_jobs(body: CleanupRequest, db: AsyncSession = Depends(get_db)):
    return CleanupResponse(deleted=await JobQueueService(db).cleanup(body.days))


# ─── Metrics ────────────────────────────────────────────

@app.get("/metrics/summary", response_model=MetricsSummary)
async def get_metrics(
    range: TimeRange = TimeRange.last_24h,
    db: AsyncSession = Depends(get_db)
):
    """
    Get aggregated reasoning-call metrics for a specific time range.
    """
    return await MetricsService.get_summary(db, range)


@app.get("/metrics/queue", response_model=QueueStats)
async def get_queue_metrics(db: AsyncSession = Depends(get_db)):
    return await MetricsService.get_queue_stats(db)


@app.get("/metrics/cost")
async def get_cost_metrics(processor: AuditProcessor = Depends(get_processor)):
    return processor.reasoning.cost_tracker.get_snapshot()


@app.get("/health")
async def health_check():
    return {"status": "ok"}
