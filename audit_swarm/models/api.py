from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ReasoningRequest(BaseModel):
    prompt: str = Field(..., description="The user prompt")
    system_prompt: Optional[str] = Field(None, description="System instruction")
    preferred_provider: Optional[str] = Field(None, description="Explicit provider override")
    preferred_model: Optional[str] = Field(None, description="Explicit model override")
    max_tokens: Optional[int] = Field(None, description="Bound on output size")
    reasoning_budget: Optional[int] = Field(None, description="Thinking-token budget")
    temperature: Optional[float] = None
    job_id: Optional[str] = None
    stage: Optional[str] = None
    role: Optional[str] = None


# ─── Snapshots ──────────────────────────────────────────

class SnapshotAction(str, Enum):
    get = "get"
    create = "create"
    refresh = "refresh"
    invalidate = "invalidate"


class SnapshotRequest(BaseModel):
    action: SnapshotAction = SnapshotAction.get
    repoUrl: str
    accountRef: Optional[str] = Field(None, description="Stored credential to use for private repositories")


class SnapshotInfo(BaseModel):
    id: str
    repoUrl: str
    owner: str
    repo: str
    defaultBranch: str
    fileCount: int
    accessMode: str
    tokenValid: bool
    fingerprint: Dict[str, Any] = Field(default_factory=dict)
    stats: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[datetime] = None
    expiresAt: Optional[datetime] = None

    @classmethod
    def from_row(cls, row, include_fingerprint: bool = True) -> "SnapshotInfo":
        return cls(
            id=row.id,
            repoUrl=row.repo_url,
            owner=row.owner,
            repo=row.repo,
            defaultBranch=row.default_branch,
            fileCount=row.file_count or 0,
            accessMode=row.access_mode,
            tokenValid=bool(row.token_valid),
            fingerprint=(row.fingerprint or {}) if include_fingerprint else {},
            stats=row.stats or {},
            createdAt=row.created_at,
            expiresAt=row.expires_at,
        )


class SnapshotResponse(BaseModel):
    snapshot: Optional[SnapshotInfo] = None
    error: Optional[str] = None
    errorCode: Optional[str] = None
    requiresAuth: bool = False


class CredentialRequest(BaseModel):
    token: str = Field(..., min_length=1)
    login: Optional[str] = None


class CredentialResponse(BaseModel):
    accountRef: str


# ─── Audits ─────────────────────────────────────────────

class AuditSubmitRequest(BaseModel):
    snapshotId: str
    tier: str
    priority: int = Field(5, ge=1, le=10)
    maxRetries: Optional[int] = Field(None, ge=1, le=10)


class AuditSubmitResponse(BaseModel):
    jobId: str
    status: str = "queued"
    snapshotInfo: SnapshotInfo


class JobView(BaseModel):
    id: str
    snapshotId: str
    tier: str
    status: str
    priority: int
    attempts: int
    maxAttempts: int
    scheduledAt: Optional[datetime] = None
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    lockedUntil: Optional[datetime] = None
    lastError: Optional[str] = None

    @classmethod
    def from_row(cls, job) -> "JobView":
        return cls(
            id=job.id,
            snapshotId=job.snapshot_id,
            tier=job.tier,
            status=job.status,
            priority=job.priority,
            attempts=job.attempts,
            maxAttempts=job.max_attempts,
            scheduledAt=job.scheduled_at,
            startedAt=job.started_at,
            completedAt=job.completed_at,
            lockedUntil=job.locked_until,
            lastError=job.last_error,
        )


class TokenUsage(BaseModel):
    planner: int = 0
    workers: int = 0
    synthesizer: int = 0


class AuditStatusView(BaseModel):
    jobId: str
    tier: str
    status: str
    progress: int
    currentStep: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    workerProgress: List[Dict[str, Any]] = Field(default_factory=list)
    tokenUsage: TokenUsage = Field(default_factory=TokenUsage)
    errorMessage: Optional[str] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_row(cls, record) -> "AuditStatusView":
        return cls(
            jobId=record.job_id,
            tier=record.tier,
            status=record.status,
            progress=record.progress or 0,
            currentStep=record.current_step,
            logs=list(record.logs or []),
            workerProgress=list(record.worker_progress or []),
            tokenUsage=TokenUsage(**(record.token_usage or {})),
            errorMessage=record.error_message,
            updatedAt=record.updated_at,
        )


# ─── Operator endpoints ─────────────────────────────────

class ProcessRequest(BaseModel):
    jobId: Optional[str] = None


class ProcessResponse(BaseModel):
    processed: bool
    jobId: Optional[str] = None
    status: Optional[str] = None


class SweepResponse(BaseModel):
    recovered: int
    processed: List[str] = Field(default_factory=list)


class CleanupRequest(BaseModel):
    days: int = Field(30, ge=1)


class CleanupResponse(BaseModel):
    deleted: int
