"""
Job queue tables.

audit_jobs holds one row per snapshot (re-submissions reuse the row);
audit_status is the progress record observers poll.
"""

import enum
import uuid
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index
from audit_swarm.utils.db import Base
from audit_swarm.utils.clock import utcnow


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"


LIVE_STATUSES = (JobStatus.pending.value, JobStatus.processing.value)
TERMINAL_STATUSES = (JobStatus.succeeded.value, JobStatus.failed.value)


def _uuid() -> str:
    return str(uuid.uuid4())


class AuditJob(Base):
    __tablename__ = "audit_jobs"

    id = Column(String, primary_key=True, default=_uuid)
    snapshot_id = Column(String, nullable=False, unique=True)
    user_id = Column(String, nullable=True, index=True)
    tier = Column(String, nullable=False)
    priority = Column(Integer, default=5)

    status = Column(String, nullable=False, default=JobStatus.pending.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    locked_by = Column(String, nullable=True)
    locked_until = Column(DateTime, nullable=True)

    scheduled_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    output = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_audit_jobs_status_sched", "status", "priority", "scheduled_at"),
        Index("ix_audit_jobs_locked_until", "locked_until"),
    )


class AuditStatusRecord(Base):
    __tablename__ = "audit_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(String, nullable=False, unique=True)
    job_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True)
    tier = Column(String, nullable=False)

    status = Column(String, nullable=False, default="queued")
    progress = Column(Integer, default=0)
    current_step = Column(Text, nullable=True)
    logs = Column(JSON, default=list)
    plan_data = Column(JSON, nullable=True)
    worker_progress = Column(JSON, default=list)
    token_usage = Column(JSON, default=dict)
    report_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
