"""
Job queue backed by the audit_jobs table.

State machine:
    pending → processing → succeeded
                        → pending (requeued, attempts remaining)
                        → failed  (attempts exhausted or non-retryable)

Every transition is a single conditional UPDATE so concurrent processors
and submitters never need a lock beyond the row itself. `attempts` is
incremented when a lease is claimed, so a processor that dies mid-run
still consumes the attempt.
"""

import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from audit_swarm.config import get_settings
from audit_swarm.models.job import AuditJob, AuditStatusRecord, JobStatus, TERMINAL_STATUSES
from audit_swarm.services.exceptions import JobConflict, SnapshotInvalid, SnapshotStale
from audit_swarm.services.telemetry import MetricsSink, NullMetricsSink
from audit_swarm.utils.clock import utcnow

logger = logging.getLogger("job_queue")
settings = get_settings()

NON_RETRYABLE_JOB_ERRORS = (SnapshotInvalid, SnapshotStale)


def requeue_delay(attempts: int, base: Optional[float] = None) -> timedelta:
    base = settings.JOB_RETRY_BACKOFF_SECONDS if base is None else base
    return timedelta(seconds=base * 2 ** max(attempts - 1, 0))


class JobQueueService:
    def __init__(self, db: AsyncSession, sink: Optional[MetricsSink] = None):
        self.db = db
        self.sink = sink or NullMetricsSink()

    # ─── Reads ──────────────────────────────────────────

    async def get(self, job_id: str, user_id: Optional[str] = None) -> Optional[AuditJob]:
        stmt = select(AuditJob).where(AuditJob.id == job_id).execution_options(populate_existing=True)
        if user_id is not None:
            stmt = stmt.where(AuditJob.user_id == user_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_by_snapshot(self, snapshot_id: str) -> Optional[AuditJob]:
        stmt = (
            select(AuditJob)
            .where(AuditJob.snapshot_id == snapshot_id)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    def _replaceable(self, now):
        """A row may be overwritten when terminal, or when live but stalled past the freshness window."""
        cutoff = now - timedelta(minutes=settings.JOB_STALE_MINUTES)
        return or_(
            AuditJob.status.in_(TERMINAL_STATUSES),
            and_(
                AuditJob.updated_at < cutoff,
                or_(AuditJob.locked_until.is_(None), AuditJob.locked_until < now),
            ),
        )

    async def find_live(self, snapshot_id: str) -> Optional[AuditJob]:
        """The job currently occupying this snapshot, if any."""
        now = utcnow()
        stmt = (
            select(AuditJob)
            .where(AuditJob.snapshot_id == snapshot_id)
            .where(~self._replaceable(now))
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    # ─── Submission ─────────────────────────────────────

    async def submit(
        self,
        snapshot_id: str,
        tier: str,
        user_id: Optional[str] = None,
        priority: int = 5,
        max_attempts: Optional[int] = None,
    ) -> AuditJob:
        """
        Upsert the job row for a snapshot, resetting every prior run
        artifact. Raises JobConflict when a live job already holds it.
        """
        now = utcnow()
        job_id = str(uuid.uuid4())
        values = dict(
            id=job_id,
            user_id=user_id,
            tier=tier,
            priority=priority,
            status=JobStatus.pending.value,
            attempts=0,
            max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
            locked_by=None,
            locked_until=None,
            scheduled_at=now,
            started_at=None,
            completed_at=None,
            last_error=None,
            output=None,
            created_at=now,
            updated_at=now,
        )

        result = await self.db.execute(
            update(AuditJob)
            .where(AuditJob.snapshot_id == snapshot_id)
            .where(self._replaceable(now))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.db.commit()
            logger.info(f"[JobQueue] Reset job row for snapshot {snapshot_id} → {job_id}")
            self.sink.increment("jobs.submitted", tags={"tier": tier})
            return await self.get(job_id)

        existing = await self.get_by_snapshot(snapshot_id)
        if existing is not None:
            await self.db.rollback()
            self.sink.increment("jobs.conflicts")
            raise JobConflict(existing.id, existing.status)

        self.db.add(AuditJob(snapshot_id=snapshot_id, **values))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_by_snapshot(snapshot_id)
            self.sink.increment("jobs.conflicts")
            raise JobConflict(existing.id if existing else "", existing.status if existing else "pending")

        logger.info(f"[JobQueue] Created job {job_id} for snapshot {snapshot_id}")
        self.sink.increment("jobs.submitted", tags={"tier": tier})
        return await self.get(job_id)

    # ─── Leases ─────────────────────────────────────────

    async def claim(self, job_id: str, worker_id: str) -> Optional[AuditJob]:
        """Acquire the lease: succeeds only if the job is due, or its previous lease lapsed."""
        now = utcnow()
        result = await self.db.execute(
            update(AuditJob)
            .where(
                AuditJob.id == job_id,
                AuditJob.attempts < AuditJob.max_attempts,
                or_(
                    and_(AuditJob.status == JobStatus.pending.value, AuditJob.scheduled_at <= now),
                    and_(AuditJob.status == JobStatus.processing.value, AuditJob.locked_until < now),
                ),
            )
            .values(
                status=JobStatus.processing.value,
                attempts=AuditJob.attempts + 1,
                locked_by=worker_id,
                locked_until=now + timedelta(seconds=settings.JOB_LEASE_SECONDS),
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return None

        job = await self.get(job_id)
        logger.info(f"[job {job_id}] Claimed by {worker_id} (attempt {job.attempts}/{job.max_attempts})")
        self.sink.increment("jobs.claimed")
        return job

    async def due_job_ids(self, limit: int) -> List[str]:
        now = utcnow()
        result = await self.db.execute(
            select(AuditJob.id)
            .where(
                AuditJob.status == JobStatus.pending.value,
                AuditJob.scheduled_at <= now,
                AuditJob.attempts < AuditJob.max_attempts,
            )
            .order_by(AuditJob.priority.desc(), AuditJob.scheduled_at)
            .limit(limit)
        )
        return [row[0] for row in result.all()]

    async def claim_next(self, worker_id: str) -> Optional[AuditJob]:
        for job_id in await self.due_job_ids(limit=5):
            job = await self.claim(job_id, worker_id)
            if job is not None:
                return job
        return None

    async def extend_lease(self, job_id: str, worker_id: str) -> bool:
        now = utcnow()
        result = await self.db.execute(
            update(AuditJob)
            .where(
                AuditJob.id == job_id,
                AuditJob.status == JobStatus.processing.value,
                AuditJob.locked_by == worker_id,
            )
            .values(locked_until=now + timedelta(seconds=settings.JOB_LEASE_SECONDS), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ─── Terminal transitions ───────────────────────────

    async def complete(self, job_id: str, worker_id: str, output: dict) -> bool:
        now = utcnow()
        result = await self.db.execute(
            update(AuditJob)
            .where(
                AuditJob.id == job_id,
                AuditJob.status == JobStatus.processing.value,
                AuditJob.locked_by == worker_id,
            )
            .values(
                status=JobStatus.succeeded.value,
                output=output,
                completed_at=now,
                locked_by=None,
                locked_until=None,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.warning(f"[job {job_id}] Lease lost before completion; result discarded")
            return False
        self.sink.increment("jobs.succeeded")
        return True

    async def fail(self, job_id: str, worker_id: str, error: BaseException) -> Optional[str]:
        """
        Record a job-level failure. Requeues with exponential delay while
        attempts remain; otherwise, or for non-retryable errors, fails the
        job terminally. Returns the new status, or None if the lease was lost.
        """
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.processing.value or job.locked_by != worker_id:
            logger.warning(f"[job {job_id}] Lease lost before failure could be recorded: {error}")
            return None

        now = utcnow()
        message = f"{type(error).__name__}: {error}"
        terminal = job.attempts >= job.max_attempts or isinstance(error, NON_RETRYABLE_JOB_ERRORS)

        if terminal:
            values = dict(
                status=JobStatus.failed.value,
                completed_at=now,
            )
        else:
            values = dict(
                status=JobStatus.pending.value,
                scheduled_at=now + requeue_delay(job.attempts),
            )

        result = await self.db.execute(
            update(AuditJob)
            .where(
                AuditJob.id == job_id,
                AuditJob.status == JobStatus.processing.value,
                AuditJob.locked_by == worker_id,
            )
            .values(locked_by=None, locked_until=None, last_error=message, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return None

        if terminal:
            logger.error(f"[job {job_id}] Failed terminally after {job.attempts} attempts: {message}")
            self.sink.increment("jobs.failed")
        else:
            logger.warning(
                f"[job {job_id}] Attempt {job.attempts}/{job.max_attempts} failed, "
                f"requeued for {values['scheduled_at'].isoformat()}: {message}"
            )
            self.sink.increment("jobs.requeued")
        return values["status"]

    # ─── Maintenance ────────────────────────────────────

    async def recover_stale(self) -> List[Tuple[str, str]]:
        """Return expired-lease jobs to pending, or fail them when no attempts remain."""
        now = utcnow()
        result = await self.db.execute(
            select(AuditJob.id, AuditJob.attempts, AuditJob.max_attempts).where(
                AuditJob.status == JobStatus.processing.value,
                AuditJob.locked_until < now,
            )
        )
        recovered: List[Tuple[str, str]] = []
        for job_id, attempts, max_attempts in result.all():
            exhausted = attempts >= max_attempts
            values = (
                dict(status=JobStatus.failed.value, completed_at=now,
                     last_error="Lease expired during final attempt")
                if exhausted else
                dict(status=JobStatus.pending.value, scheduled_at=now,
                     last_error="Lease expired; processor presumed dead")
            )
            res = await self.db.execute(
                update(AuditJob)
                .where(
                    AuditJob.id == job_id,
                    AuditJob.status == JobStatus.processing.value,
                    AuditJob.locked_until < now,
                )
                .values(locked_by=None, locked_until=None, updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                recovered.append((job_id, values["status"]))
                logger.warning(f"[job {job_id}] Stale lease recovered → {values['status']}")
        await self.db.commit()
        if recovered:
            self.sink.increment("jobs.recovered", value=len(recovered))
        return recovered

    async def cleanup(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            select(AuditJob.id).where(
                AuditJob.status.in_(TERMINAL_STATUSES),
                AuditJob.updated_at < cutoff,
            )
        )
        job_ids = [row[0] for row in result.all()]
        if not job_ids:
            return 0
        await self.db.execute(delete(AuditStatusRecord).where(AuditStatusRecord.job_id.in_(job_ids)))
        await self.db.execute(delete(AuditJob).where(AuditJob.id.in_(job_ids)))
        await self.db.commit()
        logger.info(f"[JobQueue] Cleaned up {len(job_ids)} jobs older than {days} days")
        return len(job_ids)
