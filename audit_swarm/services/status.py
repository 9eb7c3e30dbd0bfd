"""
Audit progress record.

One audit_status row per snapshot, polled by observers. Workers report
concurrently, so updates open their own sessions and are serialized per
tracker so log appends never lose lines.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from audit_swarm.models.job import AuditJob, AuditStatusRecord
from audit_swarm.utils.clock import iso_now, utcnow

logger = logging.getLogger("status")

# Progress milestones
PROGRESS_CLAIMED = 5
PROGRESS_PLANNING = 15
PROGRESS_PLANNED = 25
PROGRESS_WORKERS_DONE = 85
PROGRESS_SYNTHESIZING = 90
PROGRESS_SAVING = 95
PROGRESS_COMPLETE = 100

MAX_LOG_LINES = 500


def empty_token_usage() -> Dict[str, int]:
    """Per-attempt counts; each claim starts from zero."""
    return {"planner": 0, "workers": 0, "synthesizer": 0}


def worker_progress(done: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_WORKERS_DONE
    span = PROGRESS_WORKERS_DONE - PROGRESS_PLANNED
    return PROGRESS_PLANNED + round(span * done / total)


async def get_status(db, job_id: str, user_id: Optional[str] = None) -> Optional[AuditStatusRecord]:
    stmt = select(AuditStatusRecord).where(AuditStatusRecord.job_id == job_id)
    if user_id is not None:
        stmt = stmt.where(AuditStatusRecord.user_id == user_id)
    return (await db.execute(stmt)).scalar_one_or_none()


class StatusTracker:
    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory
        self._lock = asyncio.Lock()

    async def open(self, job: AuditJob) -> None:
        """Reset (or create) the record for a freshly submitted job."""
        fields = dict(
            job_id=job.id,
            user_id=job.user_id,
            tier=job.tier,
            status="queued",
            progress=0,
            current_step="Queued",
            logs=[f"[{iso_now()}] Audit queued ({job.tier})"],
            plan_data=None,
            worker_progress=[],
            token_usage=empty_token_usage(),
            report_data=None,
            error_message=None,
            updated_at=utcnow(),
        )
        async with self._lock:
            for attempt in range(2):
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(AuditStatusRecord).where(AuditStatusRecord.snapshot_id == job.snapshot_id)
                    )
                    record = result.scalar_one_or_none()
                    if record is None:
                        session.add(AuditStatusRecord(snapshot_id=job.snapshot_id, **fields))
                    else:
                        for key, value in fields.items():
                            setattr(record, key, value)
                    try:
                        await session.commit()
                        return
                    except IntegrityError:
                        await session.rollback()
                        if attempt:
                            raise

    async def update(
        self,
        job_id: str,
        log: Optional[str] = None,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        step: Optional[str] = None,
        **fields: Any,
    ) -> None:
        async with self._lock:
            async with self.session_factory() as session:
                record = await get_status(session, job_id)
                if record is None:
                    logger.warning(f"[job {job_id}] No status record to update")
                    return
                if log:
                    # JSON columns only persist on reassignment
                    logs = list(record.logs or []) + [f"[{iso_now()}] {log}"]
                    record.logs = logs[-MAX_LOG_LINES:]
                if status is not None:
                    record.status = status
                if progress is not None:
                    record.progress = max(record.progress or 0, progress)
                if step is not None:
                    record.current_step = step
                for key, value in fields.items():
                    setattr(record, key, value)
                record.updated_at = utcnow()
                await session.commit()

    async def add_tokens(self, job_id: str, stage: str, tokens: int) -> None:
        async with self._lock:
            async with self.session_factory() as session:
                record = await get_status(session, job_id)
                if record is None:
                    return
                usage = dict(record.token_usage or {})
                usage[stage] = usage.get(stage, 0) + tokens
                record.token_usage = usage
                await session.commit()

    async def set_worker(self, job_id: str, task_id: str, **changes: Any) -> List[Dict[str, Any]]:
        """Merge `changes` into one worker's entry; returns the full list."""
        async with self._lock:
            async with self.session_factory() as session:
                record = await get_status(session, job_id)
                if record is None:
                    return []
                entries = [dict(e) for e in (record.worker_progress or [])]
                for entry in entries:
                    if entry.get("taskId") == task_id:
                        entry.update(changes)
                record.worker_progress = entries
                record.updated_at = utcnow()
                await session.commit()
                return entries
