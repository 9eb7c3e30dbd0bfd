"""
Audit Processor.

Drives one job through claim → plan → workers → synthesize → save. Every
job-level failure goes back through JobQueueService.fail, which decides
between requeue and terminal failure; task-level failures never fail the
job on their own.
"""

import asyncio
import logging
import socket
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from audit_swarm.config import get_settings
from audit_swarm.models.audit import SnapshotView, SwarmPlan, WorkerResult, WorkerTask
from audit_swarm.models.job import AuditJob, JobStatus
from audit_swarm.services.content_cache import ContentCache
from audit_swarm.services.credentials import CredentialStore
from audit_swarm.services.exceptions import (
    DependencyUnavailable, JobConflict, PlanningFailure, SnapshotInvalid, SnapshotStale,
)
from audit_swarm.services.github_client import GitHubClient
from audit_swarm.services.job_queue import JobQueueService
from audit_swarm.services.planner import TaskPlanner
from audit_swarm.services.preflight import SnapshotService
from audit_swarm.services.prompts import Tier
from audit_swarm.services.router import RoutingService
from audit_swarm.services import status as milestones
from audit_swarm.services.status import StatusTracker
from audit_swarm.services.synthesizer import Synthesizer
from audit_swarm.services.telemetry import LoggingMetricsSink, MetricsSink
from audit_swarm.services.worker import WorkerPool

logger = logging.getLogger("processor")
settings = get_settings()


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


@dataclass
class SweepResult:
    recovered: int = 0
    processed: List[str] = field(default_factory=list)


class AuditProcessor:
    def __init__(
        self,
        session_factory: Callable,
        reasoning: Optional[RoutingService] = None,
        credentials: Optional[CredentialStore] = None,
        content_cache: Optional[ContentCache] = None,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
        sink: Optional[MetricsSink] = None,
        worker_id: Optional[str] = None,
        planner: Optional[TaskPlanner] = None,
        pool: Optional[WorkerPool] = None,
        synthesizer: Optional[Synthesizer] = None,
    ):
        self.session_factory = session_factory
        self.sink = sink or LoggingMetricsSink()
        self.reasoning = reasoning or RoutingService(sink=self.sink)
        self.credentials = credentials or CredentialStore()
        self.content_cache = content_cache or ContentCache(session_factory, sink=self.sink)
        self.client_factory = client_factory
        self.worker_id = worker_id or default_worker_id()
        self.planner = planner or TaskPlanner(self.reasoning, sink=self.sink)
        self.pool = pool or WorkerPool(self.reasoning, self.content_cache, sink=self.sink)
        self.synthesizer = synthesizer or Synthesizer(self.reasoning, sink=self.sink)
        self.status = StatusTracker(session_factory)
        self._running: Set[asyncio.Task] = set()

    # ─── Submission ─────────────────────────────────────

    async def submit(self, db, snapshot_id: str, tier: Tier, user_id: Optional[str] = None,
                     priority: int = 5, max_attempts: Optional[int] = None) -> AuditJob:
        """Enqueue a job and reset its progress record. Raises SnapshotInvalid, JobConflict or SnapshotStale."""
        snapshots = SnapshotService(db, credentials=self.credentials, content_cache=self.content_cache,
                                    client_factory=self.client_factory)
        # ownership before conflict, so a 409 never names another user's job
        if await snapshots.get_by_id(snapshot_id, user_id) is None:
            raise SnapshotInvalid(f"Snapshot {snapshot_id} not found")

        queue = JobQueueService(db, sink=self.sink)
        live = await queue.find_live(snapshot_id)
        if live is not None:
            raise JobConflict(live.id, live.status)

        await snapshots.ensure_fresh(snapshot_id, user_id)

        job = await queue.submit(snapshot_id, tier.value, user_id=user_id,
                                 priority=priority, max_attempts=max_attempts)
        await self.status.open(job)
        return job

    def nudge(self, job_id: str) -> None:
        """Start processing a just-submitted job without waiting for the sweeper."""
        task = asyncio.create_task(self.process_job(job_id))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    # ─── Processing ─────────────────────────────────────

    async def process_job(self, job_id: str) -> Optional[str]:
        """Claim and run one job. Returns its resulting status, or None if it could not be claimed."""
        async with self.session_factory() as db:
            job = await JobQueueService(db, sink=self.sink).claim(job_id, self.worker_id)
        if job is None:
            logger.info(f"[job {job_id}] Not claimable by {self.worker_id}")
            return None

        await self.status.update(
            job.id, log=f"Processing started (attempt {job.attempts}/{job.max_attempts})",
            status="processing", progress=milestones.PROGRESS_CLAIMED, step="Starting", error_message=None,
            token_usage=milestones.empty_token_usage(), worker_progress=[],
        )

        try:
            output = await self._run(job)
        except Exception as e:
            logger.exception(f"[job {job.id}] Attempt {job.attempts} failed")
            return await self._fail(job, e)

        async with self.session_factory() as db:
            completed = await JobQueueService(db, sink=self.sink).complete(job.id, self.worker_id, output)
        if not completed:
            return None

        await self.status.update(
            job.id, log="Audit complete", status="completed", progress=milestones.PROGRESS_COMPLETE,
            step="Complete", report_data=output["report"],
        )
        return JobStatus.succeeded.value

    async def _fail(self, job: AuditJob, error: Exception) -> Optional[str]:
        async with self.session_factory() as db:
            new_status = await JobQueueService(db, sink=self.sink).fail(job.id, self.worker_id, error)
        if new_status == JobStatus.failed.value:
            await self.status.update(
                job.id, log=f"Audit failed: {error}", status="failed", step="Failed", error_message=str(error),
            )
        elif new_status == JobStatus.pending.value:
            await self.status.update(
                job.id, log=f"Attempt {job.attempts} failed, retry scheduled: {error}",
                status="queued", step="Waiting to retry", error_message=str(error),
            )
        return new_status

    async def _load_snapshot(self, job: AuditJob):
        """Frozen snapshot copy plus the decrypted token for its account, if any."""
        async with self.session_factory() as db:
            snapshots = SnapshotService(db, credentials=self.credentials, content_cache=self.content_cache,
                                        client_factory=self.client_factory)
            row = await snapshots.ensure_fresh(job.snapshot_id)
            view = SnapshotView.from_row(row)
            token = None
            if view.account_ref:
                token = await self.credentials.resolve(db, view.account_ref, job.user_id)
                if token is None:
                    await snapshots.mark_stale(row)
                    raise SnapshotStale(f"Credential for snapshot {view.id} is no longer usable")
        return view, token

    async def _run(self, job: AuditJob) -> dict:
        tier = Tier(job.tier)
        view, token = await self._load_snapshot(job)

        # Plan
        await self.status.update(
            job.id, log=f"Planning audit of {view.owner}/{view.repo} ({view.file_count} files)",
            progress=milestones.PROGRESS_PLANNING, step="Planning",
        )
        plan: SwarmPlan = await self.planner.plan(view, tier, job_id=job.id)
        await self.status.add_tokens(job.id, "planner", plan.tokenUsage)
        if not plan.tasks:
            raise PlanningFailure("Planner output could not be parsed into a task list")

        await self.status.update(
            job.id,
            log=f"Plan ready: {len(plan.tasks)} tasks, {len(plan.uncoveredFiles)} files uncovered",
            progress=milestones.PROGRESS_PLANNED,
            step=f"Running {len(plan.tasks)} workers",
            plan_data=plan.model_dump(mode="json"),
            worker_progress=[
                {"taskId": t.id, "role": t.role, "files": len(t.targetFiles), "status": "running"}
                for t in plan.tasks
            ],
        )

        # Workers
        settled = 0
        lease_lock = asyncio.Lock()

        async def on_settled(task: WorkerTask, result: WorkerResult) -> None:
            nonlocal settled
            settled += 1
            state = f"failed: {result.findings.error}" if result.failed else "done"
            await self.status.set_worker(job.id, task.id, status=state, tokens=result.tokenUsage)
            await self.status.add_tokens(job.id, "workers", result.tokenUsage)
            await self.status.update(
                job.id, log=f"Worker [{task.role}] {state}",
                progress=milestones.worker_progress(settled, len(plan.tasks)),
            )
            async with lease_lock:
                async with self.session_factory() as db:
                    await JobQueueService(db).extend_lease(job.id, self.worker_id)

        async with self.client_factory(token=token) as client:
            results = await self.pool.run_all(plan.tasks, view, tier, client, job_id=job.id, on_settled=on_settled)

        failures = [r for r in results if r.failed]
        if results and len(failures) == len(results) and all(
            r.findings.error == DependencyUnavailable.code for r in failures
        ):
            raise DependencyUnavailable("reasoning", "Every worker failed because the reasoning service was unavailable")

        # Synthesize
        await self.status.update(
            job.id, log=f"Synthesizing {len(results) - len(failures)}/{len(results)} worker results",
            progress=milestones.PROGRESS_SYNTHESIZING, step="Synthesizing",
        )
        report, synth_tokens = await self.synthesizer.synthesize(results, view.file_count, tier, job_id=job.id)
        await self.status.add_tokens(job.id, "synthesizer", synth_tokens)

        await self.status.update(job.id, log="Saving report", progress=milestones.PROGRESS_SAVING, step="Saving")
        worker_tokens = sum(r.tokenUsage for r in results)
        return {
            "report": report.model_dump(mode="json"),
            "plan": plan.model_dump(mode="json"),
            "workerResults": [r.model_dump(mode="json") for r in results],
            "tokenUsage": {
                "planner": plan.tokenUsage,
                "workers": worker_tokens,
                "synthesizer": synth_tokens,
            },
        }

    # ─── Sweeping ───────────────────────────────────────

    async def process_next(self) -> Optional[str]:
        async with self.session_factory() as db:
            job_ids = await JobQueueService(db).due_job_ids(limit=5)
        for job_id in job_ids:
            if await self.process_job(job_id) is not None:
                return job_id
        return None

    async def recover(self) -> int:
        async with self.session_factory() as db:
            recovered = await JobQueueService(db, sink=self.sink).recover_stale()
        for job_id, new_status in recovered:
            if new_status == JobStatus.failed.value:
                await self.status.update(job_id, log="Lease expired during final attempt", status="failed",
                                         step="Failed", error_message="Lease expired during final attempt")
            else:
                await self.status.update(job_id, log="Lease expired; job requeued", status="queued",
                                         step="Waiting to retry")
        return len(recovered)

    async def sweep(self, batch_size: Optional[int] = None) -> SweepResult:
        """Recover expired leases, then process up to `batch_size` due jobs."""
        result = SweepResult(recovered=await self.recover())
        for _ in range(batch_size or settings.SWEEP_BATCH_SIZE):
            job_id = await self.process_next()
            if job_id is None:
                break
            result.processed.append(job_id)
        if result.recovered or result.processed:
            logger.info(f"[Sweeper] Recovered {result.recovered}, processed {len(result.processed)}")
        return result


async def run_sweeper(processor: AuditProcessor, interval: Optional[float] = None) -> None:
    interval = interval or settings.SWEEP_INTERVAL_SECONDS
    logger.info(f"[Sweeper] Started ({processor.worker_id}, every {interval:.0f}s)")
    while True:
        try:
            await processor.sweep()
        except Exception as e:
            logger.error(f"[Sweeper] Sweep failed: {e}")
        await asyncio.sleep(interval)
