"""
Worker Pool.

Each task runs validate → fetch → reason → parse, short-circuiting to a
typed TaskFailure at the first violation. All tasks of a job run
concurrently under a semaphore; one task failing never cancels its
siblings, and the pool only returns once every task has settled.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import httpx

from audit_swarm.config import get_settings
from audit_swarm.models.api import ReasoningRequest
from audit_swarm.models.audit import Findings, SnapshotView, TaskFailure, WorkerResult, WorkerTask
from audit_swarm.services.content_cache import ContentCache
from audit_swarm.services.exceptions import (
    AuditError,
    DependencyUnavailable,
    FileFetchFailed,
    GithubError,
    InvalidFilePaths,
    MalformedModelOutput,
)
from audit_swarm.services.extraction import extract_json
from audit_swarm.services.github_client import GitHubClient
from audit_swarm.services.prompts import COST_PROFILES, WORKER_SYSTEM_PROMPT, Tier, budget_for_role
from audit_swarm.services.router import RoutingService
from audit_swarm.services.telemetry import MetricsSink, NullMetricsSink

logger = logging.getLogger("worker")
settings = get_settings()

SettledCallback = Callable[[WorkerTask, WorkerResult], Awaitable[None]]


def _failure(task: WorkerTask, error: AuditError, files: Optional[List[str]] = None, tokens: int = 0) -> WorkerResult:
    return WorkerResult(
        taskId=task.id,
        role=task.role,
        findings=TaskFailure(error=error.code, message=error.message, filesAttempted=files or []),
        tokenUsage=tokens,
    )


class WorkerPool:
    def __init__(
        self,
        reasoning: RoutingService,
        content_cache: ContentCache,
        sink: Optional[MetricsSink] = None,
        concurrency: Optional[int] = None,
        max_prompt_chars: Optional[int] = None,
        parse_attempts: Optional[int] = None,
    ):
        self.reasoning = reasoning
        self.content_cache = content_cache
        self.sink = sink or NullMetricsSink()
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.max_prompt_chars = max_prompt_chars or settings.WORKER_MAX_PROMPT_CHARS
        self.parse_attempts = parse_attempts or settings.WORKER_PARSE_ATTEMPTS

    async def _fetch(self, snapshot: SnapshotView, path: str, client: GitHubClient) -> Optional[str]:
        try:
            fetched = await self.content_cache.fetch(snapshot.owner, snapshot.repo, path, snapshot.branch, client)
        except (GithubError, AuditError, httpx.HTTPError) as e:
            logger.warning(f"[Worker] Fetch failed for {path}: {e}")
            return None
        if not fetched.content or not fetched.content.strip():
            logger.warning(f"[Worker] Empty content for {path}")
            return None
        return fetched.content

    def _compose(self, contents: List[tuple]) -> str:
        blocks: List[str] = []
        used = 0
        omitted = 0
        for path, content in contents:
            block = f"--- {path} ---\n{content}"
            if blocks and used + len(block) > self.max_prompt_chars:
                omitted += 1
                continue
            blocks.append(block[: self.max_prompt_chars])
            used += len(block)
        header = f"CODE TO ANALYZE ({len(blocks)} files"
        header += f", {omitted} omitted for size)" if omitted else ")"
        return header + ":\n\n" + "\n\n".join(blocks)

    async def run_task(
        self,
        task: WorkerTask,
        snapshot: SnapshotView,
        tier: Tier,
        client: GitHubClient,
        job_id: Optional[str] = None,
    ) -> WorkerResult:
        tag = f"[Worker:{task.role}]"

        # 1. Validate against the snapshot's index, never the origin
        indexed = set(snapshot.paths)
        valid = [p for p in task.targetFiles if p in indexed]
        if not valid:
            logger.error(f"{tag} None of {len(task.targetFiles)} target files exist in snapshot {snapshot.id}")
            return _failure(task, InvalidFilePaths(
                f"Requested files do not exist in this repository: {', '.join(task.targetFiles[:3])}"
            ), files=task.targetFiles)

        # 2. Fetch; partial failure is tolerated, total failure is not
        fetched = await asyncio.gather(*(self._fetch(snapshot, p, client) for p in valid))
        contents = [(p, c) for p, c in zip(valid, fetched) if c is not None]
        if not contents:
            logger.error(f"{tag} Could not fetch any of {len(valid)} files; not calling the reasoning service")
            return _failure(task, FileFetchFailed(
                f"Could not retrieve content for any of the {len(valid)} requested files. "
                f"This may indicate an authentication issue for private repositories."
            ), files=valid)
        if len(contents) < len(valid):
            logger.warning(f"{tag} Fetched {len(contents)}/{len(valid)} files")

        # 3. Reason, 4. parse
        request = ReasoningRequest(
            prompt=self._compose(contents),
            system_prompt=WORKER_SYSTEM_PROMPT.format(role=task.role, instruction=task.instruction),
            max_tokens=COST_PROFILES[tier].max_output_tokens,
            reasoning_budget=budget_for_role(tier, task.role),
            temperature=0.2,
            job_id=job_id,
            stage="worker",
            role=task.role,
        )

        tokens = 0
        last_error: Optional[MalformedModelOutput] = None
        for attempt in range(1, self.parse_attempts + 1):
            try:
                result = await self.reasoning.route_request(request)
            except DependencyUnavailable as e:
                logger.error(f"{tag} Reasoning service unavailable: {e}")
                return _failure(task, e, files=[p for p, _ in contents], tokens=tokens)
            tokens += result.get("tokens_used", 0) or 0

            try:
                data = extract_json(result.get("response"))
            except MalformedModelOutput as e:
                logger.warning(f"{tag} Malformed output (attempt {attempt}/{self.parse_attempts})")
                self.sink.increment("worker.malformed", tags={"role": task.role})
                last_error = e
                continue

            findings = Findings.from_raw(data, task_id=task.id)
            logger.info(f"{tag} {len(findings.issues)} issues from {len(contents)} files ({tokens} tokens)")
            return WorkerResult(taskId=task.id, role=task.role, findings=findings, tokenUsage=tokens)

        return _failure(task, last_error or MalformedModelOutput(), files=[p for p, _ in contents], tokens=tokens)

    async def run_all(
        self,
        tasks: List[WorkerTask],
        snapshot: SnapshotView,
        tier: Tier,
        client: GitHubClient,
        job_id: Optional[str] = None,
        on_settled: Optional[SettledCallback] = None,
    ) -> List[WorkerResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(task: WorkerTask) -> WorkerResult:
            async with semaphore:
                result = await self.run_task(task, snapshot, tier, client, job_id)
            status = result.findings.error if result.failed else "ok"
            self.sink.increment("worker.settled", tags={"status": status})
            if on_settled is not None:
                try:
                    await on_settled(task, result)
                except Exception as e:
                    logger.error(f"[Worker:{task.role}] Progress update failed: {e}")
            return result

        settled = await asyncio.gather(*(_run(t) for t in tasks), return_exceptions=True)

        results: List[WorkerResult] = []
        for task, outcome in zip(tasks, settled):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.exception(f"[Worker:{task.role}] Unexpected failure", exc_info=outcome)
                outcome = WorkerResult(
                    taskId=task.id,
                    role=task.role,
                    findings=TaskFailure(error="WORKER_ERROR", message=str(outcome) or type(outcome).__name__),
                )
            results.append(outcome)
        return results
