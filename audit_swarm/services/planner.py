"""
Task Planner.

Asks the reasoning service for a glob-pattern plan, expands every pattern
against the snapshot's file index and drops tasks left with no files.
An unparseable plan comes back empty so the processor can decide between
retry and failure; a parsed plan with no usable tasks raises
PlanningFailure. A parsed plan short of the minimum task count is topped
up with folder-batched tasks over the files it left uncovered.
"""

import logging
from typing import Any, Dict, List, Optional

from audit_swarm.config import get_settings
from audit_swarm.models.api import ReasoningRequest
from audit_swarm.models.audit import SnapshotView, SwarmPlan, WorkerTask
from audit_swarm.services.chunking import plan_by_folders
from audit_swarm.services.exceptions import MalformedModelOutput, PlanningFailure
from audit_swarm.services.extraction import extract_json
from audit_swarm.services.globbing import expand_patterns
from audit_swarm.services.prompts import COST_PROFILES, PLANNER_SYSTEM_PROMPT, TIER_BRIEFS, Tier
from audit_swarm.services.router import RoutingService
from audit_swarm.services.telemetry import MetricsSink, NullMetricsSink

logger = logging.getLogger("planner")
settings = get_settings()

MAX_FILE_MAP_CHARS = 60_000


def _file_map(snapshot: SnapshotView) -> str:
    """Newline-joined paths; very large indexes are cut and summarized per folder."""
    lines: List[str] = []
    used = 0
    for i, path in enumerate(snapshot.paths):
        if used + len(path) + 1 > MAX_FILE_MAP_CHARS:
            remaining = snapshot.paths[i:]
            folders: Dict[str, int] = {}
            for p in remaining:
                top = p.split("/", 1)[0] + "/" if "/" in p else "(root)"
                folders[top] = folders.get(top, 0) + 1
            lines.append(f"... {len(remaining)} more files:")
            lines.extend(f"  {folder} {count} files" for folder, count in sorted(folders.items()))
            break
        lines.append(path)
        used += len(path) + 1
    return "\n".join(lines)


def _as_patterns(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return []


def sanitize_plan(data: Dict[str, Any], snapshot: SnapshotView, max_tasks: int) -> SwarmPlan:
    """Expand patterns into literal indexed paths and drop tasks that match nothing."""
    valid_files = snapshot.paths
    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list):
        raw_tasks = []

    tasks: List[WorkerTask] = []
    dropped: List[str] = []
    seen_ids = set()

    for n, raw in enumerate(raw_tasks, start=1):
        if not isinstance(raw, dict):
            continue
        role = str(raw.get("role") or "Reviewer").strip()
        instruction = str(raw.get("instruction") or "").strip()
        patterns = _as_patterns(raw.get("targetFiles"))
        files = expand_patterns(patterns, valid_files)

        logger.info(f"[Planner] Task [{role}]: {len(patterns)} patterns → {len(files)} files")
        if not files or not instruction:
            logger.warning(f"[Planner] Dropping task [{role}]: no matching files or empty instruction ({patterns})")
            dropped.append(role)
            continue

        task_id = str(raw.get("id") or f"task_{n}")
        if task_id in seen_ids:
            task_id = f"{task_id}_{n}"
        seen_ids.add(task_id)
        tasks.append(WorkerTask(id=task_id, role=role, instruction=instruction, targetFiles=files))

    if len(tasks) > max_tasks:
        logger.warning(f"[Planner] Plan has {len(tasks)} tasks, keeping the first {max_tasks}")
        dropped.extend(t.role for t in tasks[max_tasks:])
        tasks = tasks[:max_tasks]

    covered = {path for t in tasks for path in t.targetFiles}
    return SwarmPlan(
        focusArea=str(data.get("focusArea") or "")[:500],
        tasks=tasks,
        droppedTasks=dropped,
        uncoveredFiles=[p for p in valid_files if p not in covered],
    )


def pad_plan(plan: SwarmPlan, snapshot: SnapshotView, tier: Tier, min_tasks: int, max_tasks: int) -> SwarmPlan:
    """Top a short plan up with folder-batched tasks over the files it left uncovered."""
    if len(plan.tasks) >= min_tasks or not plan.uncoveredFiles:
        return plan

    uncovered = set(plan.uncoveredFiles)
    rest = snapshot.model_copy(update={"files": tuple(f for f in snapshot.files if f.path in uncovered)})
    fill = plan_by_folders(rest, tier, max_tasks=max_tasks - len(plan.tasks))

    seen_ids = {t.id for t in plan.tasks}
    for n, extra in enumerate(fill.tasks, start=1):
        task_id = f"fill_{n}"
        while task_id in seen_ids:
            task_id += "_"
        seen_ids.add(task_id)
        plan.tasks.append(extra.model_copy(update={
            "id": task_id,
            "role": extra.role.replace("whole repository", "unassigned files"),
            "instruction": extra.instruction.replace("whole repository", "unassigned files"),
        }))

    logger.info(f"[Planner] Padded short plan with {len(fill.tasks)} folder tasks over {len(uncovered)} uncovered files")
    plan.uncoveredFiles = []
    return plan


class TaskPlanner:
    def __init__(
        self,
        reasoning: RoutingService,
        sink: Optional[MetricsSink] = None,
        strategy: Optional[str] = None,
        min_tasks: Optional[int] = None,
        max_tasks: Optional[int] = None,
    ):
        self.reasoning = reasoning
        self.sink = sink or NullMetricsSink()
        self.strategy = strategy or settings.PLANNER_STRATEGY
        self.min_tasks = min_tasks or settings.PLANNER_MIN_TASKS
        self.max_tasks = max_tasks or settings.PLANNER_MAX_TASKS

    async def plan(self, snapshot: SnapshotView, tier: Tier, job_id: Optional[str] = None) -> SwarmPlan:
        if snapshot.file_count == 0:
            raise PlanningFailure(f"Snapshot {snapshot.id} has no files to audit")

        if self.strategy == "folders":
            plan = plan_by_folders(snapshot, tier, self.max_tasks)
            self.sink.increment("planner.plans", tags={"strategy": "folders"})
            return plan

        return await self._plan_swarm(snapshot, tier, job_id)

    async def _plan_swarm(self, snapshot: SnapshotView, tier: Tier, job_id: Optional[str]) -> SwarmPlan:
        fp = snapshot.fingerprint or {}
        prompt = f"""PROJECT OVERVIEW:
- Repository: {snapshot.owner}/{snapshot.repo}
- Total files: {snapshot.file_count}
- Primary language: {fp.get('primary_language') or 'unknown'}
- Detected capabilities: {', '.join(k for k, v in (fp.get('capabilities') or {}).items() if v) or 'none'}
- Worker capacity: {self.min_tasks}-{self.max_tasks} parallel workers

PROJECT FILE MAP (only these files exist):
{_file_map(snapshot)}

AUDIT GOAL:
{TIER_BRIEFS[tier]}

Create {self.min_tasks}-{self.max_tasks} tasks with an even file distribution and complete coverage.
Return ONLY the JSON object."""

        profile = COST_PROFILES[tier]
        result = await self.reasoning.route_request(ReasoningRequest(
            prompt=prompt,
            system_prompt=PLANNER_SYSTEM_PROMPT.format(min_tasks=self.min_tasks, max_tasks=self.max_tasks),
            max_tokens=profile.max_output_tokens,
            reasoning_budget=profile.planner_budget,
            temperature=0.1,
            job_id=job_id,
            stage="planner",
            role="planner",
        ))
        tokens = result.get("tokens_used", 0) or 0

        try:
            data = extract_json(result.get("response"))
        except MalformedModelOutput:
            logger.error(f"[Planner] Unparseable plan for {snapshot.owner}/{snapshot.repo}; returning empty plan")
            self.sink.increment("planner.malformed")
            return SwarmPlan(tokenUsage=tokens)

        plan = sanitize_plan(data, snapshot, self.max_tasks)
        plan.tokenUsage = tokens

        if not plan.tasks:
            self.sink.increment("planner.failures")
            raise PlanningFailure(
                f"Planner produced no usable tasks ({len(plan.droppedTasks)} dropped for matching no files)"
            )

        plan = pad_plan(plan, snapshot, tier, self.min_tasks, self.max_tasks)

        if plan.uncoveredFiles:
            logger.warning(f"[Planner] {len(plan.uncoveredFiles)} files not assigned to any task")
        self.sink.increment("planner.plans", tags={"strategy": "swarm"})
        self.sink.observe("planner.tasks", len(plan.tasks))
        logger.info(f"[Planner] {len(plan.tasks)} tasks for {snapshot.owner}/{snapshot.repo} ({tier.value})")
        return plan
