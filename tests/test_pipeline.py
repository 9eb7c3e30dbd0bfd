"""
End-to-end audit runs through AuditProcessor.

Covers:
- a 12-file repository audited at the shape tier, start to finish
- one worker losing every file fetch while the job still succeeds
- a reasoning outage that requeues and finally fails the job
- a revoked credential failing the job without retries
- the sweeper taking over a job whose processor died
- a plan that cannot be parsed

The reasoning service is scripted by system prompt and GitHub is mocked
with respx.
"""

import base64
from datetime import timedelta

import httpx
import pytest
import respx
from sqlalchemy import update

from audit_swarm.models.audit import Issue, Severity
from audit_swarm.models.job import AuditJob, JobStatus
from audit_swarm.services.content_cache import ContentCache
from audit_swarm.services.job_queue import JobQueueService
from audit_swarm.services.processor import AuditProcessor
from audit_swarm.services.prompts import Tier
from audit_swarm.services.status import get_status
from audit_swarm.services.synthesizer import calculate_health_score
from audit_swarm.utils.clock import utcnow

from conftest import TWELVE_FILES, ScriptedAdapter, add_snapshot, github_client, make_routing

API = "api.github.com"

PLAN = {
    "focusArea": "Overall shape of a TypeScript API with a Supabase backend",
    "tasks": [
        {"role": "API Reviewer", "instruction": "Review route structure", "targetFiles": ["src/routes/*.ts"]},
        {"role": "Service Reviewer", "instruction": "Review service boundaries", "targetFiles": ["src/services/*.ts"]},
        {"role": "Database Reviewer", "instruction": "Review schema and access",
         "targetFiles": ["supabase/**/*.sql", "src/db/*.ts"]},
        {"role": "Entry Reviewer", "instruction": "Review wiring and docs",
         "targetFiles": ["src/*.ts", "package.json", "README.md", "tests/*.ts"]},
    ],
}


CRITICAL_ISSUE = {
    "severity": "high",
    "title": "User deletion route skips authentication",
    "description": "DELETE /users/:id is mounted before the auth middleware",
    "filePath": "src/routes/users.ts",
}


def findings_for(system_prompt, critical_role=None):
    role = system_prompt.split("acting as: ", 1)[1].split(".", 1)[0]
    issues = [{
        "severity": "warning",
        "title": f"{role} finding",
        "description": "Something worth a look",
        "filePath": "src/app.ts",
    }]
    if role == critical_role:
        issues.append(CRITICAL_ISSUE)
    return {
        "issues": issues,
        "topStrengths": [f"{role}: consistent style"],
        "localScore": 80,
    }


def reasoning(plan=PLAN, worker_error=None, critical_role=None):
    """Answer planner, worker and synthesizer prompts by their system prompt."""
    def handler(prompt, system_prompt):
        if system_prompt.startswith("You are the planner"):
            return plan
        if system_prompt.startswith("You are a specialized"):
            return worker_error or findings_for(system_prompt, critical_role)
        return {"summary": "A tidy codebase with a few rough edges."}
    return ScriptedAdapter(handler=handler)


def mock_contents(denied_prefixes=()):
    for prefix in denied_prefixes:
        respx.route(method="GET", host=API, path__regex=rf"^/repos/acme/shop/contents/{prefix}").mock(
            return_value=httpx.Response(401, json={"message": "Bad credentials"})
        )
    body = "export const answer = 42\n"
    return respx.route(method="GET", host=API, path__regex=r"^/repos/acme/shop/contents/.+").mock(
        return_value=httpx.Response(200, json={
            "type": "file",
            "encoding": "base64",
            "content": base64.b64encode(body.encode()).decode(),
            "sha": "s1",
            "size": len(body),
        })
    )


def make_processor(session_factory, adapter, breakers, sink):
    return AuditProcessor(
        session_factory,
        reasoning=make_routing(adapter, breakers, sink=sink),
        content_cache=ContentCache(session_factory, sink=sink),
        client_factory=lambda token=None: github_client(token),
        sink=sink,
        worker_id="proc-1",
    )


async def submit(processor, session_factory, snapshot_id, tier=Tier.shape, **kwargs):
    async with session_factory() as db:
        job = await processor.submit(db, snapshot_id, tier, user_id="user-1", **kwargs)
        return job.id


async def load(session_factory, job_id):
    async with session_factory() as db:
        job = await JobQueueService(db).get(job_id)
        record = await get_status(db, job_id)
        return job, record


async def make_due(session_factory, job_id):
    async with session_factory() as db:
        await db.execute(update(AuditJob).where(AuditJob.id == job_id).values(scheduled_at=utcnow()))
        await db.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Happy path
# ═══════════════════════════════════════════════════════════════════════════

class TestSuccessfulAudit:
    @pytest.mark.asyncio
    @respx.mock
    async def test_twelve_file_shape_audit(self, session_factory, breakers, sink):
        mock_contents()
        adapter = reasoning(critical_role="API Reviewer")
        processor = make_processor(session_factory, adapter, breakers, sink)
        row = await add_snapshot(session_factory, TWELVE_FILES)

        job_id = await submit(processor, session_factory, row.id)
        assert await processor.process_job(job_id) == JobStatus.succeeded.value

        job, record = await load(session_factory, job_id)
        assert job.status == JobStatus.succeeded.value
        assert job.attempts == 1
        assert job.locked_by is None

        output = job.output
        assert 3 <= len(output["plan"]["tasks"]) <= 5
        assert output["plan"]["uncoveredFiles"] == []
        assert len(output["workerResults"]) == 4
        assert output["tokenUsage"] == {"planner": 100, "workers": 400, "synthesizer": 100}

        report = output["report"]
        assert report["analysisComplete"] is True
        assert report["summary"] == "A tidy codebase with a few rough edges."
        assert len(report["issues"]) == 5
        assert report["issues"][0]["severity"] == "critical"
        assert report["issues"][0]["title"] == CRITICAL_ISSUE["title"]
        assert all(i["severity"] == "warning" for i in report["issues"][1:])

        # 100 - 13 / ln(20) on twelve files; four warnings alone would give 97
        warnings_only = [Issue(id=str(n), title=f"w{n}", severity=Severity.warning) for n in range(4)]
        assert calculate_health_score(warnings_only, 12) == 97
        assert report["healthScore"] == 96
        assert report["healthScore"] < calculate_health_score(warnings_only, 12)

        assert record.status == "completed"
        assert record.progress == 100
        assert record.report_data["healthScore"] == report["healthScore"]
        assert record.token_usage == {"planner": 100, "workers": 400, "synthesizer": 100}
        assert all(w["status"] == "done" for w in record.worker_progress)
        assert any("Plan ready: 4 tasks" in line for line in record.logs)

        # planner + four workers + synthesizer
        assert len(adapter.calls) == 6

    @pytest.mark.asyncio
    @respx.mock
    async def test_one_worker_losing_its_files_does_not_fail_the_job(self, session_factory, breakers, sink):
        mock_contents(denied_prefixes=("supabase/", "src/db/"))
        processor = make_processor(session_factory, reasoning(), breakers, sink)
        row = await add_snapshot(session_factory, TWELVE_FILES)

        job_id = await submit(processor, session_factory, row.id)
        assert await processor.process_job(job_id) == JobStatus.succeeded.value

        job, record = await load(session_factory, job_id)
        failed = [r for r in job.output["workerResults"] if "error" in r["findings"]]
        assert len(failed) == 1
        assert failed[0]["role"] == "Database Reviewer"
        assert failed[0]["findings"]["error"] == "FILE_FETCH_FAILED"

        report = job.output["report"]
        assert report["analysisComplete"] is False
        assert report["failedTasks"][0]["error"] == "FILE_FETCH_FAILED"
        assert len(report["issues"]) == 3

        states = {w["role"]: w["status"] for w in record.worker_progress}
        assert states["Database Reviewer"] == "failed: FILE_FETCH_FAILED"
        assert record.status == "completed"


# ═══════════════════════════════════════════════════════════════════════════
# Job-level failures
# ═══════════════════════════════════════════════════════════════════════════

class TestFailedAudit:
    @pytest.mark.asyncio
    @respx.mock
    async def test_reasoning_outage_retries_then_fails(self, session_factory, breakers, sink):
        mock_contents()
        adapter = reasoning(worker_error=RuntimeError("503 from provider"))
        processor = make_processor(session_factory, adapter, breakers, sink)
        row = await add_snapshot(session_factory, TWELVE_FILES)
        job_id = await submit(processor, session_factory, row.id, max_attempts=3)

        outcomes = []
        for _ in range(3):
            outcomes.append(await processor.process_job(job_id))
            job, record = await load(session_factory, job_id)
            if job.status == JobStatus.pending.value:
                assert job.scheduled_at > utcnow()
                assert record.status == "queued"
                await make_due(session_factory, job_id)

        assert outcomes == [JobStatus.pending.value, JobStatus.pending.value, JobStatus.failed.value]
        job, record = await load(session_factory, job_id)
        assert job.attempts == 3
        assert job.last_error.startswith("DependencyUnavailable:")
        assert record.status == "failed"
        # counts cover the last attempt only
        assert record.token_usage == {"planner": 100, "workers": 0, "synthesizer": 0}
        assert record.error_message
        assert await processor.process_job(job_id) is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_revoked_credential_fails_without_retry(self, session_factory, breakers, sink):
        mock_contents()
        processor = make_processor(session_factory, reasoning(), breakers, sink)
        row = await add_snapshot(
            session_factory, TWELVE_FILES, access_mode="authenticated", account_ref="acct-revoked",
        )
        job_id = await submit(processor, session_factory, row.id)

        assert await processor.process_job(job_id) == JobStatus.failed.value

        job, record = await load(session_factory, job_id)
        assert job.attempts == 1
        assert job.last_error.startswith("SnapshotStale:")
        assert record.status == "failed"

    @pytest.mark.asyncio
    @respx.mock
    async def test_unparseable_plan_requeues(self, session_factory, breakers, sink):
        mock_contents()
        processor = make_processor(session_factory, reasoning(plan="no plan today"), breakers, sink)
        row = await add_snapshot(session_factory, TWELVE_FILES)
        job_id = await submit(processor, session_factory, row.id)

        assert await processor.process_job(job_id) == JobStatus.pending.value
        job, _ = await load(session_factory, job_id)
        assert job.last_error.startswith("PlanningFailure:")


# ═══════════════════════════════════════════════════════════════════════════
# Sweeper
# ═══════════════════════════════════════════════════════════════════════════

class TestSweep:
    @pytest.mark.asyncio
    @respx.mock
    async def test_sweep_recovers_and_finishes_an_abandoned_job(self, session_factory, breakers, sink):
        mock_contents()
        processor = make_processor(session_factory, reasoning(), breakers, sink)
        row = await add_snapshot(session_factory, TWELVE_FILES)
        job_id = await submit(processor, session_factory, row.id)

        # A processor that claims the job and then dies
        async with session_factory() as db:
            await JobQueueService(db).claim(job_id, "dead-proc")
            await db.execute(
                update(AuditJob).where(AuditJob.id == job_id).values(locked_until=utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        result = await processor.sweep(batch_size=3)

        assert result.recovered == 1
        assert result.processed == [job_id]
        job, record = await load(session_factory, job_id)
        assert job.status == JobStatus.succeeded.value
        assert job.attempts == 2
        assert record.status == "completed"

    @pytest.mark.asyncio
    async def test_sweep_with_nothing_to_do(self, session_factory, breakers, sink):
        processor = make_processor(session_factory, reasoning(), breakers, sink)
        result = await processor.sweep()
        assert result.recovered == 0
        assert result.processed == []
