"""
Tests for the worker pool.

Covers:
- the validate → fetch → reason → parse pipeline for a single task
- typed failures (invalid paths, fetch failure, malformed output, dependency outage)
- run_all isolation: one task blowing up never takes its siblings down
- the concurrency bound and the settled callback
"""

import asyncio
import base64
import json

import httpx
import pytest
import respx

from audit_swarm.models.audit import TaskFailure, WorkerTask
from audit_swarm.services.content_cache import CachedContent, ContentCache
from audit_swarm.services.prompts import Tier
from audit_swarm.services.worker import WorkerPool

from conftest import TWELVE_FILES, ScriptedAdapter, github_client, make_routing, make_view

API = "api.github.com"

FINDINGS = {
    "issues": [{
        "severity": "high",
        "title": "Hardcoded secret",
        "description": "An API key is committed in source.",
        "file": "src/app.ts",
        "line": 3,
        "suggestion": "Load it from the environment",
    }],
    "strengths": ["Typed: uses TypeScript throughout"],
    "weaknesses": [],
    "localScore": 70,
}


def mock_file(path, text="export const key = 'sk_live_123'\n", status=200):
    if status != 200:
        return respx.route(method="GET", host=API, path=f"/repos/acme/shop/contents/{path}").mock(
            return_value=httpx.Response(status, json={"message": "nope"})
        )
    encoded = base64.b64encode(text.encode()).decode()
    return respx.route(method="GET", host=API, path=f"/repos/acme/shop/contents/{path}").mock(
        return_value=httpx.Response(200, json={
            "type": "file", "encoding": "base64", "content": encoded, "sha": "s1", "size": len(text),
        })
    )


def make_task(targets, role="Security Reviewer", task_id="t1"):
    return WorkerTask(id=task_id, role=role, instruction="Look for leaked secrets", targetFiles=targets)


class FakeContentCache:
    """Serves fixed text per path; paths in `explode` raise a non-fetch error."""

    def __init__(self, explode=(), delay=0.0):
        self.explode = set(explode)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def fetch(self, owner, repo, path, branch, client):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if path in self.explode:
                raise RuntimeError(f"disk on fire reading {path}")
            return CachedContent(f"// {path}\n", from_cache=True)
        finally:
            self.in_flight -= 1


# ═══════════════════════════════════════════════════════════════════════════
# Single task
# ═══════════════════════════════════════════════════════════════════════════

class TestRunTask:
    @pytest.mark.asyncio
    @respx.mock
    async def test_success_builds_prompt_and_findings(self, session_factory, breakers, sink):
        mock_file("src/app.ts")
        mock_file("src/index.ts", text="import './app'\n")
        adapter = ScriptedAdapter([FINDINGS])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory), sink=sink)

        async with github_client() as client:
            result = await pool.run_task(
                make_task(["src/app.ts", "src/index.ts"]), make_view(TWELVE_FILES), Tier.security, client, "job-1",
            )

        assert not result.failed
        assert result.tokenUsage == 100
        issue = result.findings.issues[0]
        assert issue.severity.value == "critical"
        assert issue.filePath == "src/app.ts"
        assert issue.remediation == "Load it from the environment"
        assert issue.taskId == "t1"
        assert result.findings.localScore == 70
        assert len(result.findings.strengths) == 1

        prompt = adapter.calls[0]["prompt"]
        assert "--- src/app.ts ---" in prompt
        assert "sk_live_123" in prompt
        assert "--- src/index.ts ---" in prompt
        assert "Security Reviewer" in adapter.calls[0]["system_prompt"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_paths_outside_the_snapshot_fail_without_any_calls(self, session_factory, breakers):
        adapter = ScriptedAdapter([FINDINGS])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory))

        async with github_client() as client:
            result = await pool.run_task(
                make_task(["lib/ghost.py", "lib/other.py"]), make_view(TWELVE_FILES), Tier.shape, client,
            )

        assert isinstance(result.findings, TaskFailure)
        assert result.findings.error == "INVALID_FILE_PATHS"
        assert result.findings.filesAttempted == ["lib/ghost.py", "lib/other.py"]
        assert adapter.calls == []
        assert len(respx.calls) == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_every_fetch_failing_skips_the_reasoning_call(self, session_factory, breakers):
        mock_file("src/app.ts", status=401)
        mock_file("src/index.ts", status=401)
        adapter = ScriptedAdapter([FINDINGS])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory))

        async with github_client() as client:
            result = await pool.run_task(
                make_task(["src/app.ts", "src/index.ts"]), make_view(TWELVE_FILES), Tier.shape, client,
            )

        assert result.findings.error == "FILE_FETCH_FAILED"
        assert "authentication" in result.findings.message
        assert sorted(result.findings.filesAttempted) == ["src/app.ts", "src/index.ts"]
        assert adapter.calls == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_partial_fetch_failure_still_analyzes(self, session_factory, breakers):
        mock_file("src/app.ts")
        mock_file("src/index.ts", status=404)
        adapter = ScriptedAdapter([FINDINGS])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory))

        async with github_client() as client:
            result = await pool.run_task(
                make_task(["src/app.ts", "src/index.ts"]), make_view(TWELVE_FILES), Tier.shape, client,
            )

        assert not result.failed
        prompt = adapter.calls[0]["prompt"]
        assert "--- src/app.ts ---" in prompt
        assert "src/index.ts" not in prompt

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_output_is_retried_then_fails(self, session_factory, breakers, sink):
        mock_file("src/app.ts")
        adapter = ScriptedAdapter(["I think the code is fine.", "Still no JSON, sorry."])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory), sink=sink, parse_attempts=2)

        async with github_client() as client:
            result = await pool.run_task(make_task(["src/app.ts"]), make_view(TWELVE_FILES), Tier.shape, client)

        assert result.findings.error == "MALFORMED_MODEL_OUTPUT"
        assert result.tokenUsage == 200
        assert len(adapter.calls) == 2
        assert sink.counters["worker.malformed"] == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_then_valid_succeeds(self, session_factory, breakers):
        mock_file("src/app.ts")
        adapter = ScriptedAdapter(["not json", f"```json\n{json.dumps(FINDINGS)}\n```"])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory), parse_attempts=2)

        async with github_client() as client:
            result = await pool.run_task(make_task(["src/app.ts"]), make_view(TWELVE_FILES), Tier.shape, client)

        assert not result.failed
        assert result.tokenUsage == 200
        assert result.findings.issues[0].title == "Hardcoded secret"

    @pytest.mark.asyncio
    @respx.mock
    async def test_reasoning_outage_is_a_typed_failure(self, session_factory, breakers):
        mock_file("src/app.ts")
        adapter = ScriptedAdapter([RuntimeError("provider exploded")])
        pool = WorkerPool(make_routing(adapter, breakers), ContentCache(session_factory))

        async with github_client() as client:
            result = await pool.run_task(make_task(["src/app.ts"]), make_view(TWELVE_FILES), Tier.shape, client)

        assert result.findings.error == "DEPENDENCY_UNAVAILABLE"
        assert result.findings.filesAttempted == ["src/app.ts"]


# ═══════════════════════════════════════════════════════════════════════════
# Pool
# ═══════════════════════════════════════════════════════════════════════════

class TestRunAll:
    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, breakers, sink):
        cache = FakeContentCache(explode={"src/app.ts"})
        adapter = ScriptedAdapter(handler=lambda prompt, system: FINDINGS)
        pool = WorkerPool(make_routing(adapter, breakers), cache, sink=sink)
        tasks = [
            make_task(["src/app.ts"], role="Boom", task_id="a"),
            make_task(["src/index.ts"], role="Entry", task_id="b"),
            make_task(["README.md"], role="Docs", task_id="c"),
        ]

        results = await pool.run_all(tasks, make_view(TWELVE_FILES), Tier.shape, client=None)

        assert [r.taskId for r in results] == ["a", "b", "c"]
        assert results[0].findings.error == "WORKER_ERROR"
        assert "disk on fire" in results[0].findings.message
        assert not results[1].failed
        assert not results[2].failed
        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_settled_callback_sees_every_task_and_its_errors_are_tolerated(self, breakers):
        adapter = ScriptedAdapter(handler=lambda prompt, system: FINDINGS)
        pool = WorkerPool(make_routing(adapter, breakers), FakeContentCache())
        seen = []

        async def on_settled(task, result):
            seen.append(task.id)
            if task.id == "b":
                raise RuntimeError("status store down")

        tasks = [make_task(["src/app.ts"], task_id="a"), make_task(["src/index.ts"], task_id="b")]
        results = await pool.run_all(tasks, make_view(TWELVE_FILES), Tier.shape, None, on_settled=on_settled)

        assert sorted(seen) == ["a", "b"]
        assert not any(r.failed for r in results)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, breakers):
        cache = FakeContentCache(delay=0.01)
        adapter = ScriptedAdapter(handler=lambda prompt, system: FINDINGS)
        pool = WorkerPool(make_routing(adapter, breakers), cache, concurrency=2)
        paths = sorted(TWELVE_FILES)[:6]
        tasks = [make_task([p], task_id=f"t{i}") for i, p in enumerate(paths)]

        results = await pool.run_all(tasks, make_view(TWELVE_FILES), Tier.shape, None)

        assert len(results) == 6
        assert cache.peak <= 2
