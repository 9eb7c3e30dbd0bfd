"""
Tests for report synthesis.

Covers:
- health score formula and its monotonicity in critical findings
- deduplication, severity ordering and cross-file concerns
- the all-failed neutral report
- summary prose from the reasoning service, and when it is skipped
"""

import pytest

from audit_swarm.models.audit import Findings, Issue, RiskLevel, Severity, TaskFailure, WorkerResult
from audit_swarm.services.exceptions import DependencyUnavailable
from audit_swarm.services.prompts import Tier
from audit_swarm.services.synthesizer import (
    Synthesizer,
    calculate_health_score,
    cross_file_concerns,
    deduplicate,
    issue_key,
    normalize_title,
    risk_level_for,
    sort_issues,
)

from conftest import ScriptedAdapter, make_routing


def issue(title, severity=Severity.warning, path="src/app.ts", description="", **extra):
    return Issue(id=title[:8], title=title, severity=severity, filePath=path, description=description, **extra)


def ok(task_id, *issues, flags=(), strengths=()):
    return WorkerResult(
        taskId=task_id,
        role=f"Reviewer {task_id}",
        findings=Findings.from_raw({
            "issues": [i.model_dump(mode="json") for i in issues],
            "crossFileFlags": list(flags),
            "strengths": list(strengths),
        }, task_id=task_id),
        tokenUsage=100,
    )


def failed(task_id, error="FILE_FETCH_FAILED"):
    return WorkerResult(
        taskId=task_id,
        role=f"Reviewer {task_id}",
        findings=TaskFailure(error=error, message="nothing came back", filesAttempted=["src/app.ts"]),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestScoring:
    def test_clean_repo_scores_full_marks(self):
        assert calculate_health_score([], 12) == 100

    def test_score_matches_log_normalized_weights(self):
        # 10 criticals at weight 5 over ln(12 + 8)
        issues = [issue(f"c{i}", Severity.critical, path=f"f{i}.ts") for i in range(10)]
        assert calculate_health_score(issues, 12) == 83

    def test_more_criticals_never_raise_the_score(self):
        previous = 100
        for n in range(0, 60, 5):
            issues = [issue(f"c{i}", Severity.critical, path=f"f{i}.ts") for i in range(n)]
            score = calculate_health_score(issues, 40)
            assert score <= previous
            assert 0 <= score <= 100
            previous = score

    def test_score_is_clamped_at_zero(self):
        issues = [issue(f"c{i}", Severity.critical, path=f"f{i}.ts") for i in range(500)]
        assert calculate_health_score(issues, 1) == 0

    @pytest.mark.parametrize("score,level", [
        (10, RiskLevel.critical),
        (55, RiskLevel.high),
        (80, RiskLevel.medium),
        (95, RiskLevel.low),
    ])
    def test_risk_levels(self, score, level):
        assert risk_level_for(score) is level


class TestDeduplication:
    def test_same_title_and_path_collapse_to_longest_description(self):
        issues = [
            issue("SQL Injection.", description="short"),
            issue("  sql   injection ", description="a much longer explanation"),
            issue("SQL injection", path="src/other.ts"),
        ]
        result = deduplicate(issues)
        assert len(result) == 2
        assert result[0].description == "a much longer explanation"

    def test_dedup_is_idempotent(self):
        issues = [issue("A"), issue("a"), issue("B"), issue("B", path="./src/app.ts")]
        once = deduplicate(issues)
        assert deduplicate(once) == once
        assert len(once) == 2

    def test_dotfiles_keep_their_own_key(self):
        issues = [
            issue("Secret committed", path=".env"),
            issue("Secret committed", path="env"),
            issue("Secret committed", path="./.github/workflows/ci.yml"),
            issue("Secret committed", path="github/workflows/ci.yml"),
            issue("Secret committed", path=".github/workflows/ci.yml"),
        ]
        keys = {issue_key(i) for i in deduplicate(issues)}
        assert {path for _, path in keys} == {".env", "env", ".github/workflows/ci.yml", "github/workflows/ci.yml"}

    def test_sort_puts_critical_first_and_is_stable(self):
        issues = [
            issue("i1", Severity.info),
            issue("w1", Severity.warning),
            issue("c1", Severity.critical),
            issue("w2", Severity.warning),
        ]
        assert [i.title for i in sort_issues(issues)] == ["c1", "w1", "w2", "i1"]

    def test_normalize_title(self):
        assert normalize_title("  Missing   RLS policy!  ") == "missing rls policy"


class TestCrossFileConcerns:
    def test_concern_needs_two_distinct_tasks(self):
        results = [
            ok("a", issue("Hardcoded secret", path="src/a.ts"), issue("Hardcoded secret", path="src/b.ts")),
            ok("b", issue("Unvalidated input")),
        ]
        assert cross_file_concerns(results) == []

    def test_titles_and_flags_both_count(self):
        results = [
            ok("a", issue("Hardcoded secret", path="src/a.ts"), flags=["No rate limiting"]),
            ok("b", issue("hardcoded secret", path="src/b.ts")),
            ok("c", flags=["no rate limiting"]),
            failed("d"),
        ]
        assert sorted(cross_file_concerns(results)) == ["Hardcoded secret", "No rate limiting"]


# ═══════════════════════════════════════════════════════════════════════════
# Report
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildReport:
    def test_all_failed_is_neutral_and_incomplete(self):
        report = Synthesizer().build_report([failed("a"), failed("b", "INVALID_FILE_PATHS")], file_count=12)
        assert report.healthScore == 50
        assert report.analysisComplete is False
        assert report.productionReady is False
        assert report.summary.startswith("Analysis incomplete")
        assert report.issues == []
        assert [t["error"] for t in report.failedTasks] == ["FILE_FETCH_FAILED", "INVALID_FILE_PATHS"]

    def test_merges_sorts_and_penalizes_shared_concerns(self):
        results = [
            ok("a", issue("Hardcoded secret", Severity.critical, path="src/a.ts"), issue("Long function")),
            ok("b", issue("Hardcoded secret", Severity.critical, path="src/b.ts"), issue("Long function")),
            failed("c"),
        ]
        report = Synthesizer().build_report(results, file_count=12)

        titles = [i.title for i in report.issues]
        assert titles[:2] == ["Hardcoded secret", "Hardcoded secret"]
        assert titles.count("Long function") == 1
        assert sorted(report.crossFileFlags) == ["Hardcoded secret", "Long function"]

        unpenalized = calculate_health_score(report.issues, 12)
        assert report.healthScore == unpenalized - 4
        assert report.analysisComplete is False
        assert report.workerCount == 3
        assert "1 of 3 analysis tasks did not complete" in report.summary

    def test_production_ready_threshold(self):
        report = Synthesizer().build_report([ok("a", issue("Minor nit", Severity.info))], file_count=30)
        assert report.healthScore > 80
        assert report.productionReady is True
        assert report.riskLevel is RiskLevel.low

    def test_strengths_are_merged_without_duplicates(self):
        results = [
            ok("a", strengths=["Typed: strict TS", "Tests: good coverage"]),
            ok("b", strengths=["typed: also strict"]),
        ]
        report = Synthesizer().build_report(results, file_count=5)
        assert [h.title for h in report.topStrengths] == ["Typed", "Tests"]


class TestSynthesize:
    @pytest.mark.asyncio
    async def test_summary_comes_from_reasoning_but_score_does_not(self, breakers):
        adapter = ScriptedAdapter([{"summary": "Solid codebase with one leaked key.", "healthScore": 3}])
        synth = Synthesizer(make_routing(adapter, breakers))
        results = [ok("a", issue("Hardcoded secret", Severity.critical))]

        report, tokens = await synth.synthesize(results, 12, Tier.shape, job_id="job-1")

        assert report.summary == "Solid codebase with one leaked key."
        assert report.healthScore == calculate_health_score(report.issues, 12)
        assert tokens == 100
        assert "Hardcoded secret" in adapter.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_reasoning_skipped_when_everything_failed(self, breakers):
        adapter = ScriptedAdapter([{"summary": "should not be used"}])
        synth = Synthesizer(make_routing(adapter, breakers))

        report, tokens = await synth.synthesize([failed("a")], 12, Tier.shape)

        assert adapter.calls == []
        assert tokens == 0
        assert report.summary.startswith("Analysis incomplete")

    @pytest.mark.asyncio
    async def test_unusable_summary_keeps_computed_prose(self, breakers):
        adapter = ScriptedAdapter(["no json here"])
        synth = Synthesizer(make_routing(adapter, breakers))
        report, tokens = await synth.synthesize([ok("a", issue("Nit", Severity.info))], 12, Tier.shape)
        assert report.summary.startswith("Health score")
        assert tokens == 100

    @pytest.mark.asyncio
    async def test_reasoning_outage_keeps_computed_prose(self, breakers):
        adapter = ScriptedAdapter([DependencyUnavailable("groq")])
        synth = Synthesizer(make_routing(adapter, breakers))
        report, tokens = await synth.synthesize([ok("a", issue("Nit", Severity.info))], 12, Tier.shape)
        assert report.summary.startswith("Health score")
        assert tokens == 0
