"""
Synthesizer.

Merges worker results into one FinalReport. The score is always computed
here from the deduplicated issues; the reasoning service, when available,
only writes the executive summary prose.
"""

import logging
import math
import re
from typing import Dict, List, Optional, Set, Tuple

from audit_swarm.config import get_settings
from audit_swarm.models.api import ReasoningRequest
from audit_swarm.models.audit import (
    SEVERITY_ORDER,
    SEVERITY_WEIGHTS,
    FinalReport,
    Findings,
    Highlight,
    Issue,
    RiskLevel,
    Severity,
    WorkerResult,
)
from audit_swarm.services.exceptions import DependencyUnavailable, MalformedModelOutput
from audit_swarm.services.extraction import extract_json
from audit_swarm.services.prompts import COST_PROFILES, SYNTHESIZER_SYSTEM_PROMPT, Tier
from audit_swarm.services.router import RoutingService
from audit_swarm.services.telemetry import MetricsSink, NullMetricsSink

logger = logging.getLogger("synthesizer")
settings = get_settings()

_WS_RE = re.compile(r"\s+")


# ─── Pure helpers ───────────────────────────────────────

def normalize_title(title: str) -> str:
    return _WS_RE.sub(" ", (title or "").strip().lower()).rstrip(".!:;")


def issue_key(issue: Issue) -> Tuple[str, str]:
    return normalize_title(issue.title), (issue.filePath or "").strip().removeprefix("./")


def deduplicate(issues: List[Issue]) -> List[Issue]:
    """First-seen wins unless a later duplicate has a strictly longer description."""
    kept: Dict[Tuple[str, str], Issue] = {}
    for issue in issues:
        key = issue_key(issue)
        current = kept.get(key)
        if current is None or len(issue.description) > len(current.description):
            kept[key] = issue
    return list(kept.values())


def sort_issues(issues: List[Issue]) -> List[Issue]:
    return sorted(issues, key=lambda i: SEVERITY_ORDER.get(i.severity, len(SEVERITY_ORDER)))


def calculate_health_score(issues: List[Issue], file_count: int) -> int:
    raw = sum(SEVERITY_WEIGHTS.get(i.severity, 1) for i in issues)
    normalized = raw / math.log(max(file_count, 0) + 8)
    return max(0, min(100, round(100 - normalized)))


def risk_level_for(score: int) -> RiskLevel:
    if score < 50:
        return RiskLevel.critical
    if score < 70:
        return RiskLevel.high
    if score < 85:
        return RiskLevel.medium
    return RiskLevel.low


def cross_file_concerns(results: List[WorkerResult]) -> List[str]:
    """Concerns (issue titles or explicit flags) raised by more than one worker."""
    raised_by: Dict[str, Set[str]] = {}
    labels: Dict[str, str] = {}
    for result in results:
        if result.failed:
            continue
        findings: Findings = result.findings
        concerns = [i.title for i in findings.issues] + list(findings.crossFileFlags)
        for concern in concerns:
            key = normalize_title(concern)
            if not key:
                continue
            raised_by.setdefault(key, set()).add(result.taskId)
            labels.setdefault(key, concern.strip())
    return [labels[k] for k, tasks in raised_by.items() if len(tasks) > 1]


def merge_highlights(groups: List[List[Highlight]], limit: int = 5) -> List[Highlight]:
    seen = set()
    merged: List[Highlight] = []
    for group in groups:
        for item in group:
            key = normalize_title(item.title)
            if key and key not in seen:
                seen.add(key)
                merged.append(item)
    return merged[:limit]


def summarize(issues: List[Issue], score: int, failed: int, total: int) -> str:
    critical = sum(1 for i in issues if i.severity == Severity.critical)
    warnings = sum(1 for i in issues if i.severity == Severity.warning)
    if critical == 0 and warnings < 5:
        tone = "The codebase is in good shape; remaining findings are refinements rather than structural gaps."
    elif critical <= 3:
        tone = "The foundation is solid, but a handful of significant issues should be addressed before release."
    elif critical <= 7:
        tone = "Several serious issues indicate inconsistent practices that need focused remediation."
    else:
        tone = "Widespread critical issues make this codebase high-risk in its current state."
    summary = f"Health score {score}/100 with {critical} critical and {warnings} warning findings. {tone}"
    if failed:
        summary += f" {failed} of {total} analysis tasks did not complete."
    return summary


# ─── Service ────────────────────────────────────────────

class Synthesizer:
    def __init__(self, reasoning: Optional[RoutingService] = None, sink: Optional[MetricsSink] = None):
        self.reasoning = reasoning
        self.sink = sink or NullMetricsSink()

    def build_report(self, results: List[WorkerResult], file_count: int) -> FinalReport:
        usable = [r for r in results if not r.failed]
        failed = [r for r in results if r.failed]
        failed_tasks = [
            {"taskId": r.taskId, "role": r.role, "error": r.findings.error, "message": r.findings.message}
            for r in failed
        ]

        if not usable:
            score = settings.NEUTRAL_HEALTH_SCORE
            logger.warning(f"[Synthesizer] All {len(results)} tasks failed; reporting neutral score {score}")
            return FinalReport(
                healthScore=score,
                summary=(
                    f"Analysis incomplete: none of the {len(results)} analysis tasks produced usable results, "
                    f"so no health assessment could be made."
                ),
                riskLevel=risk_level_for(score),
                productionReady=False,
                analysisComplete=False,
                failedTasks=failed_tasks,
                workerCount=len(results),
            )

        all_issues = [issue for r in usable for issue in r.findings.issues]
        issues = sort_issues(deduplicate(all_issues))

        concerns = cross_file_concerns(usable)
        penalty = min(len(concerns) * settings.CROSS_FILE_PENALTY, settings.CROSS_FILE_PENALTY_CAP)
        score = max(0, calculate_health_score(issues, file_count) - penalty)

        logger.info(
            f"[Synthesizer] {len(all_issues)} issues → {len(issues)} after dedup, "
            f"{len(concerns)} cross-file concerns (-{penalty}), score {score}"
        )
        return FinalReport(
            healthScore=score,
            summary=summarize(issues, score, len(failed), len(results)),
            issues=issues,
            topStrengths=merge_highlights([r.findings.strengths for r in usable]),
            topWeaknesses=merge_highlights([r.findings.weaknesses for r in usable]),
            riskLevel=risk_level_for(score),
            productionReady=score > settings.PRODUCTION_READY_THRESHOLD,
            analysisComplete=not failed,
            failedTasks=failed_tasks,
            crossFileFlags=concerns,
            workerCount=len(results),
        )

    async def synthesize(
        self,
        results: List[WorkerResult],
        file_count: int,
        tier: Tier,
        job_id: Optional[str] = None,
    ) -> Tuple[FinalReport, int]:
        """Report plus the tokens spent writing its summary."""
        report = self.build_report(results, file_count)
        self.sink.observe("synthesizer.health_score", report.healthScore, tags={"tier": tier.value})
        # An all-failed run keeps its fixed "analysis incomplete" summary
        if self.reasoning is None or all(r.failed for r in results):
            return report, 0

        digest = "\n".join(
            f"- [{i.severity.value}] {i.title} ({i.filePath or 'n/a'})" for i in report.issues[:40]
        ) or "- no issues found"
        prompt = (
            f"Health score: {report.healthScore}/100 (computed; do not change it)\n"
            f"Risk level: {report.riskLevel.value}\n"
            f"Findings:\n{digest}\n"
            f"Strengths: {', '.join(h.title for h in report.topStrengths) or 'none'}\n"
            f"Weaknesses: {', '.join(h.title for h in report.topWeaknesses) or 'none'}"
        )
        try:
            result = await self.reasoning.route_request(ReasoningRequest(
                prompt=prompt,
                system_prompt=SYNTHESIZER_SYSTEM_PROMPT,
                max_tokens=1024,
                reasoning_budget=COST_PROFILES[tier].synthesizer_budget,
                temperature=0.3,
                job_id=job_id,
                stage="synthesizer",
                role="synthesizer",
            ))
        except DependencyUnavailable as e:
            logger.warning(f"[Synthesizer] Summary generation unavailable, keeping computed summary: {e}")
            return report, 0

        tokens = result.get("tokens_used", 0) or 0
        try:
            summary = extract_json(result.get("response")).get("summary")
        except MalformedModelOutput:
            summary = None
        if isinstance(summary, str) and summary.strip():
            report.summary = summary.strip()
            if not report.analysisComplete:
                report.summary += f" {len(report.failedTasks)} of {report.workerCount} analysis tasks did not complete."
        return report, tokens
