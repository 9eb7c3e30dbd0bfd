"""
Typed shapes for planner, worker and synthesizer data.

Reasoning-service output is loosely typed. `Findings.from_raw` is the only
place raw model JSON becomes a typed value: known fields are coerced, bad
issue entries are dropped, and anything unrecognized lands in `extras`.
"""

import math
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    critical = "critical"
    warning = "warning"
    info = "info"


class RiskLevel(str, Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


SEVERITY_WEIGHTS = {Severity.critical: 5, Severity.warning: 2, Severity.info: 1}
SEVERITY_ORDER = {Severity.critical: 0, Severity.warning: 1, Severity.info: 2}

_SEVERITY_ALIASES = {
    "critical": Severity.critical,
    "high": Severity.critical,
    "error": Severity.critical,
    "warning": Severity.warning,
    "medium": Severity.warning,
    "warn": Severity.warning,
    "info": Severity.info,
    "low": Severity.info,
    "note": Severity.info,
}


def normalize_severity(value: Any) -> Severity:
    if isinstance(value, Severity):
        return value
    return _SEVERITY_ALIASES.get(str(value or "").strip().lower(), Severity.info)


class Issue(BaseModel):
    id: str
    severity: Severity = Severity.info
    category: str = "general"
    title: str
    description: str = ""
    filePath: Optional[str] = None
    line: Optional[int] = None
    badCode: Optional[str] = None
    remediation: Optional[str] = None
    taskId: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any, task_id: Optional[str] = None) -> Optional["Issue"]:
        if not isinstance(raw, dict):
            return None
        title = str(raw.get("title") or "").strip()
        if not title:
            return None

        line = raw.get("line")
        try:
            line = int(line) if line is not None else None
        except (TypeError, ValueError, OverflowError):
            line = None

        file_path = raw.get("filePath") or raw.get("file") or raw.get("path")
        remediation = raw.get("remediation") or raw.get("suggestion")
        return cls(
            id=str(raw.get("id") or uuid.uuid4().hex[:12]),
            severity=normalize_severity(raw.get("severity")),
            category=str(raw.get("category") or "general"),
            title=title,
            description=str(raw.get("description") or ""),
            filePath=str(file_path) if file_path else None,
            line=line,
            badCode=raw.get("badCode") if isinstance(raw.get("badCode"), str) else None,
            remediation=str(remediation) if remediation else None,
            taskId=task_id,
        )


class Highlight(BaseModel):
    title: str
    detail: str = ""


def normalize_highlights(items: Any) -> List[Highlight]:
    """Strings split on the first colon into title/detail; dicts keep title or area."""
    if not isinstance(items, list):
        return []
    out: List[Highlight] = []
    for item in items:
        if isinstance(item, str):
            head, sep, tail = item.partition(":")
            if sep and head.strip():
                out.append(Highlight(title=head.strip(), detail=tail.strip()))
            elif item.strip():
                out.append(Highlight(title=item.strip()))
        elif isinstance(item, dict):
            title = item.get("title") or item.get("area")
            if title:
                out.append(Highlight(title=str(title), detail=str(item.get("detail") or item.get("description") or "")))
        elif item is not None:
            out.append(Highlight(title=str(item)))
    return out


def _clamped_score(value: Any) -> Optional[int]:
    try:
        score = float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
    if score is None or math.isnan(score):
        return None
    # infinities clamp like any other out-of-range score
    return int(round(max(0.0, min(100.0, score))))


_KNOWN_FINDING_KEYS = {
    "issues", "topStrengths", "strengths", "topWeaknesses", "weaknesses",
    "localScore", "confidence", "crossFileFlags",
}


class Findings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    issues: List[Issue] = Field(default_factory=list)
    strengths: List[Highlight] = Field(default_factory=list)
    weaknesses: List[Highlight] = Field(default_factory=list)
    localScore: Optional[int] = None
    confidence: Optional[float] = None
    crossFileFlags: List[str] = Field(default_factory=list)
    extras: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, data: Dict[str, Any], task_id: Optional[str] = None) -> "Findings":
        raw_issues = data.get("issues")
        issues = []
        if isinstance(raw_issues, list):
            for raw in raw_issues:
                issue = Issue.from_raw(raw, task_id=task_id)
                if issue is not None:
                    issues.append(issue)

        score = _clamped_score(data.get("localScore"))

        confidence = data.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        if confidence is not None:
            confidence = None if math.isnan(confidence) else max(0.0, min(1.0, confidence))

        flags = data.get("crossFileFlags")
        flags = [str(f) for f in flags if f] if isinstance(flags, list) else []

        return cls(
            issues=issues,
            strengths=normalize_highlights(data.get("topStrengths", data.get("strengths"))),
            weaknesses=normalize_highlights(data.get("topWeaknesses", data.get("weaknesses"))),
            localScore=score,
            confidence=confidence,
            crossFileFlags=flags,
            extras={k: v for k, v in data.items() if k not in _KNOWN_FINDING_KEYS},
        )


class TaskFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    message: str
    filesAttempted: List[str] = Field(default_factory=list)


class WorkerTask(BaseModel):
    id: str
    role: str
    instruction: str
    targetFiles: List[str] = Field(default_factory=list)


class WorkerResult(BaseModel):
    taskId: str
    role: Optional[str] = None
    findings: Union[Findings, TaskFailure]
    tokenUsage: int = 0

    @property
    def failed(self) -> bool:
        return isinstance(self.findings, TaskFailure)


class SwarmPlan(BaseModel):
    focusArea: str = ""
    tasks: List[WorkerTask] = Field(default_factory=list)
    droppedTasks: List[str] = Field(default_factory=list)
    uncoveredFiles: List[str] = Field(default_factory=list)
    strategy: str = "swarm"
    tokenUsage: int = 0


class FinalReport(BaseModel):
    healthScore: int
    summary: str
    issues: List[Issue] = Field(default_factory=list)
    topStrengths: List[Highlight] = Field(default_factory=list)
    topWeaknesses: List[Highlight] = Field(default_factory=list)
    riskLevel: RiskLevel
    productionReady: bool
    analysisComplete: bool = True
    failedTasks: List[Dict[str, Any]] = Field(default_factory=list)
    crossFileFlags: List[str] = Field(default_factory=list)
    workerCount: int = 0


class FileEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    size: int = 0


class SnapshotView(BaseModel):
    """Read-only copy of a snapshot taken when a job starts; shared by every worker."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner: str
    repo: str
    branch: str
    files: Tuple[FileEntry, ...]
    fingerprint: Dict[str, Any] = Field(default_factory=dict)
    account_ref: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "SnapshotView":
        return cls(
            id=row.id,
            owner=row.owner,
            repo=row.repo,
            branch=row.default_branch,
            files=tuple(FileEntry(path=f["path"], size=int(f.get("size") or 0)) for f in (row.file_index or [])),
            fingerprint=dict(row.fingerprint or {}),
            account_ref=row.account_ref,
        )

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    @property
    def file_count(self) -> int:
        return len(self.files)
