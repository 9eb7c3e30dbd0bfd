"""
Tier briefs, cost profiles and the system prompts shared by planner,
workers and synthesizer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class Tier(str, Enum):
    shape = "shape"
    conventions = "conventions"
    performance = "performance"
    security = "security"
    supabase_deep_dive = "supabase_deep_dive"


TIER_ALIASES = {
    "lite": Tier.shape,
    "deep": Tier.conventions,
    "ultra": Tier.security,
}


def resolve_tier(raw: str) -> Tier:
    """Canonical tier for a submitted name. Unknown names raise ValueError."""
    value = (raw or "").strip().lower()
    if value in TIER_ALIASES:
        return TIER_ALIASES[value]
    try:
        return Tier(value)
    except ValueError:
        raise ValueError(f"Invalid tier: {raw}")


@dataclass(frozen=True)
class CostProfile:
    planner_budget: int
    worker_light_budget: int
    worker_heavy_budget: int
    synthesizer_budget: int
    max_output_tokens: int = 8192


COST_PROFILES: Dict[Tier, CostProfile] = {
    Tier.shape: CostProfile(8192, 4096, 8192, 8192),
    Tier.conventions: CostProfile(12000, 6144, 10000, 12000),
    Tier.performance: CostProfile(16000, 8192, 12000, 16000),
    Tier.security: CostProfile(20000, 8192, 16000, 20000, max_output_tokens=12288),
    Tier.supabase_deep_dive: CostProfile(20000, 8192, 16000, 20000, max_output_tokens=12288),
}

LIGHT_ROLE_KEYWORDS = ("style", "doc", "convention", "naming", "lint", "format", "readme")
HEAVY_ROLE_KEYWORDS = ("architect", "security", "lead", "principal", "synthes", "auth", "database")


def budget_for_role(tier: Tier, role: str) -> int:
    profile = COST_PROFILES[tier]
    label = (role or "").lower()
    if any(k in label for k in HEAVY_ROLE_KEYWORDS):
        return profile.worker_heavy_budget
    if any(k in label for k in LIGHT_ROLE_KEYWORDS):
        return profile.worker_light_budget
    return (profile.worker_light_budget + profile.worker_heavy_budget) // 2


# ─── Tier briefs ────────────────────────────────────────

TIER_BRIEFS: Dict[Tier, str] = {
    Tier.shape: """STRUCTURAL SHAPE REVIEW
1. Folder organization: files in logical locations, no orphaned or misplaced files.
2. Dependency hygiene: no circular or unused imports, consistent import patterns.
3. Config and environment: proper .env handling, centralized configuration.
4. Naming conventions: consistent file and folder naming.
5. Generated-code indicators: repetitive boilerplate, placeholder comments, inconsistent patterns.
6. Red flags: missing essential files, exposed secrets, poor structural choices.
Use categories: maintainability, best-practices, security.""",

    Tier.conventions: """SENIOR CRAFTSMANSHIP REVIEW
1. Type safety: strict typing, no escape hatches, proper interfaces.
2. Error handling: meaningful catching, typed errors, structured logging.
3. Code organization: separated concerns, extracted business logic, no duplication.
4. Naming and readability: self-documenting names, extracted constants.
5. Documentation of complex functions.
6. Performance awareness: memoization, lazy loading.
7. Accessibility: semantic HTML, ARIA attributes, form labels.
Use categories: maintainability, best-practices, performance, security.""",

    Tier.performance: """PERFORMANCE DEEP DIVE
1. Data fetching: N+1 patterns, repeated calls, missing caching, sequential work that could be parallel.
2. Frontend rendering: functions recreated in render, missing memoization, context-driven re-renders.
3. State: global state overuse, derived state stored, multiple sources of truth.
4. Memory leaks: subscriptions, listeners or timers never cleaned up.
5. Async anti-patterns: unawaited promises, race conditions.
6. Bundle size: heavy dependencies for small features, no code splitting.
Use category: performance.""",

    Tier.security: """SECURITY AND TRUSTWORTHINESS AUDIT
Do not evaluate style or architecture. Report only real security risks.
1. Database access control: row-level policies enabled, no over-permissive policies, no service-role bypass.
2. Authentication and authorization: token misuse, missing guards, privilege escalation, unsafe redirects.
3. API and function security: missing input validation, over-exposed data, leaking error responses, CORS, rate limiting.
4. Secrets: hardcoded keys, secrets in client bundles or logs, committed .env files.
5. Client-side security: sensitive data in local storage, XSS sinks, unescaped input.
6. Injection: SQL/NoSQL injection, path traversal, command injection.
7. Production readiness: debug bypasses, missing HTTPS enforcement, weak CSP.
Give a CWE reference where applicable. Use category: security.""",

    Tier.supabase_deep_dive: """SUPABASE DEEP DIVE
1. Row-level security on every table, with policies for SELECT, INSERT, UPDATE and DELETE.
2. Policies scoped to auth.uid(); no `true` policies on user data.
3. Edge functions: service-role usage, input validation, CORS, secret handling.
4. Migrations: ordering, idempotency, destructive changes, missing indexes.
5. Storage buckets: public exposure and bucket policies.
6. Client usage: anon key scope, session handling, realtime subscription cleanup.
Use categories: security, performance, maintainability.""",
}


# ─── System prompts ─────────────────────────────────────

PLANNER_SYSTEM_PROMPT = """You are the planner of a code audit team.
Read the audit goal and the file map, then break the goal into tasks for parallel workers.

Requirements:
- Create between {min_tasks} and {max_tasks} tasks, distributing files evenly across them.
- Map each checklist rule only to the file types it applies to. Never assign database or SQL checks to UI files, or UI checks to backend files.
- Give every task a specialized role and a detailed instruction containing only the rules relevant to its files.
- Use GLOB PATTERNS for targetFiles (for example "src/components/**", "**/*.sql"), 2-5 patterns per task. Never list individual files.
- Only reference files that appear in the file map.

Return ONLY a JSON object:
{{
  "focusArea": "1-2 sentence summary",
  "tasks": [
    {{"id": "task_1", "role": "Security Specialist", "instruction": "Check for: ...", "targetFiles": ["src/auth/**"]}}
  ]
}}"""


WORKER_SYSTEM_PROMPT = """You are a specialized code analysis agent acting as: {role}.
Other workers are analyzing other parts of the repository in parallel.

YOUR MISSION: {instruction}

Only analyze the code provided. Do not make assumptions about code you have not been shown.

Return ONLY a JSON object:
{{
  "issues": [
    {{
      "id": "unique_id",
      "severity": "critical|warning|info",
      "category": "category",
      "title": "Short title",
      "description": "Detailed explanation",
      "filePath": "path/of/file",
      "line": 42,
      "badCode": "problematic snippet",
      "remediation": "suggested fix"
    }}
  ],
  "topStrengths": ["Strength: detail"],
  "topWeaknesses": ["Weakness: detail"],
  "crossFileFlags": ["concerns that likely affect other parts of the codebase"],
  "localScore": 75,
  "confidence": 0.8
}}"""


SYNTHESIZER_SYSTEM_PROMPT = """You are the lead reviewer consolidating a multi-agent code audit.
Write a 2-3 sentence executive summary of the findings below for the repository owner.
Do not invent findings and do not assign a score.

Return ONLY a JSON object: {"summary": "..."}"""
