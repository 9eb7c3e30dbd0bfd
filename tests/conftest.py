"""Shared fixtures: per-test SQLite database, scripted reasoning adapter, recording sink."""

import json
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from audit_swarm.adapters.base import BaseModelAdapter
from audit_swarm.models import db as _request_log_models  # noqa: F401  (registers tables)
from audit_swarm.models import job as _job_models  # noqa: F401
from audit_swarm.models.audit import FileEntry, SnapshotView
from audit_swarm.models.snapshot import AccessMode, RepositorySnapshot
from audit_swarm.services.github_client import GitHubClient
from audit_swarm.services.resilience import CircuitBreaker, CircuitBreakerRegistry
from audit_swarm.services.router import RoutingService
from audit_swarm.services.telemetry import MetricsSink
from audit_swarm.utils.clock import utcnow
from audit_swarm.utils.db import Base


# ─── Database ───────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ─── Reasoning ──────────────────────────────────────────

class ScriptedAdapter(BaseModelAdapter):
    """
    Replays queued responses in order, or answers through `handler(prompt, system_prompt)`.
    Exceptions in the script are raised instead of returned.
    """

    name = "fake"

    def __init__(self, responses: Optional[List[Any]] = None, handler: Optional[Callable] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, system_prompt=None, model=None, max_tokens=None,
                       reasoning_budget=None, temperature=None):
        self.calls.append({
            "prompt": prompt,
            "system_prompt": system_prompt,
            "max_tokens": max_tokens,
            "reasoning_budget": reasoning_budget,
        })
        if self.handler is not None:
            reply = self.handler(prompt, system_prompt)
        elif self.responses:
            reply = self.responses.pop(0)
        else:
            reply = "{}"
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return {"response": reply, "model": "fake-model", "provider": self.name, "tokens_used": 100}


class RecordingSink(MetricsSink):
    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.observations: Dict[str, List[float]] = {}

    def increment(self, name, value=1, tags=None):
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name, value, tags=None):
        self.observations.setdefault(name, []).append(value)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def breakers():
    return CircuitBreakerRegistry(failure_threshold=100, reset_timeout=0)


def make_routing(adapter: BaseModelAdapter, breakers: CircuitBreakerRegistry, sink=None) -> RoutingService:
    return RoutingService(
        providers={adapter.name: adapter},
        breakers=breakers,
        sink=sink,
        cost_rates={adapter.name: 0.0},
        daily_limits={adapter.name: float("inf")},
    )


# ─── Repository origin ──────────────────────────────────

def github_client(token: Optional[str] = None) -> GitHubClient:
    """Client with its own breaker and no retry delays, for respx-mocked traffic."""
    async def no_sleep(_):
        return None
    return GitHubClient(
        token=token,
        base_url="https://api.github.com",
        breaker=CircuitBreaker("github-test", failure_threshold=100, reset_timeout=0),
        max_attempts=1,
        sleep=no_sleep,
    )


# ─── Snapshots ──────────────────────────────────────────

def make_view(paths: List[str], owner: str = "acme", repo: str = "shop", size: int = 400) -> SnapshotView:
    return SnapshotView(
        id="snap-1",
        owner=owner,
        repo=repo,
        branch="main",
        files=tuple(FileEntry(path=p, size=size) for p in sorted(paths)),
        fingerprint={"primary_language": "TypeScript", "capabilities": {"supabase": True}},
    )


TWELVE_FILES = [
    "package.json",
    "src/index.ts",
    "src/app.ts",
    "src/routes/users.ts",
    "src/routes/orders.ts",
    "src/services/billing.ts",
    "src/services/mailer.ts",
    "src/db/client.ts",
    "supabase/migrations/001_init.sql",
    "supabase/migrations/002_rls.sql",
    "tests/users.test.ts",
    "README.md",
]


async def add_snapshot(session_factory, paths: List[str], user_id: str = "user-1",
                       owner: str = "acme", repo: str = "shop", **overrides) -> RepositorySnapshot:
    row = RepositorySnapshot(
        repo_url=f"https://github.com/{owner}/{repo}",
        owner=owner,
        repo=repo,
        default_branch="main",
        file_index=[{"path": p, "size": 400, "type": "blob"} for p in sorted(paths)],
        fingerprint={"primary_language": "TypeScript"},
        stats={},
        file_count=len(paths),
        access_mode=AccessMode.public.value,
        user_id=user_id,
        token_valid=True,
        expires_at=utcnow() + timedelta(hours=24),
    )
    for key, value in overrides.items():
        setattr(row, key, value)
    async with session_factory() as session:
        session.add(row)
        await session.commit()
        await session.refresh(row)
    return row
