"""
ETag-aware file content cache keyed by (owner, repo, path, branch).

Workers fetch concurrently, so every cache operation opens its own short
session from the factory instead of sharing the caller's.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from audit_swarm.config import get_settings
from audit_swarm.models.snapshot import FileCacheEntry
from audit_swarm.services.exceptions import AuditError, GithubError
from audit_swarm.services.github_client import GitHubClient
from audit_swarm.services.telemetry import MetricsSink, NullMetricsSink
from audit_swarm.utils.clock import utcnow

logger = logging.getLogger("content_cache")
settings = get_settings()


@dataclass
class CachedContent:
    content: str
    from_cache: bool
    etag: Optional[str] = None
    size: int = 0


class ContentCache:
    def __init__(
        self,
        session_factory: Callable,
        ttl_hours: Optional[int] = None,
        max_bytes: Optional[int] = None,
        sink: Optional[MetricsSink] = None,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours or settings.FILE_CACHE_TTL_HOURS)
        self.max_bytes = max_bytes or settings.FILE_CACHE_MAX_BYTES
        self.sink = sink or NullMetricsSink()

    async def _lookup(self, owner: str, repo: str, path: str, branch: str) -> Optional[FileCacheEntry]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FileCacheEntry).where(
                    FileCacheEntry.owner == owner,
                    FileCacheEntry.repo == repo,
                    FileCacheEntry.path == path,
                    FileCacheEntry.branch == branch,
                )
            )
            return result.scalar_one_or_none()

    async def _upsert(self, owner, repo, path, branch, content, etag, sha, size) -> None:
        if size > self.max_bytes:
            logger.debug(f"[ContentCache] {path} is {size} bytes, not caching")
            return

        now = utcnow()
        values = dict(
            etag=etag,
            content_sha=sha,
            content=content,
            content_size=size,
            fetched_at=now,
            expires_at=now + self.ttl,
        )
        # Two attempts: a concurrent insert of the same key turns the second into an update
        for _ in range(2):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(FileCacheEntry).where(
                        FileCacheEntry.owner == owner,
                        FileCacheEntry.repo == repo,
                        FileCacheEntry.path == path,
                        FileCacheEntry.branch == branch,
                    )
                )
                entry = result.scalar_one_or_none()
                if entry is None:
                    session.add(FileCacheEntry(owner=owner, repo=repo, path=path, branch=branch, **values))
                else:
                    for key, value in values.items():
                        setattr(entry, key, value)
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
        logger.warning(f"[ContentCache] Could not upsert {owner}/{repo}:{path}@{branch}")

    async def fetch(self, owner: str, repo: str, path: str, branch: str, client: GitHubClient) -> CachedContent:
        entry = await self._lookup(owner, repo, path, branch)
        tags = {"repo": f"{owner}/{repo}"}

        if entry is not None and entry.expires_at > utcnow():
            try:
                resp = await client.get_contents(owner, repo, path, branch, etag=entry.etag)
            except (GithubError, AuditError, httpx.HTTPError) as e:
                logger.warning(f"[ContentCache] Conditional fetch failed for {path}, serving cached copy: {e}")
                self.sink.increment("content_cache.stale_served", tags=tags)
                return CachedContent(entry.content, from_cache=True, etag=entry.etag, size=entry.content_size or 0)

            if resp.not_modified:
                self.sink.increment("content_cache.hit", tags=tags)
                return CachedContent(entry.content, from_cache=True, etag=entry.etag, size=entry.content_size or 0)
        else:
            self.sink.increment("content_cache.miss", tags=tags)
            resp = await client.get_contents(owner, repo, path, branch)

        content = resp.content or ""
        await self._upsert(owner, repo, path, branch, content, resp.etag, resp.sha, resp.size)
        return CachedContent(content, from_cache=False, etag=resp.etag, size=resp.size)

    async def invalidate(self, owner: str, repo: str, branch: Optional[str] = None) -> int:
        async with self.session_factory() as session:
            stmt = delete(FileCacheEntry).where(FileCacheEntry.owner == owner, FileCacheEntry.repo == repo)
            if branch is not None:
                stmt = stmt.where(FileCacheEntry.branch == branch)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def purge_expired(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(delete(FileCacheEntry).where(FileCacheEntry.expires_at <= utcnow()))
            await session.commit()
            return result.rowcount or 0
