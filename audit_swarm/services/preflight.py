"""
Repository Snapshot Resolver ("preflight").

Fetches owner/repo metadata, the file tree and a complexity fingerprint
once, and persists them as the snapshot every later stage validates
against. Repository-origin failures are raised as SnapshotResolutionError
carrying a machine-readable error code.
"""

import logging
import re
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit_swarm.config import get_settings
from audit_swarm.models.api import SnapshotAction
from audit_swarm.models.error_codes import SnapshotErrorCode
from audit_swarm.models.snapshot import AccessMode, RepositorySnapshot
from audit_swarm.services.content_cache import ContentCache
from audit_swarm.services.credentials import CredentialStore
from audit_swarm.services.exceptions import (
    AuditError,
    DependencyUnavailable,
    GithubAuthError,
    GithubError,
    GithubNotFoundError,
    GithubRateLimitError,
    SnapshotInvalid,
    SnapshotResolutionError,
    SnapshotStale,
)
from audit_swarm.services.fingerprint import build_file_index, build_fingerprint, select_sample
from audit_swarm.services.github_client import GitHubClient
from audit_swarm.utils.clock import utcnow

logger = logging.getLogger("preflight")
settings = get_settings()

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


# ─── URL parsing ────────────────────────────────────────

def parse_repo_url(url: str) -> Tuple[str, str]:
    """
    Accepts `owner/repo`, `https://github.com/owner/repo(.git)`,
    `github.com/owner/repo` and `git@github.com:owner/repo.git`.
    """
    value = (url or "").strip()
    if not value:
        raise ValueError("Repository URL is required")

    if value.startswith("git@"):
        host, _, rest = value[4:].partition(":")
        if host.lower() != "github.com" or not rest:
            raise ValueError(f"Not a GitHub repository: {url}")
        path = rest
    else:
        stripped = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", value)
        if stripped != value or "." in stripped.split("/", 1)[0]:
            host, _, path = stripped.partition("/")
            host = host.split("@")[-1].lower()
            if host not in ("github.com", "www.github.com"):
                raise ValueError(f"Not a GitHub repository: {url}")
        else:
            path = stripped

    path = path.split("?", 1)[0].split("#", 1)[0].strip("/")
    parts = path.split("/")
    if len(parts) < 2:
        raise ValueError(f"Invalid GitHub repository URL: {url}")

    owner, repo = parts[0], parts[1]
    if repo.endswith(".git"):
        repo = repo[:-4]
    if not owner or not repo or not _NAME_RE.match(owner) or not _NAME_RE.match(repo):
        raise ValueError(f"Invalid GitHub repository URL: {url}")
    return owner, repo


def normalize_repo_url(owner: str, repo: str) -> str:
    return f"https://github.com/{owner.lower()}/{repo.lower()}"


def is_snapshot_valid(snapshot: RepositorySnapshot) -> bool:
    if snapshot.expires_at is None or snapshot.expires_at <= utcnow():
        return False
    if snapshot.is_authenticated and not snapshot.token_valid:
        return False
    return True


# ─── Service ────────────────────────────────────────────

class SnapshotService:
    def __init__(
        self,
        db: AsyncSession,
        credentials: Optional[CredentialStore] = None,
        content_cache: Optional[ContentCache] = None,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
        ttl_hours: Optional[int] = None,
    ):
        self.db = db
        self.credentials = credentials or CredentialStore()
        self.content_cache = content_cache
        self.client_factory = client_factory
        self.ttl = timedelta(hours=ttl_hours or settings.SNAPSHOT_TTL_HOURS)

    async def get_by_id(self, snapshot_id: str, user_id: Optional[str] = None) -> Optional[RepositorySnapshot]:
        stmt = select(RepositorySnapshot).where(RepositorySnapshot.id == snapshot_id)
        if user_id is not None:
            stmt = stmt.where(RepositorySnapshot.user_id == user_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _find(self, repo_url: str, user_id: Optional[str]) -> Optional[RepositorySnapshot]:
        result = await self.db.execute(
            select(RepositorySnapshot).where(
                RepositorySnapshot.repo_url == repo_url,
                RepositorySnapshot.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def resolve(
        self,
        action: SnapshotAction,
        repo_url: str,
        user_id: Optional[str] = None,
        account_ref: Optional[str] = None,
    ) -> RepositorySnapshot:
        try:
            owner, repo = parse_repo_url(repo_url)
        except ValueError as e:
            raise SnapshotResolutionError(str(e), SnapshotErrorCode.INVALID_URL.value)

        if action == SnapshotAction.invalidate:
            return await self.invalidate(owner, repo, user_id)

        existing = await self._find(normalize_repo_url(owner, repo), user_id)
        if action == SnapshotAction.get and existing is not None and is_snapshot_valid(existing):
            logger.info(f"[Preflight] Cache hit for {owner}/{repo} ({existing.id})")
            return existing

        ref = account_ref or (existing.account_ref if existing is not None else None)
        return await self._build(owner, repo, user_id, ref, existing)

    async def invalidate(self, owner: str, repo: str, user_id: Optional[str]) -> RepositorySnapshot:
        existing = await self._find(normalize_repo_url(owner, repo), user_id)
        if existing is None:
            raise SnapshotResolutionError(
                f"No snapshot for {owner}/{repo}", SnapshotErrorCode.NOT_FOUND.value
            )
        await self.mark_stale(existing)
        return existing

    async def mark_stale(self, snapshot: RepositorySnapshot) -> None:
        snapshot.token_valid = False
        snapshot.expires_at = utcnow()
        await self.db.commit()
        logger.info(f"[Preflight] Snapshot {snapshot.id} invalidated")

    async def ensure_fresh(self, snapshot_id: str, user_id: Optional[str] = None) -> RepositorySnapshot:
        """Load a snapshot for submission, refreshing it synchronously when stale."""
        snapshot = await self.get_by_id(snapshot_id, user_id)
        if snapshot is None:
            raise SnapshotInvalid(f"Snapshot {snapshot_id} not found")
        if is_snapshot_valid(snapshot):
            return snapshot

        logger.info(f"[Preflight] Snapshot {snapshot_id} is stale, refreshing before queueing")
        try:
            return await self._build(snapshot.owner, snapshot.repo, snapshot.user_id, snapshot.account_ref, snapshot)
        except SnapshotResolutionError as e:
            raise SnapshotStale(f"Snapshot {snapshot_id} is stale and could not be refreshed: {e.message}") from e

    # ─── Fetching ───────────────────────────────────────

    async def _token_for(self, account_ref: Optional[str], user_id: Optional[str]) -> Optional[str]:
        if not account_ref:
            return None
        token = await self.credentials.resolve(self.db, account_ref, user_id)
        if token is None:
            raise SnapshotResolutionError(
                "Stored credential is unavailable; reconnect your GitHub account",
                SnapshotErrorCode.PRIVATE_REPO.value,
                requires_auth=True,
            )
        return token

    async def _build(
        self,
        owner: str,
        repo: str,
        user_id: Optional[str],
        account_ref: Optional[str],
        existing: Optional[RepositorySnapshot],
    ) -> RepositorySnapshot:
        token = await self._token_for(account_ref, user_id)

        async with self.client_factory(token=token) as client:
            try:
                repo_data = await self._fetch_repo(client, owner, repo)
                branch = repo_data.get("default_branch") or "main"
                tree = await client.get_tree(owner, repo, branch)
                languages = await client.get_languages(owner, repo)
            except SnapshotResolutionError as e:
                if existing is not None and token and e.error_code == SnapshotErrorCode.PRIVATE_REPO.value:
                    await self.mark_stale(existing)
                raise
            except GithubRateLimitError as e:
                raise SnapshotResolutionError(
                    "GitHub rate limit exceeded; try again later", SnapshotErrorCode.RATE_LIMIT.value
                ) from e
            except (GithubError, DependencyUnavailable) as e:
                if existing is not None and token and isinstance(e, GithubAuthError):
                    await self.mark_stale(existing)
                raise SnapshotResolutionError(
                    f"GitHub request failed: {e}", SnapshotErrorCode.GITHUB_ERROR.value
                ) from e

            file_index = build_file_index(tree)
            samples = await self._sample_contents(client, owner, repo, branch, file_index)

        fingerprint = build_fingerprint(file_index, languages, samples)
        now = utcnow()
        snapshot = existing or RepositorySnapshot(repo_url=normalize_repo_url(owner, repo), user_id=user_id)
        snapshot.owner = owner
        snapshot.repo = repo
        snapshot.default_branch = branch
        snapshot.file_index = file_index
        snapshot.file_count = len(file_index)
        snapshot.fingerprint = fingerprint
        snapshot.stats = {
            "languages": languages,
            "is_private": bool(repo_data.get("private")),
            "stars": repo_data.get("stargazers_count", 0),
            "size_kb": repo_data.get("size", 0),
            "tree_truncated": bool(tree.get("truncated")),
        }
        snapshot.access_mode = AccessMode.authenticated.value if token else AccessMode.public.value
        snapshot.account_ref = account_ref if token else None
        snapshot.token_valid = True
        snapshot.expires_at = now + self.ttl
        if existing is None:
            self.db.add(snapshot)
        else:
            snapshot.updated_at = now
        await self.db.commit()
        await self.db.refresh(snapshot)

        logger.info(
            f"[Preflight] Snapshot {snapshot.id} for {owner}/{repo}@{branch}: "
            f"{len(file_index)} files, {fingerprint['sampled_files']} sampled"
        )
        return snapshot

    async def _fetch_repo(self, client: GitHubClient, owner: str, repo: str) -> Dict:
        try:
            await client.get_owner(owner)
        except GithubNotFoundError as e:
            raise SnapshotResolutionError(
                f"GitHub user or organization '{owner}' not found", SnapshotErrorCode.OWNER_NOT_FOUND.value
            ) from e

        try:
            return await client.get_repo(owner, repo)
        except (GithubNotFoundError, GithubAuthError) as e:
            if client.authenticated:
                message = "Repository not accessible with the connected account; reconnect or check permissions"
            else:
                message = "Repository not found or private; connect GitHub to audit private repositories"
            raise SnapshotResolutionError(message, SnapshotErrorCode.PRIVATE_REPO.value, requires_auth=True) from e

    async def _sample_contents(self, client, owner, repo, branch, file_index) -> Dict[str, str]:
        if self.content_cache is None:
            return {}
        samples: Dict[str, str] = {}
        for path in select_sample(file_index, settings.FINGERPRINT_SAMPLE_FILES):
            try:
                fetched = await self.content_cache.fetch(owner, repo, path, branch, client)
            except (GithubError, AuditError, httpx.HTTPError) as e:
                logger.debug(f"[Preflight] Skipping sample {path}: {e}")
                continue
            if fetched.content:
                samples[path] = fetched.content
        return samples
