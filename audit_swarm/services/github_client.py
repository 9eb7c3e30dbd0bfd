"""
Async GitHub REST client used by the snapshot resolver and the content cache.

Every request goes through the `github` circuit breaker and
retry-with-backoff. Rate limits are surfaced immediately as
GithubRateLimitError rather than slept through, since the reset window is
usually far longer than any sensible retry delay.
"""

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from audit_swarm.config import get_settings
from audit_swarm.services.exceptions import (
    GithubAuthError,
    GithubError,
    GithubNotFoundError,
    GithubRateLimitError,
    GithubRetryableError,
)
from audit_swarm.services.resilience import (
    CircuitBreaker,
    breakers,
    guarded_call,
    is_retryable_error,
)

logger = logging.getLogger("github_client")
settings = get_settings()

USER_AGENT = "audit-swarm"


def _github_retryable(error: BaseException) -> bool:
    if isinstance(error, GithubRateLimitError):
        return False
    return is_retryable_error(error)


@dataclass
class ContentsResponse:
    not_modified: bool
    content: Optional[str] = None
    etag: Optional[str] = None
    sha: Optional[str] = None
    size: int = 0


def _rate_limit_retry_after(resp: httpx.Response) -> Optional[float]:
    retry_after = resp.headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            pass
    reset = resp.headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            pass
    return None


def _message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or "")
    return ""


def raise_for_github_status(resp: httpx.Response) -> None:
    """Map a GitHub response status onto the GithubError hierarchy."""
    status = resp.status_code
    if status < 400:
        return

    message = _message(resp) or f"GitHub returned {status}"

    if status == 429 or (
        status == 403
        and (resp.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in message.lower())
    ):
        raise GithubRateLimitError(message, retry_after=_rate_limit_retry_after(resp), status_code=status)
    if status in (401, 403):
        raise GithubAuthError(message, status_code=status)
    if status == 404:
        raise GithubNotFoundError(message, status_code=status)
    if status >= 500:
        raise GithubRetryableError(message, status_code=status)
    raise GithubError(message, status_code=status)


class GitHubClient:
    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_attempts: Optional[int] = None,
        sleep=asyncio.sleep,
    ):
        self.token = token
        self.base_url = (base_url or settings.GITHUB_API_URL).rstrip("/")
        self.timeout = timeout or settings.GITHUB_TIMEOUT_SECONDS
        self.breaker = breaker or breakers.get("github")
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if extra:
            headers.update(extra)
        return headers

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        client = await self._http()

        async def _do() -> httpx.Response:
            resp = await client.get(path, params=params, headers=self._headers(headers))
            raise_for_github_status(resp)
            return resp

        return await guarded_call(
            self.breaker,
            _do,
            max_attempts=self.max_attempts,
            is_retryable=_github_retryable,
            sleep=self._sleep,
            label=f"github GET {path}",
        )

    # ─── Endpoints ──────────────────────────────────────

    async def get_owner(self, owner: str) -> Dict[str, Any]:
        resp = await self._request(f"/users/{quote(owner)}")
        return resp.json()

    async def get_repo(self, owner: str, repo: str) -> Dict[str, Any]:
        resp = await self._request(f"/repos/{quote(owner)}/{quote(repo)}")
        return resp.json()

    async def get_languages(self, owner: str, repo: str) -> Dict[str, int]:
        resp = await self._request(f"/repos/{quote(owner)}/{quote(repo)}/languages")
        data = resp.json()
        return data if isinstance(data, dict) else {}

    async def get_tree(self, owner: str, repo: str, branch: str, recursive: bool = True) -> Dict[str, Any]:
        params = {"recursive": "1"} if recursive else None
        resp = await self._request(
            f"/repos/{quote(owner)}/{quote(repo)}/git/trees/{quote(branch, safe='')}",
            params=params,
        )
        data = resp.json()
        if data.get("truncated"):
            logger.warning(f"[GitHub] Tree for {owner}/{repo}@{branch} truncated by the API")
        return data

    async def get_contents(
        self,
        owner: str,
        repo: str,
        path: str,
        ref: str,
        etag: Optional[str] = None,
    ) -> ContentsResponse:
        """
        Fetch one file. With `etag` set the request is conditional; a 304
        comes back as `not_modified=True` with no content.
        """
        url = f"/repos/{quote(owner)}/{quote(repo)}/contents/{quote(path)}"
        extra = {"If-None-Match": etag} if etag else None
        resp = await self._request(url, params={"ref": ref}, headers=extra)

        if resp.status_code == 304:
            return ContentsResponse(not_modified=True, etag=etag)

        data = resp.json()
        if isinstance(data, list) or data.get("type") not in (None, "file"):
            raise GithubError(f"{path} is not a file", status_code=resp.status_code)

        content = data.get("content")
        encoding = data.get("encoding")
        if content and encoding == "base64":
            try:
                text = base64.b64decode(content.replace("\n", "")).decode("utf-8", errors="replace")
            except (binascii.Error, ValueError) as e:
                raise GithubError(f"Could not decode {path}: {e}") from e
        elif content:
            text = content
        else:
            # Files above 1 MB come back without inline content
            raw = await self._request(url, params={"ref": ref}, headers={"Accept": "application/vnd.github.raw"})
            text = raw.text

        return ContentsResponse(
            not_modified=False,
            content=text,
            etag=resp.headers.get("ETag"),
            sha=data.get("sha"),
            size=int(data.get("size") or len(text.encode("utf-8"))),
        )
