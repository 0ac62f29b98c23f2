"""GitHub API client for Mapthew.

Token authentication (personal access or fine-grained token), rate limit
tracking, and the two operations the worker needs: posting issue/PR
comments and looking up a PR's head branch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class GitHubClient:
    """Async GitHub API client."""

    def __init__(self, *, token: str | None = None, base_url: str = GITHUB_API):
        self.token = token
        self.base_url = base_url

        # Rate limit tracking
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        if not self.token:
            logger.warning("GITHUB_TOKEN not set — GitHub comments will fail")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "Mapthew/0.1.0",
            },
            timeout=30.0,
        )
        logger.info("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    # ── Rate Limit Tracking ──────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an authenticated API request, waiting out an exhausted quota."""
        if self._rate_limit_remaining <= 0:
            wait = max(0, self._rate_limit_reset - time.time()) + 1
            logger.warning("Rate limit exhausted — sleeping %.1fs until reset", wait)
            await asyncio.sleep(wait)
            self._rate_limit_remaining = 100  # optimistic reset

        headers = {"Authorization": f"token {self.token}"} if self.token else {}
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    # ── Operations ───────────────────────────────────────────────────────

    async def post_comment(self, owner: str, repo: str, number: int, body: str) -> dict:
        """Comment on an issue or PR (PRs share the issues comment endpoint)."""
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{number}/comments",
            json={"body": body},
        )
        return resp.json()

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
        return resp.json()

    async def get_pr_branch(self, owner: str, repo: str, pr_number: int) -> str | None:
        """Head branch name of a PR, or None if it cannot be fetched."""
        try:
            pr = await self.get_pull_request(owner, repo, pr_number)
        except httpx.HTTPError:
            logger.warning(
                "Could not fetch PR %s/%s#%d for branch lookup", owner, repo, pr_number, exc_info=True
            )
            return None
        return (pr.get("head") or {}).get("ref")
