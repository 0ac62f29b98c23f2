"""Jira Cloud REST client for Mapthew.

Basic auth (email + API token) over httpx. Only the calls the trigger and
reporting paths need: issue search (open by label, or recently updated for
the poller), comment listing and comment posting.
Also home to the Atlassian Document Format (ADF) helpers, since Jira v3
delivers comment bodies as ADF documents.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from mapthew.errors import JiraError
from mapthew.models import IssueSummary

logger = logging.getLogger(__name__)

SEARCH_MAX_RESULTS = 100


# ── ADF ──────────────────────────────────────────────────────────────────────


def extract_text_from_adf(node: Any) -> str:
    """Flatten an ADF document (or plain string) to text.

    Paragraph-level blocks are separated by newlines so that a bot mention
    on its own line does not run into the next paragraph. Jira user
    ``mention`` nodes are dropped: a user whose display name starts with
    the bot name must not turn into an ``@bot`` instruction.
    """
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(extract_text_from_adf(child) for child in node)
    if not isinstance(node, dict):
        return ""

    node_type = node.get("type")
    if node_type == "text":
        text = node.get("text")
        return text if isinstance(text, str) else ""
    if node_type == "hardBreak":
        return "\n"
    if node_type == "mention":
        return ""

    content = extract_text_from_adf(node.get("content"))
    if node_type == "doc":
        return content.strip("\n")
    if node_type in ("paragraph", "heading", "codeBlock", "listItem", "blockquote"):
        return content + "\n"
    return content


def get_comment_text(body: Any) -> str:
    """Comment text from either a v2 string body or a v3 ADF body."""
    return extract_text_from_adf(body)


def _adf_document(text: str) -> dict[str, Any]:
    """Wrap plain text in a minimal ADF document, one paragraph per line."""
    paragraphs = [
        {"type": "paragraph", "content": [{"type": "text", "text": line}] if line else []}
        for line in text.split("\n")
    ]
    return {"type": "doc", "version": 1, "content": paragraphs}


def quote_jql(value: str) -> str:
    """Quote ``value`` as a JQL string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


# ── Client ───────────────────────────────────────────────────────────────────


class JiraClient:
    """Async Jira API client."""

    def __init__(self, *, base_url: str = "", email: str = "", api_token: str = ""):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.api_token = api_token
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.email and self.api_token)

    async def start(self) -> None:
        """Initialize HTTP client."""
        if not self.configured:
            logger.warning("Jira credentials not configured — Jira calls will fail")
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.email, self.api_token),
            headers={"Accept": "application/json", "User-Agent": "Mapthew/0.1.0"},
            timeout=30.0,
        )
        logger.info("Jira client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise JiraError("Jira client not started or credentials not configured")
        return self._client

    async def search_open_issues_by_label(self, label: str) -> list[IssueSummary]:
        """Open (not Done) issues carrying ``label``, up to 100.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
        """
        jql = f"labels = {quote_jql(label)} AND statusCategory != Done"
        return await self._search(jql)

    async def search_recently_updated_issues(
        self, projects: list[str], minutes: int
    ) -> list[IssueSummary]:
        """Issues in ``projects`` updated within the last ``minutes``, newest first.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
        """
        keys = ", ".join(quote_jql(p) for p in projects)
        jql = f"project in ({keys}) AND updated >= -{minutes}m ORDER BY updated DESC"
        return await self._search(jql)

    async def _search(self, jql: str) -> list[IssueSummary]:
        resp = await self.client.get(
            "/rest/api/3/search/jql",
            params={"jql": jql, "maxResults": SEARCH_MAX_RESULTS, "fields": "key,summary"},
        )
        resp.raise_for_status()
        data = resp.json()
        return [
            IssueSummary(key=issue["key"], summary=(issue.get("fields") or {}).get("summary", ""))
            for issue in data.get("issues", [])
        ]

    async def get_issue_comments(self, issue_key: str) -> list[dict[str, Any]]:
        """Most recent comments on an issue, newest first, up to 100."""
        resp = await self.client.get(
            f"/rest/api/3/issue/{issue_key}/comment",
            params={"orderBy": "-created", "maxResults": SEARCH_MAX_RESULTS},
        )
        resp.raise_for_status()
        return resp.json().get("comments", [])

    async def post_comment(self, issue_key: str, text: str) -> dict:
        resp = await self.client.post(
            f"/rest/api/3/issue/{issue_key}/comment",
            json={"body": _adf_document(text)},
        )
        resp.raise_for_status()
        return resp.json()
