"""Jira poller — mention intake for deployments that cannot receive webhooks.

Every ``interval_seconds`` the poller searches the configured projects for
issues updated within the lookback window, lists their comments and
feeds each unseen one through the same resolver the ``comment_created``
webhook uses. Comment ids are remembered (up to ``seen_limit``) so a
comment triggers at most one job per process lifetime.

Comments created before the lookback window are skipped, so a restart
only replays mentions from the last couple of polls.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from mapthew.errors import JiraError, QueueError
from mapthew.models import Ignored, JiraJob
from mapthew.triggers import JIRA_COMMENT_CREATED, resolve_jira_event
from mapthew.worker import ACK_MESSAGE

if TYPE_CHECKING:
    from mapthew.config import ConfigStore
    from mapthew.jira_client import JiraClient

logger = logging.getLogger(__name__)

EnqueueFn = Callable[[JiraJob], Awaitable[None]]


def parse_jira_timestamp(value: Any) -> datetime | None:
    """Parse Jira's ``2024-01-15T10:30:00.000+0000`` timestamps."""
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JiraPoller:
    """Recurring mention search over a fixed set of Jira projects.

    Runs one poll immediately on ``start()`` and then every
    ``interval_seconds``. ``stop()`` cancels the task.
    """

    def __init__(
        self,
        jira: JiraClient,
        store: ConfigStore,
        enqueue: EnqueueFn,
        *,
        projects: list[str],
        interval_seconds: float = 60,
        seen_limit: int = 10_000,
    ):
        self.jira = jira
        self.store = store
        self.enqueue = enqueue
        self.projects = projects
        self.interval_seconds = interval_seconds
        self.seen_limit = seen_limit
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def lookback_minutes(self) -> int:
        """Two intervals, rounded up to whole minutes, so no poll leaves a gap."""
        return max(1, math.ceil(2 * self.interval_seconds / 60))

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="jira-poller")
        logger.info(
            "Jira poller started (projects=%s, interval=%.0fs)",
            ", ".join(self.projects),
            self.interval_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Jira poller stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

    async def run_once(self) -> list[str]:
        """One poll. Returns the issue keys queued. Errors are logged, never raised."""
        try:
            issues = await self.jira.search_recently_updated_issues(
                self.projects, self.lookback_minutes
            )
        except (httpx.HTTPError, JiraError):
            logger.exception("[Poller] Issue search failed")
            return []

        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.lookback_minutes)
        queued: list[str] = []
        for issue in issues:
            try:
                comments = await self.jira.get_issue_comments(issue.key)
            except (httpx.HTTPError, JiraError):
                logger.exception("[Poller] Could not list comments on %s", issue.key)
                continue
            for comment in comments:
                if await self._handle_comment(issue.key, comment, cutoff):
                    queued.append(issue.key)

        if queued:
            logger.info("[Poller] Queued %d job(s): %s", len(queued), ", ".join(queued))
        return queued

    async def _handle_comment(self, issue_key: str, comment: Any, cutoff: datetime) -> bool:
        if not isinstance(comment, dict):
            return False
        comment_id = comment.get("id")
        if not isinstance(comment_id, str) or comment_id in self._seen:
            return False

        created = parse_jira_timestamp(comment.get("created"))
        if created is not None and created < cutoff:
            self._remember(comment_id)
            return False

        payload = {
            "webhookEvent": JIRA_COMMENT_CREATED,
            "issue": {"key": issue_key},
            "comment": comment,
        }
        result = resolve_jira_event(payload, self.store.config)
        if isinstance(result, Ignored):
            logger.debug("[Poller] Comment %s on %s ignored: %s", comment_id, issue_key, result.reason)
            self._remember(comment_id)
            return False

        try:
            await self.enqueue(result.job)
        except QueueError:
            # Left unseen so the next poll tries again
            logger.exception("[Poller] Failed to queue job for %s", issue_key)
            return False

        self._remember(comment_id)
        await self._acknowledge(result.job)
        return True

    def _remember(self, comment_id: str) -> None:
        self._seen[comment_id] = None
        while len(self._seen) > self.seen_limit:
            self._seen.popitem(last=False)

    async def _acknowledge(self, job: JiraJob) -> None:
        try:
            await self.jira.post_comment(job.issue_key, ACK_MESSAGE)
        except Exception:
            logger.warning("Could not post acknowledgement on %s", job.issue_key, exc_info=True)
