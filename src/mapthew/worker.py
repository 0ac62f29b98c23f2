"""Worker Dispatcher — runs one job end to end.

For each job: derive the session key, lease its workspace (creating it
and evicting the LRU session if at capacity), build the prompt, run the
agent, and translate a failed run into ``AgentError`` so the queue's
retry policy applies. Workspaces are never deleted here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, assert_never

from mapthew.agent import AgentOptions, run_agent
from mapthew.errors import AgentError
from mapthew.identity import readable_id, session_key
from mapthew.models import AdminJob, GitHubJob, JiraJob
from mapthew.prompt import build_prompt

if TYPE_CHECKING:
    from mapthew.config import AgentSettings, ConfigStore
    from mapthew.github_client import GitHubClient
    from mapthew.jira_client import JiraClient
    from mapthew.job_queue import JobQueue, QueuedJob
    from mapthew.sessions import SessionManager

logger = logging.getLogger(__name__)

FAILURE_PREFIX = "🤓 Oops, I hit an error: "
ACK_MESSAGE = "🤓 Okie dokie!"

# Jira caps comments at 32k characters; keep the tail of long stderr dumps.
MAX_COMMENT_ERROR_CHARS = 4000


def failure_comment(error: BaseException | str) -> str:
    message = str(error)
    if len(message) > MAX_COMMENT_ERROR_CHARS:
        message = "…" + message[-MAX_COMMENT_ERROR_CHARS:]
    return f"{FAILURE_PREFIX}{message}"


class Worker:
    """Consumes jobs from the queue and drives the agent."""

    def __init__(
        self,
        sessions: SessionManager,
        store: ConfigStore,
        agent: AgentSettings,
        templates: list[str],
        *,
        jira: JiraClient | None = None,
        github: GitHubClient | None = None,
    ):
        self.sessions = sessions
        self.store = store
        self.agent = agent
        self.templates = templates
        self.jira = jira
        self.github = github

    def attach(self, queue: JobQueue) -> None:
        """Register this worker as the queue's processor and listener."""
        queue.process(self.process)
        queue.on_failed(self.on_failed)
        queue.on_completed(self.on_completed)

    def agent_options(self) -> AgentOptions:
        # Model and buffer size are runtime-mutable; read them per job.
        config = self.store.config
        return AgentOptions(
            command=self.agent.command,
            model=config.claude_model,
            mcp_config_path=self.agent.mcp_config_path,
            max_buffer_bytes=config.max_buffer_bytes,
            timeout_seconds=self.agent.timeout_seconds,
        )

    async def process(self, job: JiraJob | GitHubJob | AdminJob) -> Path:
        """Run ``job`` in its session workspace.

        Returns:
            The workspace path used.

        Raises:
            AgentError: If the agent could not be started or exited non-zero.
        """
        key = session_key(job)
        label = readable_id(job)
        config = self.store.config
        logger.info("[%s] Processing job from %s (session=%s)", label, job.triggered_by, key)

        async with self.sessions.lease(key) as work_dir:
            has_session = self.sessions.has_existing_session(work_dir)
            prompt = build_prompt(
                job,
                self.templates,
                bot_name=config.bot_name,
                branch_prefix=config.branch_prefix,
            )
            result = await run_agent(
                prompt,
                work_dir,
                has_session=has_session,
                options=self.agent_options(),
                label=label,
            )
            if not result.success:
                raise AgentError(result.error or "Agent run failed")

        logger.info("[%s] Job complete", label)
        return work_dir

    async def post_comment(self, job: JiraJob | GitHubJob | AdminJob, text: str) -> bool:
        """Post ``text`` where the job came from. Returns False if there is nowhere to post.

        Raises whatever the underlying client raises.
        """
        match job:
            case JiraJob():
                if self.jira is None or not self.jira.configured:
                    logger.debug("[%s] Jira not configured; not commenting", job.issue_key)
                    return False
                await self.jira.post_comment(job.issue_key, text)
                return True
            case GitHubJob():
                if self.github is None or job.number is None:
                    return False
                await self.github.post_comment(job.owner, job.repo, job.number, text)
                return True
            case AdminJob():
                return False
            case _:
                assert_never(job)

    async def on_failed(self, queued: QueuedJob, error: Exception) -> None:
        """Report a failed attempt to the originating ticket or PR (best effort)."""
        job = queued.data
        label = readable_id(job)
        logger.error(
            "[%s] Job failed (attempt %d/%d): %s",
            label,
            queued.attempts_made,
            queued.options.attempts,
            error,
        )
        try:
            await self.post_comment(job, failure_comment(error))
        except Exception:
            logger.warning("[%s] Could not post failure comment", label, exc_info=True)

    async def on_completed(self, queued: QueuedJob) -> None:
        logger.info(
            "[%s] Job %s completed after %d attempt(s)",
            readable_id(queued.data),
            queued.id,
            queued.attempts_made,
        )
