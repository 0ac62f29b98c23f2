"""Webhook receiver — FastAPI endpoints for Jira and GitHub deliveries.

Each delivery is classified by ``mapthew.triggers``. Ignored events answer
200 with a reason so the sender does not retry; accepted events are
queued and answered 200 immediately. Only a queue failure returns 500.

Authentication and signature verification are left to the deployment
(reverse proxy or network policy).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from mapthew.errors import QueueError
from mapthew.identity import readable_id
from mapthew.job_queue import PROCESS_TICKET
from mapthew.models import AdminJob, GitHubJob, Ignored, JiraJob
from mapthew.triggers import resolve_github_event, resolve_jira_event
from mapthew.worker import ACK_MESSAGE

if TYPE_CHECKING:
    from mapthew.config import ConfigStore
    from mapthew.github_client import GitHubClient
    from mapthew.jira_client import JiraClient
    from mapthew.job_queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook")

# These are set during server startup (see server.py)
_queue: JobQueue | None = None
_store: ConfigStore | None = None
_jira: JiraClient | None = None
_github: GitHubClient | None = None


def configure(
    queue: JobQueue,
    store: ConfigStore,
    *,
    jira: JiraClient | None = None,
    github: GitHubClient | None = None,
) -> None:
    """Wire the webhook endpoints to the job queue and API clients.

    Args:
        queue: Destination for accepted jobs.
        store: Runtime config, read on every delivery.
        jira: Used for the acknowledgement comment (optional).
        github: Used to look up the head branch of a PR comment (optional).
    """
    global _queue, _store, _jira, _github
    _queue = queue
    _store = store
    _jira = jira
    _github = github


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _ignored(source: str, result: Ignored) -> JSONResponse:
    message = "%s webhook ignored: %s"
    if _store is not None and _store.config.verbose_logs:
        logger.info(message, source, result.reason)
    else:
        logger.debug(message, source, result.reason)
    return JSONResponse({"status": "ignored", "reason": result.reason})


async def enqueue(job: JiraJob | GitHubJob | AdminJob) -> None:
    """Submit a job to the configured queue.

    Raises:
        QueueError: If no queue is configured or it refused the job.
    """
    if _queue is None:
        raise QueueError("Job queue not configured")
    await _queue.add(PROCESS_TICKET, job)
    logger.info("Job queued for %s: %s", readable_id(job), job.instruction)


async def _acknowledge(job: JiraJob) -> None:
    if _jira is None or not _jira.configured:
        return
    try:
        await _jira.post_comment(job.issue_key, ACK_MESSAGE)
    except Exception:
        logger.warning("Could not post acknowledgement on %s", job.issue_key, exc_info=True)


@router.post("/jira")
async def handle_jira_webhook(request: Request) -> JSONResponse:
    """Receive a Jira ``comment_created`` or ``jira:issue_updated`` event."""
    payload = await _read_json(request)
    event = payload.get("webhookEvent", "unknown") if isinstance(payload, dict) else "unknown"
    logger.debug("Jira webhook received: event=%s", event)

    result = resolve_jira_event(payload, _store.config)
    if isinstance(result, Ignored):
        return _ignored("Jira", result)

    job = result.job
    try:
        await enqueue(job)
    except QueueError:
        logger.exception("Failed to queue Jira job for %s", job.issue_key)
        return JSONResponse({"error": "Failed to queue job"}, status_code=500)

    await _acknowledge(job)
    return JSONResponse({"status": "queued", "issueKey": job.issue_key})


@router.post("/github")
async def handle_github_webhook(
    request: Request,
    x_github_event: str = Header(default=""),
    x_github_delivery: str = Header(default=""),
) -> JSONResponse:
    """Receive a GitHub ``issue_comment`` or ``pull_request_review_comment`` event."""
    payload = await _read_json(request)
    logger.debug("GitHub webhook received: %s (delivery=%s)", x_github_event, x_github_delivery)

    result = resolve_github_event(x_github_event, payload, _store.config)
    if isinstance(result, Ignored):
        return _ignored("GitHub", result)

    job = result.job
    if job.pr_number is not None and job.branch_name is None and _github is not None:
        branch = await _github.get_pr_branch(job.owner, job.repo, job.pr_number)
        if branch:
            job = job.model_copy(update={"branch_name": branch})

    try:
        await enqueue(job)
    except QueueError:
        logger.exception("Failed to queue GitHub job for %s", readable_id(job))
        return JSONResponse({"error": "Failed to queue job"}, status_code=500)

    return JSONResponse({"status": "queued", "job": readable_id(job)})
