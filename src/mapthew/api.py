"""Operator API — bulk triggering, runtime config, jobs, queue, sessions.

All routes live under ``/api``. Like the webhook endpoints they are
unauthenticated; deploy behind something that is not.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mapthew.config import CLAUDE_MODELS
from mapthew.errors import ConfigError, QueueError
from mapthew.identity import readable_id
from mapthew.job_queue import JobState
from mapthew.models import AdminJob
from mapthew.triggers import bulk_label_jobs, resolve_bulk_label
from mapthew.webhook import enqueue

if TYPE_CHECKING:
    from mapthew.config import ConfigStore
    from mapthew.jira_client import JiraClient
    from mapthew.job_queue import JobQueue, QueuedJob
    from mapthew.sessions import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Set during server startup (see server.py)
_store: ConfigStore | None = None
_jira: JiraClient | None = None
_sessions: SessionManager | None = None
_queue: JobQueue | None = None


def configure(
    store: ConfigStore,
    *,
    jira: JiraClient | None = None,
    sessions: SessionManager | None = None,
    queue: JobQueue | None = None,
) -> None:
    """Wire the API routes to shared components."""
    global _store, _jira, _sessions, _queue
    _store = store
    _jira = jira
    _sessions = sessions
    _queue = queue


class BulkTriggerRequest(BaseModel):
    label: str | None = None


def _config_body() -> dict[str, Any]:
    config = _store.config
    return {
        **config.model_dump(),
        "bot_display_name": config.bot_display_name,
        "available_models": CLAUDE_MODELS,
    }


# ── Bulk trigger ─────────────────────────────────────────────────────────────


@router.post("/bulk/label-trigger")
async def bulk_label_trigger(body: BulkTriggerRequest | None = None) -> JSONResponse:
    """Queue a job for every open Jira issue carrying the trigger label.

    The request's ``label`` overrides the configured trigger label.
    """
    try:
        label = resolve_bulk_label(body.label if body else None, _store.config)
    except ConfigError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    if _jira is None or not _jira.configured:
        return JSONResponse({"error": "Jira credentials not configured"}, status_code=503)

    try:
        jobs = await bulk_label_jobs(label, _jira.search_open_issues_by_label)
    except httpx.HTTPStatusError as e:
        logger.error("Jira search failed during bulk trigger: %s", e.response.text)
        return JSONResponse(
            {"error": f"Jira search failed: {e.response.status_code} {e.response.reason_phrase}"},
            status_code=502,
        )
    except httpx.HTTPError as e:
        logger.error("Jira search failed during bulk trigger: %s", e)
        return JSONResponse({"error": f"Jira search failed: {e}"}, status_code=502)

    if not jobs:
        return JSONResponse(
            {
                "status": "ok",
                "label": label,
                "queued": 0,
                "message": f'No open issues found with label "{label}"',
            }
        )

    queued: list[str] = []
    try:
        for job in jobs:
            await enqueue(job)
            queued.append(job.issue_key)
    except QueueError:
        logger.exception("Bulk label trigger stopped after %d job(s)", len(queued))
        return JSONResponse(
            {"error": "Failed to run bulk label trigger", "queued": len(queued), "issues": queued},
            status_code=500,
        )

    logger.info(
        'Bulk label trigger: queued %d jobs for label "%s": %s',
        len(queued),
        label,
        ", ".join(queued),
    )
    return JSONResponse(
        {
            "status": "ok",
            "label": label,
            "queued": len(queued),
            "total": len(jobs),
            "issues": queued,
        }
    )


# ── Runtime config ───────────────────────────────────────────────────────────


@router.get("/config")
async def get_config() -> dict[str, Any]:
    return _config_body()


@router.put("/config")
async def update_config(changes: dict[str, Any] = Body(...)) -> JSONResponse:
    """Update runtime config. All fields are validated before any is applied."""
    try:
        _store.update(**changes)
    except ConfigError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except OSError as e:
        logger.error("Could not save runtime config: %s", e)
        return JSONResponse({"error": f"Failed to save config: {e}"}, status_code=500)
    return JSONResponse(_config_body())


# ── Jobs ─────────────────────────────────────────────────────────────────────


@router.post("/jobs")
async def create_admin_job(job: AdminJob) -> JSONResponse:
    """Queue a job that runs in the shared admin session."""
    try:
        await enqueue(job)
    except QueueError:
        logger.exception("Failed to queue admin job")
        return JSONResponse({"error": "Failed to queue job"}, status_code=500)
    return JSONResponse({"status": "queued", "job": "admin"})


def _job_body(job: QueuedJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "name": job.name,
        "label": readable_id(job.data),
        "state": job.state,
        "attempts_made": job.attempts_made,
        "attempts": job.options.attempts,
        "last_error": job.last_error,
        "return_value": job.return_value,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "data": job.data.model_dump(mode="json"),
    }


def _queue_unavailable() -> JSONResponse:
    return JSONResponse({"error": "Job queue not available"}, status_code=503)


def _job_not_found(job_id: str) -> JSONResponse:
    return JSONResponse({"error": f"Job {job_id} not found"}, status_code=404)


@router.get("/jobs")
async def list_jobs(
    state: JobState | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> JSONResponse:
    """Recent jobs, newest first, optionally filtered by state."""
    if _queue is None:
        return _queue_unavailable()
    jobs = _queue.list_jobs(state, limit)
    return JSONResponse({"count": len(jobs), "jobs": [_job_body(j) for j in jobs]})


@router.get("/jobs/{job_id}")
async def get_job(job_id: str) -> JSONResponse:
    if _queue is None:
        return _queue_unavailable()
    job = _queue.get_job(job_id)
    if job is None:
        return _job_not_found(job_id)
    return JSONResponse(_job_body(job))


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str) -> JSONResponse:
    """Re-run a failed job with a fresh set of attempts."""
    if _queue is None:
        return _queue_unavailable()
    if _queue.get_job(job_id) is None:
        return _job_not_found(job_id)
    try:
        job = await _queue.retry(job_id)
    except QueueError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    return JSONResponse({"status": "queued", "id": job.id})


@router.delete("/jobs/{job_id}")
async def remove_job(job_id: str) -> JSONResponse:
    if _queue is None:
        return _queue_unavailable()
    if _queue.get_job(job_id) is None:
        return _job_not_found(job_id)
    try:
        _queue.remove(job_id)
    except QueueError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    return JSONResponse({"status": "removed", "id": job_id})


@router.get("/queue/stats")
async def queue_stats() -> JSONResponse:
    if _queue is None:
        return _queue_unavailable()
    return JSONResponse(
        {
            "name": _queue.name,
            "running": _queue.running,
            "pending": _queue.pending_count(),
            **_queue.stats(),
        }
    )


# ── Sessions ─────────────────────────────────────────────────────────────────


@router.get("/sessions")
async def list_sessions() -> JSONResponse:
    if _sessions is None:
        return JSONResponse({"error": "Session manager not available"}, status_code=503)
    records = await _sessions.list_sessions()
    return JSONResponse(
        {
            "count": len(records),
            "max": _sessions.get_max_sessions(),
            "sessions": [record.model_dump(mode="json") for record in records],
        }
    )
