"""Tests for the operator API routes."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from mapthew import webhook
from mapthew.api import configure, router
from mapthew.config import AppConfig, ConfigStore
from mapthew.errors import QueueError
from mapthew.job_queue import JobOptions, QueuedJob
from mapthew.models import AdminJob, IssueSummary, SessionRecord


@pytest.fixture
def app():
    test_app = FastAPI()
    test_app.include_router(router)
    return test_app


@pytest.fixture
def queue():
    q = MagicMock()
    q.add = AsyncMock()
    return q


@pytest.fixture
def store(tmp_path):
    return ConfigStore(tmp_path / "config.yaml", AppConfig(trigger_label="ai-ready"))


@pytest.fixture
def jira():
    client = MagicMock()
    client.configured = True
    client.search_open_issues_by_label = AsyncMock(return_value=[])
    return client


@pytest.fixture
def sessions():
    manager = MagicMock()
    manager.list_sessions = AsyncMock(return_value=[])
    manager.get_max_sessions.return_value = 20
    return manager


@pytest.fixture
def client(app, queue, store, jira, sessions):
    webhook.configure(queue, store)
    configure(store, jira=jira, sessions=sessions, queue=queue)
    return TestClient(app)


def _jira_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://acme.atlassian.net/rest/api/3/search/jql")
    response = httpx.Response(status, request=request, text="nope")
    return httpx.HTTPStatusError("search failed", request=request, response=response)


class TestBulkLabelTrigger:
    def test_queues_every_issue(self, client, queue, jira):
        jira.search_open_issues_by_label.return_value = [
            IssueSummary(key="DXTR-1", summary="a"),
            IssueSummary(key="DXTR-2", summary="b"),
        ]

        response = client.post("/api/bulk/label-trigger", json={})

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "label": "ai-ready",
            "queued": 2,
            "total": 2,
            "issues": ["DXTR-1", "DXTR-2"],
        }
        jira.search_open_issues_by_label.assert_awaited_once_with("ai-ready")
        jobs = [call.args[1] for call in queue.add.await_args_list]
        assert [job.triggered_by for job in jobs] == ["bulk-label-trigger"] * 2
        assert jobs[0].project_key == "DXTR"

    def test_request_label_overrides_config(self, client, jira):
        response = client.post("/api/bulk/label-trigger", json={"label": "  urgent "})
        assert response.json()["label"] == "urgent"
        jira.search_open_issues_by_label.assert_awaited_once_with("urgent")

    def test_no_matches(self, client, queue):
        response = client.post("/api/bulk/label-trigger")
        body = response.json()
        assert response.status_code == 200
        assert body["queued"] == 0
        assert "ai-ready" in body["message"]
        queue.add.assert_not_awaited()

    def test_no_label_is_400(self, client, store, jira):
        store.update(trigger_label="")
        response = client.post("/api/bulk/label-trigger", json={})
        assert response.status_code == 400
        assert "No trigger label configured" in response.json()["error"]
        jira.search_open_issues_by_label.assert_not_awaited()

    def test_unconfigured_jira_is_503(self, client, jira):
        jira.configured = False
        response = client.post("/api/bulk/label-trigger", json={})
        assert response.status_code == 503

    def test_search_error_is_502(self, client, jira):
        jira.search_open_issues_by_label.side_effect = _jira_error(401)
        response = client.post("/api/bulk/label-trigger", json={})
        assert response.status_code == 502
        assert response.json()["error"] == "Jira search failed: 401 Unauthorized"

    def test_transport_error_is_502(self, client, jira):
        jira.search_open_issues_by_label.side_effect = httpx.ConnectError("refused")
        response = client.post("/api/bulk/label-trigger", json={})
        assert response.status_code == 502

    def test_queue_failure_reports_progress(self, client, queue, jira):
        jira.search_open_issues_by_label.return_value = [
            IssueSummary(key="DXTR-1"),
            IssueSummary(key="DXTR-2"),
        ]
        queue.add.side_effect = [None, QueueError("full")]
        response = client.post("/api/bulk/label-trigger", json={})
        assert response.status_code == 500
        assert response.json()["issues"] == ["DXTR-1"]


class TestConfig:
    def test_get(self, client):
        body = client.get("/api/config").json()
        assert body["bot_name"] == "mapthew"
        assert body["bot_display_name"] == "Mapthew"
        assert "claude-sonnet-4-5" in body["available_models"]

    def test_put_applies_and_persists(self, client, store):
        response = client.put("/api/config", json={"bot_name": "codebot", "max_sessions": 5})
        assert response.status_code == 200
        assert response.json()["bot_display_name"] == "Codebot"
        assert store.config.max_sessions == 5
        assert store.path.exists()

    def test_put_invalid_changes_nothing(self, client, store):
        response = client.put(
            "/api/config", json={"bot_name": "Bad Name!", "claude_model": "claude-opus-4-5"}
        )
        assert response.status_code == 400
        assert store.config.bot_name == "mapthew"
        assert store.config.claude_model == "claude-sonnet-4-5"

    def test_put_save_failure_is_500_and_changes_nothing(self, client, store):
        store.path.mkdir()
        response = client.put("/api/config", json={"bot_name": "codebot"})
        assert response.status_code == 500
        assert response.json()["error"].startswith("Failed to save config")
        assert client.get("/api/config").json()["bot_name"] == "mapthew"

    def test_put_unknown_field(self, client):
        response = client.put("/api/config", json={"colour": "blue"})
        assert response.status_code == 400


class TestAdminJobs:
    def test_queued(self, client, queue):
        response = client.post(
            "/api/jobs",
            json={"instruction": "upgrade deps", "triggered_by": "ops", "jira_issue_key": "DXTR-1"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "queued", "job": "admin"}
        job = queue.add.await_args.args[1]
        assert isinstance(job, AdminJob)
        assert job.jira_issue_key == "DXTR-1"

    def test_invalid_body(self, client, queue):
        response = client.post("/api/jobs", json={"instruction": "x"})
        assert response.status_code == 422
        queue.add.assert_not_awaited()


class TestSessions:
    def test_lists_sessions(self, client, sessions):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        sessions.list_sessions.return_value = [
            SessionRecord(
                session_key="DXTR-1",
                workspace_path="/data/workspaces/DXTR-1",
                last_used_at=now,
                created_at=now,
            )
        ]
        body = client.get("/api/sessions").json()
        assert body["count"] == 1
        assert body["max"] == 20
        assert body["sessions"][0]["session_key"] == "DXTR-1"

    def test_unavailable(self, app, store):
        configure(store)
        response = TestClient(app).get("/api/sessions")
        assert response.status_code == 503


def _queued(state="failed", **kwargs) -> QueuedJob:
    job = AdminJob(instruction="upgrade deps", triggered_by="ops", jira_issue_key="DXTR-1")
    return QueuedJob(
        name="process-ticket", data=job, options=JobOptions(), id="abc123", state=state, **kwargs
    )


class TestJobInspection:
    def test_lists_jobs(self, client, queue):
        queue.list_jobs.return_value = [_queued(last_error="agent crashed", attempts_made=3)]

        response = client.get("/api/jobs", params={"state": "failed", "limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        job = body["jobs"][0]
        assert job["id"] == "abc123"
        assert job["state"] == "failed"
        assert job["label"] == "admin"
        assert job["last_error"] == "agent crashed"
        assert job["attempts_made"] == 3
        assert job["data"]["instruction"] == "upgrade deps"
        queue.list_jobs.assert_called_once_with("failed", 10)

    def test_unknown_state_is_422(self, client):
        assert client.get("/api/jobs", params={"state": "stuck"}).status_code == 422

    def test_get_job(self, client, queue):
        queue.get_job.return_value = _queued(state="waiting")
        body = client.get("/api/jobs/abc123").json()
        assert body["state"] == "waiting"
        assert body["started_at"] is None

    def test_get_missing_job_is_404(self, client, queue):
        queue.get_job.return_value = None
        response = client.get("/api/jobs/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Job nope not found"}

    def test_retry(self, client, queue):
        job = _queued()
        queue.get_job.return_value = job
        queue.retry = AsyncMock(return_value=job)

        response = client.post("/api/jobs/abc123/retry")

        assert response.json() == {"status": "queued", "id": "abc123"}
        queue.retry.assert_awaited_once_with("abc123")

    def test_retry_refused_is_409(self, client, queue):
        queue.get_job.return_value = _queued(state="completed")
        queue.retry = AsyncMock(side_effect=QueueError("only failed jobs can be retried"))
        response = client.post("/api/jobs/abc123/retry")
        assert response.status_code == 409

    def test_remove(self, client, queue):
        queue.get_job.return_value = _queued(state="waiting")
        response = client.delete("/api/jobs/abc123")
        assert response.json() == {"status": "removed", "id": "abc123"}
        queue.remove.assert_called_once_with("abc123")

    def test_remove_running_is_409(self, client, queue):
        queue.get_job.return_value = _queued(state="active")
        queue.remove.side_effect = QueueError("Job abc123 is running and cannot be removed")
        response = client.delete("/api/jobs/abc123")
        assert response.status_code == 409
        assert "running" in response.json()["error"]

    def test_remove_missing_is_404(self, client, queue):
        queue.get_job.return_value = None
        assert client.delete("/api/jobs/nope").status_code == 404
        queue.remove.assert_not_called()

    def test_stats(self, client, queue):
        queue.name = "mapthew-jobs"
        queue.running = True
        queue.pending_count.return_value = 2
        queue.stats.return_value = {
            "waiting": 1,
            "active": 1,
            "delayed": 0,
            "completed": 4,
            "failed": 1,
        }

        body = client.get("/api/queue/stats").json()

        assert body == {
            "name": "mapthew-jobs",
            "running": True,
            "pending": 2,
            "waiting": 1,
            "active": 1,
            "delayed": 0,
            "completed": 4,
            "failed": 1,
        }

    def test_without_queue_is_503(self, app, store):
        configure(store)
        test_client = TestClient(app)
        assert test_client.get("/api/jobs").status_code == 503
        assert test_client.get("/api/queue/stats").status_code == 503
        assert test_client.post("/api/jobs/abc123/retry").status_code == 503
