"""Tests for trigger resolution (Jira comments, label changes, GitHub comments, bulk)."""

import pytest

from mapthew.config import AppConfig
from mapthew.errors import ConfigError
from mapthew.models import Enqueue, GitHubJob, Ignored, IssueSummary, JiraJob
from mapthew.triggers import (
    BULK_TRIGGER_ACTOR,
    LABEL_TRIGGER_INSTRUCTION,
    bulk_label_jobs,
    extract_bot_instruction,
    extract_project_key,
    resolve_bulk_label,
    resolve_github_event,
    resolve_jira_event,
    was_label_added,
)


@pytest.fixture
def config():
    return AppConfig(bot_name="mapthew", trigger_label="ai-ready")


def _comment_payload(body, issue_key="DXTR-123", author="Alice"):
    return {
        "webhookEvent": "comment_created",
        "issue": {"key": issue_key},
        "comment": {"body": body, "author": {"displayName": author}},
    }


def _label_payload(from_labels, to_labels, issue_key="DXTR-9", user="Bob"):
    payload = {
        "webhookEvent": "jira:issue_updated",
        "issue": {"key": issue_key},
        "changelog": {
            "items": [
                {"field": "status", "fromString": "To Do", "toString": "In Progress"},
                {"field": "labels", "fromString": from_labels, "toString": to_labels},
            ]
        },
    }
    if user:
        payload["user"] = {"displayName": user}
    return payload


def _github_payload(body, *, is_pr=False, number=42, user_type="User"):
    issue = {"number": number}
    if is_pr:
        issue["pull_request"] = {"url": "https://api.github.com/repos/acme/widgets/pulls/42"}
    return {
        "action": "created",
        "issue": issue,
        "comment": {"body": body, "user": {"login": "alice", "type": user_type}},
        "repository": {"name": "widgets", "owner": {"login": "acme"}},
    }


class TestHelpers:
    @pytest.mark.parametrize(
        "key,expected",
        [("DXTR-123", "DXTR"), ("dxtr-1", "DXTR"), ("AB2-5", "AB2"), ("weird", "WEIRD")],
    )
    def test_extract_project_key(self, key, expected):
        assert extract_project_key(key) == expected

    def test_extract_bot_instruction(self):
        assert extract_bot_instruction("@mapthew  fix the bug  ", "mapthew") == "fix the bug"
        assert extract_bot_instruction("please @MAPTHEW add tests", "mapthew") == "add tests"
        assert extract_bot_instruction("no mention here", "mapthew") is None

    def test_instruction_stops_at_end_of_line(self):
        body = "@mapthew add logging\nthanks!"
        assert extract_bot_instruction(body, "mapthew") == "add logging"


class TestLabelAdded:
    def test_added(self):
        assert was_label_added(_label_payload("backend", "backend ai-ready"), "ai-ready")

    def test_already_present(self):
        assert not was_label_added(_label_payload("ai-ready", "ai-ready backend"), "ai-ready")

    def test_removed(self):
        assert not was_label_added(_label_payload("ai-ready", ""), "ai-ready")

    def test_missing_from_string(self):
        assert was_label_added(_label_payload(None, "ai-ready"), "ai-ready")

    def test_substring_does_not_count(self):
        assert not was_label_added(_label_payload("", "ai-ready-later"), "ai-ready")

    def test_no_labels_item(self):
        payload = {"changelog": {"items": [{"field": "status"}]}}
        assert not was_label_added(payload, "ai-ready")


class TestJiraComment:
    def test_plain_string_body(self, config):
        result = resolve_jira_event(_comment_payload("@mapthew implement login"), config)
        assert isinstance(result, Enqueue)
        job = result.job
        assert isinstance(job, JiraJob)
        assert job.issue_key == "DXTR-123"
        assert job.project_key == "DXTR"
        assert job.instruction == "implement login"
        assert job.triggered_by == "Alice"

    def test_adf_body(self, config):
        body = {
            "type": "doc",
            "version": 1,
            "content": [
                {"type": "paragraph", "content": [{"type": "text", "text": "Hi team"}]},
                {"type": "paragraph", "content": [{"type": "text", "text": "@mapthew add tests"}]},
            ],
        }
        result = resolve_jira_event(_comment_payload(body), config)
        assert isinstance(result, Enqueue)
        assert result.job.instruction == "add tests"

    def test_no_mention(self, config):
        result = resolve_jira_event(_comment_payload("just a comment"), config)
        assert result == Ignored(reason="no @mapthew trigger found")

    def test_uses_configured_bot_name(self):
        config = AppConfig(bot_name="codebot")
        assert isinstance(
            resolve_jira_event(_comment_payload("@mapthew do it"), config), Ignored
        )
        assert isinstance(resolve_jira_event(_comment_payload("@codebot do it"), config), Enqueue)

    def test_missing_author(self, config):
        payload = _comment_payload("@mapthew go")
        del payload["comment"]["author"]
        result = resolve_jira_event(payload, config)
        assert result.job.triggered_by == "unknown"

    def test_malformed(self, config):
        result = resolve_jira_event({"webhookEvent": "comment_created"}, config)
        assert isinstance(result, Ignored)
        assert "malformed" in result.reason


class TestJiraLabelChange:
    def test_label_added(self, config):
        result = resolve_jira_event(_label_payload("backend", "backend ai-ready"), config)
        assert isinstance(result, Enqueue)
        assert result.job.issue_key == "DXTR-9"
        assert result.job.instruction == LABEL_TRIGGER_INSTRUCTION
        assert result.job.triggered_by == "Bob"

    def test_default_actor(self, config):
        result = resolve_jira_event(_label_payload("", "ai-ready", user=None), config)
        assert result.job.triggered_by == "label-trigger"

    def test_not_configured(self):
        result = resolve_jira_event(_label_payload("", "ai-ready"), AppConfig())
        assert result == Ignored(reason="label trigger not configured")

    def test_no_labels_field(self, config):
        payload = _label_payload("", "ai-ready")
        payload["changelog"]["items"] = [{"field": "status"}]
        result = resolve_jira_event(payload, config)
        assert isinstance(result, Ignored)
        assert "no labels field" in result.reason

    def test_label_not_added(self, config):
        result = resolve_jira_event(_label_payload("ai-ready", "ai-ready other"), config)
        assert result == Ignored(reason='trigger label "ai-ready" was not added')


class TestJiraOther:
    def test_unhandled_event(self, config):
        result = resolve_jira_event({"webhookEvent": "jira:issue_created"}, config)
        assert result == Ignored(reason="unhandled event")

    @pytest.mark.parametrize("payload", [None, [], "text", 42])
    def test_non_object_payload(self, config, payload):
        assert isinstance(resolve_jira_event(payload, config), Ignored)


class TestGitHubComment:
    def test_issue_comment(self, config):
        result = resolve_github_event(
            "issue_comment", _github_payload("@mapthew fix typo"), config
        )
        assert isinstance(result, Enqueue)
        job = result.job
        assert isinstance(job, GitHubJob)
        assert (job.owner, job.repo) == ("acme", "widgets")
        assert job.issue_number == 42
        assert job.pr_number is None
        assert job.triggered_by == "alice"

    def test_pr_comment(self, config):
        result = resolve_github_event(
            "issue_comment", _github_payload("@mapthew fix typo", is_pr=True), config
        )
        assert result.job.pr_number == 42
        assert result.job.issue_number is None

    def test_review_comment_carries_branch(self, config):
        payload = {
            "action": "created",
            "comment": {"body": "@mapthew rename this", "user": {"login": "bob", "type": "User"}},
            "pull_request": {"number": 8, "head": {"ref": "feature/DXTR-77-thing"}},
            "repository": {"name": "widgets", "owner": {"login": "acme"}},
        }
        result = resolve_github_event("pull_request_review_comment", payload, config)
        assert result.job.pr_number == 8
        assert result.job.branch_name == "feature/DXTR-77-thing"

    def test_bot_author_ignored(self, config):
        result = resolve_github_event(
            "issue_comment", _github_payload("@mapthew loop", user_type="Bot"), config
        )
        assert isinstance(result, Ignored)

    def test_no_mention(self, config):
        result = resolve_github_event("issue_comment", _github_payload("LGTM"), config)
        assert result == Ignored(reason="no @mapthew trigger found")

    def test_edited_comment_ignored(self, config):
        payload = _github_payload("@mapthew go")
        payload["action"] = "edited"
        assert resolve_github_event("issue_comment", payload, config) == Ignored(
            reason="unhandled event"
        )

    def test_other_event_ignored(self, config):
        assert resolve_github_event("push", {"ref": "refs/heads/main"}, config) == Ignored(
            reason="unhandled event"
        )


class TestMalformedPayloads:
    @pytest.mark.parametrize(
        "payload",
        [
            {**_comment_payload("@mapthew go"), "comment": {"body": "@mapthew go", "author": "bob"}},
            {**_comment_payload("@mapthew go"), "comment": {"body": {"x": 1}}},
            {**_comment_payload("@mapthew go"), "issue": "DXTR-1"},
            {**_comment_payload("@mapthew go"), "issue": {"key": 42}},
            {**_label_payload("", "ai-ready"), "changelog": {"items": ["labels"]}},
            {**_label_payload("", "ai-ready"), "changelog": "labels"},
            [],
            "comment_created",
        ],
    )
    def test_jira_never_raises(self, config, payload):
        result = resolve_jira_event(payload, config)
        if isinstance(result, Enqueue):
            assert result.job.triggered_by == "unknown"
        else:
            assert isinstance(result, Ignored)

    def test_jira_non_string_author_falls_back(self, config):
        payload = _comment_payload("@mapthew go")
        payload["comment"]["author"] = {"displayName": 5}
        assert resolve_jira_event(payload, config).job.triggered_by == "unknown"

    def test_jira_non_string_actor_falls_back(self, config):
        payload = _label_payload("", "ai-ready")
        payload["user"] = {"displayName": ["Bob"]}
        assert resolve_jira_event(payload, config).job.triggered_by == "label-trigger"

    def test_jira_non_string_body(self, config):
        payload = _comment_payload({"x": 1})
        assert resolve_jira_event(payload, config) == Ignored(reason="no @mapthew trigger found")

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda p: p["comment"].update(user="alice"),
            lambda p: p["comment"].update(body={"x": 1}),
            lambda p: p["issue"].update(number="abc"),
            lambda p: p["issue"].update(number=True),
            lambda p: p["repository"].update(owner="o"),
            lambda p: p["repository"].update(name=7),
            lambda p: p.update(issue="42"),
        ],
    )
    def test_github_never_raises(self, config, mutate):
        payload = _github_payload("@mapthew fix it")
        mutate(payload)
        result = resolve_github_event("issue_comment", payload, config)
        if isinstance(result, Enqueue):
            assert result.job.triggered_by == "unknown"
        else:
            assert isinstance(result, Ignored)
            assert result.reason.startswith(("malformed payload", "no @mapthew"))

    def test_github_bad_number_is_ignored(self, config):
        payload = _github_payload("@mapthew fix it", number="abc")
        assert resolve_github_event("issue_comment", payload, config) == Ignored(
            reason="malformed payload: missing issue or pull request number"
        )

    def test_github_review_comment_bad_head(self, config):
        payload = {
            "action": "created",
            "comment": {"body": "@mapthew go", "user": {"login": 3}},
            "pull_request": {"number": 8, "head": "main"},
            "repository": {"name": "widgets", "owner": {"login": "acme"}},
        }
        result = resolve_github_event("pull_request_review_comment", payload, config)
        assert result.job.branch_name is None
        assert result.job.triggered_by == "unknown"


class TestBulk:
    def test_request_label_wins(self, config):
        assert resolve_bulk_label("urgent", config) == "urgent"

    def test_falls_back_to_config(self, config):
        assert resolve_bulk_label(None, config) == "ai-ready"
        assert resolve_bulk_label("  ", config) == "ai-ready"

    def test_no_label_anywhere(self):
        with pytest.raises(ConfigError):
            resolve_bulk_label(None, AppConfig())

    async def test_one_job_per_issue(self):
        searched = []

        async def search(label):
            searched.append(label)
            return [IssueSummary(key="DXTR-1", summary="a"), IssueSummary(key="ops-2")]

        jobs = await bulk_label_jobs("ai-ready", search)

        assert searched == ["ai-ready"]
        assert [j.issue_key for j in jobs] == ["DXTR-1", "ops-2"]
        assert jobs[1].project_key == "OPS"
        assert all(j.triggered_by == BULK_TRIGGER_ACTOR for j in jobs)
        assert all(j.instruction == LABEL_TRIGGER_INSTRUCTION for j in jobs)

    async def test_no_issues(self):
        async def search(label):
            return []

        assert await bulk_label_jobs("ai-ready", search) == []
