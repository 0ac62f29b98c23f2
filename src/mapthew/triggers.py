"""Trigger resolution — decide whether an inbound event produces a job.

Every resolver returns either ``Ignored(reason)`` or ``Enqueue(job)``. A
malformed or unrecognised payload is never an error: it is ignored with a
machine-readable reason so the webhook can still answer 200.

Event classes:
- Mention: a comment containing ``@<bot_name> <instruction>``
  (Jira ``comment_created``, GitHub ``issue_comment.created`` and
  ``pull_request_review_comment.created``).
- Label change: Jira ``jira:issue_updated`` whose changelog shows the
  configured trigger label being *added*.
- Bulk: every open Jira issue carrying a label (see ``resolve_bulk_label``).
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import ValidationError

from mapthew.config import trigger_pattern
from mapthew.errors import ConfigError
from mapthew.jira_client import get_comment_text
from mapthew.models import Enqueue, GitHubJob, Ignored, IssueSummary, JiraJob, TriggerResult

if TYPE_CHECKING:
    from mapthew.config import AppConfig

logger = logging.getLogger(__name__)

LABEL_TRIGGER_INSTRUCTION = "implement the change described in this ticket"
LABEL_TRIGGER_ACTOR = "label-trigger"
BULK_TRIGGER_ACTOR = "bulk-label-trigger"

JIRA_COMMENT_CREATED = "comment_created"
JIRA_ISSUE_UPDATED = "jira:issue_updated"

_PROJECT_KEY_RE = re.compile(r"^([A-Z]+)-\d+$", re.IGNORECASE)


def extract_project_key(issue_key: str) -> str:
    """``"DXTR-123"`` → ``"DXTR"``; otherwise the uppercased text before the first ``-``."""
    match = _PROJECT_KEY_RE.match(issue_key)
    if match:
        return match.group(1).upper()
    return issue_key.split("-")[0].upper()


def extract_bot_instruction(body: str, bot_name: str) -> str | None:
    """Return the trimmed text after ``@<bot_name>``, or None when not mentioned."""
    match = trigger_pattern(bot_name).search(body)
    if not match:
        return None
    return match.group(1).strip()


# ── Payload access ───────────────────────────────────────────────────────────


def _dict(value: Any) -> dict[str, Any]:
    """``value`` if it is a JSON object, else an empty one."""
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _int(value: Any) -> int | None:
    # bool is an int subclass; JSON true is not an issue number
    return value if isinstance(value, int) and not isinstance(value, bool) else None


# ── Label changes ────────────────────────────────────────────────────────────


def _label_set(value: Any) -> set[str]:
    """Jira changelog label strings are space-separated; missing → empty."""
    if not isinstance(value, str):
        return set()
    return set(value.split())


def find_labels_change(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return the changelog item for the ``labels`` field, if present."""
    changelog = payload.get("changelog")
    items = changelog.get("items") if isinstance(changelog, dict) else None
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and item.get("field") == "labels":
            return item
    return None


def was_label_added(payload: dict[str, Any], label: str) -> bool:
    """True iff ``label`` is in the new label set and was not in the old one."""
    change = find_labels_change(payload)
    if change is None:
        return False
    return label in _label_set(change.get("toString")) and label not in _label_set(
        change.get("fromString")
    )


# ── Jira ─────────────────────────────────────────────────────────────────────


def _issue_key(payload: dict[str, Any]) -> str | None:
    return _str(_dict(payload.get("issue")).get("key"))


def _build_jira_job(issue_key: str, instruction: str, triggered_by: str) -> TriggerResult:
    try:
        job = JiraJob(
            issue_key=issue_key,
            project_key=extract_project_key(issue_key),
            instruction=instruction,
            triggered_by=triggered_by,
        )
    except ValidationError as e:
        return Ignored(reason=f"malformed payload: {e.error_count()} invalid field(s)")
    return Enqueue(job=job)


def resolve_jira_event(payload: Any, config: AppConfig) -> TriggerResult:
    """Classify a Jira webhook payload."""
    if not isinstance(payload, dict):
        return Ignored(reason="malformed payload")

    event = payload.get("webhookEvent")
    if event == JIRA_COMMENT_CREATED:
        return _resolve_jira_comment(payload, config)
    if event == JIRA_ISSUE_UPDATED:
        return _resolve_jira_label_change(payload, config)
    return Ignored(reason="unhandled event")


def _resolve_jira_comment(payload: dict[str, Any], config: AppConfig) -> TriggerResult:
    comment = payload.get("comment")
    issue_key = _issue_key(payload)
    if not isinstance(comment, dict) or issue_key is None:
        return Ignored(reason="malformed payload: missing comment or issue key")

    instruction = extract_bot_instruction(get_comment_text(comment.get("body")), config.bot_name)
    if not instruction:
        return Ignored(reason=f"no @{config.bot_name} trigger found")

    author = _str(_dict(comment.get("author")).get("displayName"))
    return _build_jira_job(issue_key, instruction, author or "unknown")


def _resolve_jira_label_change(payload: dict[str, Any], config: AppConfig) -> TriggerResult:
    label = config.trigger_label
    if not label:
        return Ignored(reason="label trigger not configured")

    issue_key = _issue_key(payload)
    if issue_key is None:
        return Ignored(reason="malformed payload: missing issue key")

    if find_labels_change(payload) is None:
        return Ignored(reason="no labels field in changelog")

    if not was_label_added(payload, label):
        return Ignored(reason=f'trigger label "{label}" was not added')

    actor = _str(_dict(payload.get("user")).get("displayName"))
    return _build_jira_job(issue_key, LABEL_TRIGGER_INSTRUCTION, actor or LABEL_TRIGGER_ACTOR)


# ── GitHub ───────────────────────────────────────────────────────────────────


def resolve_github_event(event_type: str, payload: Any, config: AppConfig) -> TriggerResult:
    """Classify a GitHub webhook delivery.

    Args:
        event_type: The ``X-GitHub-Event`` header value.
        payload: Parsed JSON body.
    """
    if not isinstance(payload, dict):
        return Ignored(reason="malformed payload")
    if payload.get("action") != "created" or event_type not in (
        "issue_comment",
        "pull_request_review_comment",
    ):
        return Ignored(reason="unhandled event")

    comment = payload.get("comment")
    repository = payload.get("repository")
    if not isinstance(comment, dict) or not isinstance(repository, dict):
        return Ignored(reason="malformed payload: missing comment or repository")

    user = _dict(comment.get("user"))
    if user.get("type") == "Bot":
        return Ignored(reason="comment authored by a bot")

    body = comment.get("body")
    instruction = extract_bot_instruction(body if isinstance(body, str) else "", config.bot_name)
    if not instruction:
        return Ignored(reason=f"no @{config.bot_name} trigger found")

    owner = _str(_dict(repository.get("owner")).get("login"))
    repo = _str(repository.get("name"))
    if not owner or not repo:
        return Ignored(reason="malformed payload: missing repository owner or name")

    pr_number: int | None = None
    issue_number: int | None = None
    branch_name: str | None = None

    if event_type == "pull_request_review_comment":
        pull_request = _dict(payload.get("pull_request"))
        pr_number = _int(pull_request.get("number"))
        branch_name = _str(_dict(pull_request.get("head")).get("ref"))
    else:
        issue = _dict(payload.get("issue"))
        if issue.get("pull_request") is not None:
            pr_number = _int(issue.get("number"))
        else:
            issue_number = _int(issue.get("number"))

    if pr_number is None and issue_number is None:
        return Ignored(reason="malformed payload: missing issue or pull request number")

    try:
        job = GitHubJob(
            owner=owner,
            repo=repo,
            pr_number=pr_number,
            issue_number=issue_number,
            branch_name=branch_name,
            instruction=instruction,
            triggered_by=_str(user.get("login")) or "unknown",
        )
    except ValidationError as e:
        return Ignored(reason=f"malformed payload: {e.error_count()} invalid field(s)")
    return Enqueue(job=job)


# ── Bulk ─────────────────────────────────────────────────────────────────────

SearchFn = Callable[[str], Awaitable[list[IssueSummary]]]


def resolve_bulk_label(requested: str | None, config: AppConfig) -> str:
    """Pick the label for a bulk run: the request's label wins over config.

    Raises:
        ConfigError: If neither is set.
    """
    label = (requested or "").strip() or config.trigger_label
    if not label:
        raise ConfigError(
            "No trigger label configured. Set JIRA_LABEL_TRIGGER or pass a label in the request body."
        )
    return label


async def bulk_label_jobs(label: str, search: SearchFn) -> list[JiraJob]:
    """One job per open issue currently carrying ``label``."""
    issues = await search(label)
    jobs = [
        JiraJob(
            issue_key=issue.key,
            project_key=extract_project_key(issue.key),
            instruction=LABEL_TRIGGER_INSTRUCTION,
            triggered_by=BULK_TRIGGER_ACTOR,
        )
        for issue in issues
    ]
    logger.debug("Bulk label %r matched %d open issue(s)", label, len(jobs))
    return jobs
