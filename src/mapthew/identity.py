"""Job identity — stable session keys and human-readable job labels.

Every job maps to a session key. Jobs that share a key share one workspace
and one resumable agent session, so repeated triggers on the same ticket (or
the PR implementing it) continue where the last run stopped.
"""

from __future__ import annotations

import re
from typing import assert_never

from mapthew.models import AdminJob, GitHubJob, JiraJob

ADMIN_SESSION_KEY = "admin"

# Issue key anywhere in a branch name: "DXTR-123", "feature/DXTR-123-add-auth",
# "mapthew_DXTR-456".
_BRANCH_ISSUE_KEY_RE = re.compile(r"([A-Za-z]+-\d+)")


def extract_issue_key_from_branch(branch_name: str) -> str | None:
    """Return the uppercased issue key embedded in a branch name, if any."""
    match = _BRANCH_ISSUE_KEY_RE.search(branch_name)
    return match.group(1).upper() if match else None


def session_key(job: JiraJob | GitHubJob | AdminJob) -> str:
    """Derive the session key for a job.

    - Jira: the issue key.
    - GitHub: the issue key found in the PR branch, so a PR and its ticket
      share a session; otherwise ``gh-{owner}-{repo}-{number}``.
    - Admin: always ``"admin"``.
    """
    match job:
        case JiraJob():
            return job.issue_key
        case GitHubJob():
            if job.branch_name:
                issue_key = extract_issue_key_from_branch(job.branch_name)
                if issue_key:
                    return issue_key
            return f"gh-{job.owner}-{job.repo}-{job.number}"
        case AdminJob():
            return ADMIN_SESSION_KEY
        case _:
            assert_never(job)


def readable_id(job: JiraJob | GitHubJob | AdminJob) -> str:
    """Short label for logs and messages. Not an identity."""
    match job:
        case JiraJob():
            return job.issue_key
        case GitHubJob():
            return f"{job.repo}#{job.number}" if job.number is not None else job.repo
        case AdminJob():
            return ADMIN_SESSION_KEY
        case _:
            assert_never(job)
