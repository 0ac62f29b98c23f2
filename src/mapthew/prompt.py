"""Prompt building for agent runs.

Instruction templates are Markdown files with ``{{placeholder}}`` slots.
All ``*.md`` files in the instructions directory are used, ``general.md``
first and the rest alphabetically, joined by horizontal rules. Without an
instructions directory a built-in template is used.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import assert_never

from mapthew.models import AdminJob, GitHubJob, JiraJob

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")

_DEFAULT_TEMPLATE = """\
You are {{botName}}, an autonomous coding agent.

{{triggeredBy}} asked you to:

{{instruction}}

## Context

- Jira issue: {{jira.issueKey}}
- GitHub repository: {{github.owner}}/{{github.repo}}
- GitHub pull request: {{github.prNumber}}

## Constraints

- Work on a branch named `{{branchPrefix}}/<issue-key>-<short-description>`
- Open or update a pull request when the change is ready
- Summarize what you did in a comment on the originating ticket or PR
"""


def load_templates(instructions_dir: Path | None) -> list[str]:
    """Read instruction templates, falling back to the built-in one."""
    if instructions_dir is None:
        return [_DEFAULT_TEMPLATE]

    files = sorted(
        instructions_dir.glob("*.md"),
        key=lambda p: (p.name != "general.md", p.name),
    )
    if not files:
        logger.warning("No *.md templates in %s, using built-in template", instructions_dir)
        return [_DEFAULT_TEMPLATE]
    return [f.read_text() for f in files]


def job_context(
    job: JiraJob | GitHubJob | AdminJob, *, bot_name: str, branch_prefix: str
) -> dict[str, str]:
    """Placeholder values for one job. Fields the job lacks are ``"unknown"``."""
    context = {
        "triggeredBy": job.triggered_by,
        "instruction": job.instruction,
        "botName": bot_name,
        "branchPrefix": branch_prefix,
        "github.owner": UNKNOWN,
        "github.repo": UNKNOWN,
        "github.prNumber": UNKNOWN,
        "jira.issueKey": UNKNOWN,
    }
    match job:
        case JiraJob():
            context["jira.issueKey"] = job.issue_key
        case GitHubJob():
            context["github.owner"] = job.owner
            context["github.repo"] = job.repo
            if job.pr_number is not None:
                context["github.prNumber"] = str(job.pr_number)
        case AdminJob():
            if job.jira_issue_key:
                context["jira.issueKey"] = job.jira_issue_key
            if job.github_owner:
                context["github.owner"] = job.github_owner
            if job.github_repo:
                context["github.repo"] = job.github_repo
            if job.github_pr_number is not None:
                context["github.prNumber"] = str(job.github_pr_number)
        case _:
            assert_never(job)
    return context


def render(template: str, context: dict[str, str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: context.get(m.group(1).strip(), UNKNOWN), template)


def build_prompt(
    job: JiraJob | GitHubJob | AdminJob,
    templates: list[str],
    *,
    bot_name: str,
    branch_prefix: str,
) -> str:
    context = job_context(job, bot_name=bot_name, branch_prefix=branch_prefix)
    return "\n\n---\n\n".join(render(t, context) for t in templates).strip()
