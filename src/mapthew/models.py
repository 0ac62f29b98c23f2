"""Core data models for Mapthew."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ── Job descriptors ──────────────────────────────────────────────────────────


class _JobBase(BaseModel):
    """Fields common to every job source.

    ``extra="forbid"`` keeps the variants disjoint: a Jira job carrying
    ``owner``/``repo`` is a validation error, not a silently ignored field.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    instruction: str = Field(description="Free-text instruction for the agent")
    triggered_by: str = Field(description="Display name of the human who caused the job")


class JiraJob(_JobBase):
    """Job triggered from a Jira comment, label change, or bulk label run."""

    source: Literal["jira"] = "jira"
    issue_key: str = Field(description="e.g. 'DXTR-123'")
    project_key: str = Field(description="Uppercased issue-key prefix, e.g. 'DXTR'")


class GitHubJob(_JobBase):
    """Job triggered from a GitHub issue or PR comment."""

    source: Literal["github"] = "github"
    owner: str
    repo: str
    pr_number: int | None = None
    issue_number: int | None = None
    branch_name: str | None = Field(default=None, description="PR head branch, if known")

    @property
    def number(self) -> int | None:
        """The PR number if present, else the issue number."""
        return self.pr_number if self.pr_number is not None else self.issue_number


class AdminJob(_JobBase):
    """Job submitted directly through the API. Has no external posting target."""

    source: Literal["admin"] = "admin"
    jira_issue_key: str | None = None
    github_owner: str | None = None
    github_repo: str | None = None
    github_pr_number: int | None = None


Job = Annotated[Union[JiraJob, GitHubJob, AdminJob], Field(discriminator="source")]

_job_adapter: TypeAdapter[Job] = TypeAdapter(Job)


def parse_job(data: dict[str, Any]) -> JiraJob | GitHubJob | AdminJob:
    """Validate a serialized job descriptor into its concrete variant."""
    return _job_adapter.validate_python(data)


# ── Trigger results ──────────────────────────────────────────────────────────


class Ignored(BaseModel):
    """The event does not produce work. ``reason`` is machine-readable."""

    reason: str


class Enqueue(BaseModel):
    """The event produces exactly one job."""

    job: Job


TriggerResult = Union[Ignored, Enqueue]


# ── Sessions ─────────────────────────────────────────────────────────────────


class SessionRecord(BaseModel):
    """A persistent workspace bound to one session key."""

    session_key: str
    workspace_path: str
    last_used_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    has_prior_interaction: bool = Field(
        default=False, description="Whether the agent has completed a run in this workspace"
    )


# ── Jira search results ──────────────────────────────────────────────────────


class IssueSummary(BaseModel):
    key: str
    summary: str = ""
