"""Exception types shared across Mapthew components."""

from __future__ import annotations


class MapthewError(Exception):
    """Base class for all Mapthew errors."""


class ConfigError(MapthewError, ValueError):
    """A configuration value failed validation.

    The store that raised it keeps its previous (valid) state.
    """


class AgentError(MapthewError):
    """The agent subprocess failed to start or exited non-zero.

    The message is the bounded tail of the agent's stderr (or the spawn
    error). Raised from ``Worker.process`` so the queue's retry policy
    applies to the whole job.
    """


class JiraError(MapthewError):
    """A Jira API call failed or Jira is not configured."""


class QueueError(MapthewError):
    """A job could not be submitted to the queue (closed or full)."""
