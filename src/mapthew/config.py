"""Configuration for Mapthew.

Two layers:

- ``Settings`` — static deployment settings (credentials, paths, the agent
  command). Read once at startup from an optional ``mapthew.yaml`` plus
  environment overrides.
- ``AppConfig`` / ``ConfigStore`` — runtime-mutable settings (bot name,
  trigger label, model, session limits). The store is the single mutator:
  every change is validated as a whole before it replaces the current
  config, so a rejected update leaves the previous values in place.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from mapthew.errors import ConfigError
from mapthew.output_buffer import DEFAULT_MAX_BUFFER_BYTES, get_max_buffer_bytes

logger = logging.getLogger(__name__)

DEFAULT_BOT_NAME = "mapthew"

CLAUDE_MODELS: list[str] = [
    "claude-sonnet-4-5",
    "claude-opus-4-5",
    "claude-haiku-4-5",
]

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-5"

_BOT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")


def is_valid_bot_name(name: str) -> bool:
    """Lowercase alphanumerics plus ``-``/``_``, 1–32 chars, no leading ``-``/``_``."""
    return bool(_BOT_NAME_RE.fullmatch(name or ""))


def is_valid_jira_url(url: str) -> bool:
    """Empty (not configured) or an absolute ``https://`` URL."""
    if url == "":
        return True
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme == "https" and bool(parsed.netloc)


# ── Runtime config ───────────────────────────────────────────────────────────


class AppConfig(BaseModel):
    """Runtime-mutable settings, persisted by ``ConfigStore``."""

    bot_name: str = DEFAULT_BOT_NAME
    trigger_label: str = ""  # empty → label trigger disabled
    claude_model: str = DEFAULT_CLAUDE_MODEL
    jira_base_url: str = ""
    max_sessions: int = Field(default=20, ge=1)
    prune_threshold_days: float = Field(default=7, gt=0)
    prune_interval_days: float = Field(default=1, gt=0)
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES
    verbose_logs: bool = False

    @field_validator("bot_name")
    @classmethod
    def _validate_bot_name(cls, v: str) -> str:
        if not is_valid_bot_name(v):
            raise ValueError(
                f"Invalid bot name {v!r}: use 1-32 lowercase letters, digits, '-' or '_', "
                "not starting with '-' or '_'"
            )
        return v

    @field_validator("jira_base_url")
    @classmethod
    def _validate_jira_url(cls, v: str) -> str:
        if not is_valid_jira_url(v):
            raise ValueError(f"Invalid Jira base URL {v!r}: must be a valid HTTPS URL")
        return v.rstrip("/")

    @field_validator("claude_model")
    @classmethod
    def _validate_model(cls, v: str) -> str:
        if v not in CLAUDE_MODELS:
            raise ValueError(f"Invalid model {v!r}. Must be one of: {', '.join(CLAUDE_MODELS)}")
        return v

    @field_validator("trigger_label")
    @classmethod
    def _strip_label(cls, v: str) -> str:
        return v.strip()

    @field_validator("max_buffer_bytes", mode="before")
    @classmethod
    def _coerce_buffer_limit(cls, v: Any) -> int:
        return get_max_buffer_bytes(v if v is not None else DEFAULT_MAX_BUFFER_BYTES)

    # ── Derived names ────────────────────────────────────────────────────

    @property
    def bot_display_name(self) -> str:
        """e.g. ``"mapthew"`` → ``"Mapthew"``."""
        return self.bot_name[:1].upper() + self.bot_name[1:]

    @property
    def queue_name(self) -> str:
        return f"{self.bot_name}-jobs"

    @property
    def branch_prefix(self) -> str:
        return f"{self.bot_name}-bot"

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        return trigger_pattern(self.bot_name)


def trigger_pattern(bot_name: str) -> re.Pattern[str]:
    """Case-insensitive ``@<bot> <instruction>`` matcher; group 1 is the instruction."""
    return re.compile(rf"@{re.escape(bot_name)}\s+(.*)", re.IGNORECASE)


class ConfigStore:
    """Holds the current ``AppConfig`` and persists it as YAML.

    Components read ``store.config`` on every use rather than caching
    values, so updates made through the API take effect on the next event.
    """

    def __init__(self, path: Path | None = None, defaults: AppConfig | None = None):
        self.path = path
        self._config = defaults or AppConfig()

    @property
    def config(self) -> AppConfig:
        return self._config

    def load(self) -> AppConfig:
        """Overlay persisted values (if any) on top of the defaults.

        An unreadable or invalid file is logged and ignored; the defaults
        stay in effect.
        """
        if self.path is None or not self.path.exists():
            return self._config
        try:
            with open(self.path) as f:
                raw = yaml.safe_load(f) or {}
            self._config = self._validated({**self._config.model_dump(), **raw})
            logger.info("Loaded runtime config from %s", self.path)
        except (OSError, yaml.YAMLError, ConfigError):
            logger.exception("Ignoring unreadable runtime config at %s", self.path)
        return self._config

    def update(self, **changes: Any) -> AppConfig:
        """Apply ``changes`` atomically.

        The new config is written to disk before it replaces the current
        one, so a failed write leaves both unchanged.

        Raises:
            ConfigError: If any field is invalid. Nothing is changed.
            OSError: If the config file could not be written. Nothing is changed.
        """
        unknown = set(changes) - set(AppConfig.model_fields)
        if unknown:
            raise ConfigError(f"Unknown config field(s): {', '.join(sorted(unknown))}")

        old = self._config
        new = self._validated({**old.model_dump(), **changes})
        self._save(new)
        self._config = new

        if old.bot_name != new.bot_name:
            logger.info("Bot name updated: %r -> %r", old.bot_name, new.bot_name)
        logger.info(
            "Config updated: bot_name=%s claude_model=%s jira_base_url=%s trigger_label=%r",
            new.bot_name,
            new.claude_model,
            new.jira_base_url,
            new.trigger_label,
        )
        return new

    def set_bot_name(self, name: str) -> None:
        """Validated setter; an invalid name raises and keeps the current one."""
        self.update(bot_name=name)

    @staticmethod
    def _validated(data: dict[str, Any]) -> AppConfig:
        try:
            return AppConfig(**data)
        except ValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise ConfigError(messages) from e

    def _save(self, config: AppConfig) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        try:
            with open(tmp, "w") as f:
                yaml.safe_dump(config.model_dump(), f, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise


# ── Static settings ──────────────────────────────────────────────────────────


class JiraSettings(BaseModel):
    base_url: str = ""
    email: str = ""
    api_token: str = ""
    # Projects to poll for mentions when webhooks cannot reach the server
    poll_projects: list[str] = Field(default_factory=list)
    poll_interval_seconds: float = Field(default=60, gt=0)

    @field_validator("poll_projects", mode="before")
    @classmethod
    def _split_projects(cls, v: Any) -> Any:
        """Accept ``"DXTR, OPS"`` as well as a list."""
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, list):
            return [p.strip() for p in v if isinstance(p, str) and p.strip()]
        return v

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.email and self.api_token)


class AgentSettings(BaseModel):
    command: str = "claude"
    mcp_config_path: str | None = None
    instructions_dir: str | None = None  # *.md templates; None → built-in template
    claude_home: str = "~/.claude"  # where the agent keeps resumable sessions
    timeout_seconds: float = 0  # 0 = wait for the process indefinitely


class Settings(BaseModel):
    """Deployment settings (mapthew.yaml + environment)."""

    data_dir: str = ".mapthew-data"
    github_token: str = ""
    jira: JiraSettings = Field(default_factory=JiraSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    worker_concurrency: int = Field(default=1, ge=1)
    defaults: AppConfig = Field(default_factory=AppConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def workspaces_dir(self) -> Path:
        return self.data_path / "workspaces"

    @property
    def sessions_db_path(self) -> Path:
        return self.data_path / "sessions.db"

    @property
    def runtime_config_path(self) -> Path:
        return self.data_path / "config.yaml"


# Environment variable → (section, field). ``None`` section = top level.
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "MAPTHEW_DATA_DIR": (None, "data_dir"),
    "GITHUB_TOKEN": (None, "github_token"),
    "WORKER_CONCURRENCY": (None, "worker_concurrency"),
    "JIRA_BASE_URL": ("jira", "base_url"),
    "JIRA_EMAIL": ("jira", "email"),
    "JIRA_API_TOKEN": ("jira", "api_token"),
    "JIRA_POLL_PROJECTS": ("jira", "poll_projects"),
    "JIRA_POLL_INTERVAL_SECONDS": ("jira", "poll_interval_seconds"),
    "AGENT_COMMAND": ("agent", "command"),
    "MCP_CONFIG_PATH": ("agent", "mcp_config_path"),
    "INSTRUCTIONS_DIR": ("agent", "instructions_dir"),
    "CLAUDE_HOME": ("agent", "claude_home"),
    "AGENT_TIMEOUT_SECONDS": ("agent", "timeout_seconds"),
    "BOT_NAME": ("defaults", "bot_name"),
    "JIRA_LABEL_TRIGGER": ("defaults", "trigger_label"),
    "CLAUDE_MODEL": ("defaults", "claude_model"),
    "MAX_SESSIONS": ("defaults", "max_sessions"),
    "PRUNE_THRESHOLD_DAYS": ("defaults", "prune_threshold_days"),
    "PRUNE_INTERVAL_DAYS": ("defaults", "prune_interval_days"),
    "MAX_OUTPUT_BUFFER_BYTES": ("defaults", "max_buffer_bytes"),
    "VERBOSE_LOGS": ("defaults", "verbose_logs"),
}


def load_settings(config_path: Path | None = None) -> Settings:
    """Load deployment settings.

    Args:
        config_path: Optional YAML file. Missing file → built-in defaults.

    Raises:
        ConfigError: If the merged settings fail validation.
    """
    raw: dict[str, Any] = {}
    if config_path is not None and config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    for env_name, (section, field) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        if section is None:
            raw[field] = value
        else:
            raw.setdefault(section, {})[field] = value

    # The Jira URL is both a credential and a runtime setting.
    jira_url = raw.get("jira", {}).get("base_url")
    if jira_url:
        raw.setdefault("defaults", {}).setdefault("jira_base_url", jira_url)

    try:
        settings = Settings(**raw)
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    logger.info(
        "Loaded settings: data_dir=%s agent=%s jira=%s",
        settings.data_dir,
        settings.agent.command,
        "configured" if settings.jira.configured else "not configured",
    )
    return settings
