"""Mapthew Server — FastAPI application that ties all components together.

Startup sequence:
1. Load runtime config (data dir ``config.yaml`` over settings defaults)
2. Open the session database
3. Start the Jira and GitHub clients
4. Start the job queue with the worker attached
5. Start the prune loop
6. Begin accepting webhooks
7. Start the Jira poller, when projects are configured

Shutdown runs in reverse: the background loops and queue are cancelled
first so no job is still running when the database closes.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from mapthew import __version__
from mapthew.api import configure as configure_api
from mapthew.api import router as api_router
from mapthew.config import ConfigStore, Settings, load_settings
from mapthew.github_client import GitHubClient
from mapthew.jira_client import JiraClient
from mapthew.job_queue import JobQueue
from mapthew.poller import JiraPoller
from mapthew.prompt import load_templates
from mapthew.sessions import PruneLoop, SessionManager
from mapthew.webhook import configure as configure_webhook
from mapthew.webhook import enqueue
from mapthew.webhook import router as webhook_router
from mapthew.worker import Worker

logger = logging.getLogger(__name__)


class MapthewServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self.store = ConfigStore(self.settings.runtime_config_path, self.settings.defaults)

        # Components (initialized in start())
        self.sessions: SessionManager | None = None
        self.jira: JiraClient | None = None
        self.github: GitHubClient | None = None
        self.queue: JobQueue | None = None
        self.worker: Worker | None = None
        self.prune_loop: PruneLoop | None = None
        self.poller: JiraPoller | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        settings = self.settings
        logger.info("Mapthew server starting (data_dir=%s)", settings.data_path)

        # 1. Runtime config
        settings.data_path.mkdir(parents=True, exist_ok=True)
        config = self.store.load()
        logger.info(
            "Bot name: %s, model: %s, trigger label: %r",
            config.bot_name,
            config.claude_model,
            config.trigger_label,
        )

        # 2. Sessions
        self.sessions = SessionManager(
            settings.workspaces_dir,
            str(settings.sessions_db_path),
            max_sessions=lambda: self.store.config.max_sessions,
            claude_home=Path(settings.agent.claude_home),
        )
        await self.sessions.initialize()

        # 3. API clients
        self.jira = JiraClient(
            base_url=settings.jira.base_url,
            email=settings.jira.email,
            api_token=settings.jira.api_token,
        )
        await self.jira.start()
        self.github = GitHubClient(token=settings.github_token or None)
        await self.github.start()

        # 4. Queue + worker
        instructions_dir = settings.agent.instructions_dir
        templates = load_templates(Path(instructions_dir) if instructions_dir else None)
        self.worker = Worker(
            self.sessions,
            self.store,
            settings.agent,
            templates,
            jira=self.jira,
            github=self.github,
        )
        self.queue = JobQueue(config.queue_name, concurrency=settings.worker_concurrency)
        self.worker.attach(self.queue)
        await self.queue.start()

        # 5. Prune loop
        self.prune_loop = PruneLoop(
            self.sessions,
            interval_days=lambda: self.store.config.prune_interval_days,
            threshold_days=lambda: self.store.config.prune_threshold_days,
        )
        await self.prune_loop.start()

        # 6. Wire HTTP routes
        configure_webhook(self.queue, self.store, jira=self.jira, github=self.github)
        configure_api(self.store, jira=self.jira, sessions=self.sessions, queue=self.queue)

        # 7. Jira poller
        if settings.jira.poll_projects:
            if self.jira.configured:
                self.poller = JiraPoller(
                    self.jira,
                    self.store,
                    enqueue,
                    projects=settings.jira.poll_projects,
                    interval_seconds=settings.jira.poll_interval_seconds,
                )
                await self.poller.start()
            else:
                logger.warning("Jira poll projects set but Jira credentials missing; poller disabled")

        logger.info("Mapthew server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("Mapthew server shutting down")

        if self.poller:
            await self.poller.stop()
        if self.prune_loop:
            await self.prune_loop.stop()
        if self.queue:
            await self.queue.stop()
        if self.github:
            await self.github.close()
        if self.jira:
            await self.jira.close()
        if self.sessions:
            await self.sessions.close()

        logger.info("Mapthew server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server: MapthewServer | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(settings: Settings | None = None, *, config_path: Path | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Pre-built settings. Loaded from ``config_path`` and the
            environment when omitted.
        config_path: Optional ``mapthew.yaml``.
    """
    global _server
    _server = MapthewServer(settings or load_settings(config_path))

    app = FastAPI(
        title="Mapthew",
        version=__version__,
        description="Jira and GitHub triggered Claude Code sessions",
        lifespan=lifespan,
    )

    # Mount routes
    app.include_router(webhook_router)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with queue and session counts."""
        sessions = None
        if _server.sessions:
            sessions = {
                "count": await _server.sessions.get_session_count(),
                "max": _server.sessions.get_max_sessions(),
            }
        return {
            "status": "ok",
            "bot_name": _server.store.config.bot_name,
            "queue": _server.queue.name if _server.queue else None,
            "pending_jobs": _server.queue.pending_count() if _server.queue else 0,
            "sessions": sessions,
        }

    return app
