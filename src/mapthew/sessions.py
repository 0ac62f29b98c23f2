"""Session/Workspace Manager — persistent per-session working directories.

Maps a session key (see ``mapthew.identity``) to a directory under
``workspaces_dir`` and tracks each one in an SQLite ``sessions`` table.

Lifecycle per key: absent → created → reused any number of times →
evicted (capacity) or pruned (inactivity). The dispatcher never deletes
workspaces; this module is the only place that does.

Capacity is a soft cap: before creating a workspace for an unseen key, if
the table is at ``max_sessions`` the least-recently-used session is evicted.
Within one manager the whole check-evict-create sequence runs under a single
``asyncio.Lock``. Several worker processes sharing one data dir still race
on it, which is accepted (the cap is best-effort across processes).

Sessions leased by a running job are never evicted or pruned.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Callable

import aiosqlite

from mapthew.models import SessionRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_key TEXT PRIMARY KEY,
    workspace_path TEXT NOT NULL,
    has_prior_interaction INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_used_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_last_used ON sessions(last_used_at);
"""

_UNSAFE_DIR_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> str:
    """Fixed-width ISO timestamp so SQL string comparison orders correctly."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def workspace_dir_name(session_key: str) -> str:
    """Filesystem-safe directory name for a session key.

    Keys that need escaping get a short hash suffix so two keys that
    sanitize to the same text still get distinct directories.
    """
    safe = _UNSAFE_DIR_CHARS.sub("_", session_key)
    if safe != session_key or safe in ("", ".", ".."):
        digest = hashlib.sha1(session_key.encode()).hexdigest()[:8]
        safe = f"{safe}-{digest}"
    return safe


class SessionManager:
    """SQLite-backed session table plus on-disk workspaces."""

    def __init__(
        self,
        workspaces_dir: Path,
        db_path: str,
        *,
        max_sessions: int | Callable[[], int] = 20,
        claude_home: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.workspaces_dir = workspaces_dir
        self.db_path = db_path
        self._max_sessions = max_sessions
        self.claude_home = (claude_home or Path("~/.claude")).expanduser()
        self._clock = clock

        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        # session_key → number of jobs currently running in it
        self._leases: dict[str, int] = {}

    async def initialize(self) -> None:
        """Open database and create tables."""
        self.workspaces_dir.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info(
            "Session manager initialized: %s (%d sessions, workspaces=%s)",
            self.db_path,
            await self.get_session_count(),
            self.workspaces_dir,
        )

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Session manager not initialized — call initialize() first")
        return self._db

    # ── Queries ──────────────────────────────────────────────────────────

    async def workspace_exists(self, session_key: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM sessions WHERE session_key = ?", (session_key,)
        )
        return await cursor.fetchone() is not None

    async def get_session(self, session_key: str) -> SessionRecord | None:
        cursor = await self.db.execute(
            "SELECT * FROM sessions WHERE session_key = ?", (session_key,)
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def list_sessions(self) -> list[SessionRecord]:
        """All sessions, most recently used first."""
        cursor = await self.db.execute("SELECT * FROM sessions ORDER BY last_used_at DESC")
        return [self._row_to_record(row) for row in await cursor.fetchall()]

    async def get_session_count(self) -> int:
        cursor = await self.db.execute("SELECT COUNT(*) FROM sessions")
        row = await cursor.fetchone()
        return row[0]

    def get_max_sessions(self) -> int:
        if callable(self._max_sessions):
            return self._max_sessions()
        return self._max_sessions

    def has_existing_session(self, workspace_path: Path) -> bool:
        """Whether the agent has resumable conversation state for this workspace.

        Claude Code keeps one ``*.jsonl`` transcript per conversation under
        ``<claude_home>/projects/<cwd with non-alphanumerics as '-'>``.
        """
        encoded = re.sub(r"[^A-Za-z0-9]", "-", str(Path(workspace_path).resolve()))
        project_dir = self.claude_home / "projects" / encoded
        try:
            return any(project_dir.glob("*.jsonl"))
        except OSError:
            return False

    # ── Mutations ────────────────────────────────────────────────────────

    async def get_or_create_workspace(self, session_key: str) -> Path:
        """Return the workspace for ``session_key``, creating it if needed.

        Every call refreshes ``last_used_at``. Does not apply the capacity
        policy; use ``acquire_workspace`` for that.
        """
        async with self._lock:
            return await self._get_or_create(session_key)

    async def acquire_workspace(self, session_key: str) -> Path:
        """Get or create a workspace, evicting the LRU session first if at capacity.

        Eviction only happens when ``session_key`` is new. Reusing an
        existing session never evicts anything.
        """
        async with self._lock:
            if not await self.workspace_exists(session_key):
                count = await self.get_session_count()
                limit = self.get_max_sessions()
                if count >= limit:
                    logger.info(
                        "[Session] At soft cap (%d/%d), evicting oldest session", count, limit
                    )
                    await self._evict_oldest()
            return await self._get_or_create(session_key)

    @asynccontextmanager
    async def lease(self, session_key: str) -> AsyncIterator[Path]:
        """Acquire a workspace and protect it from eviction/pruning while in use."""
        # Leased before acquisition: eviction must never see this key as idle.
        self._leases[session_key] = self._leases.get(session_key, 0) + 1
        path: Path | None = None
        try:
            path = await self.acquire_workspace(session_key)
            yield path
        finally:
            remaining = self._leases[session_key] - 1
            if remaining:
                self._leases[session_key] = remaining
            else:
                del self._leases[session_key]
            await self.touch(session_key)
            if path is not None:
                await self.refresh_interaction(session_key, path)

    def is_leased(self, session_key: str) -> bool:
        return session_key in self._leases

    async def touch(self, session_key: str) -> None:
        """Refresh ``last_used_at`` for an existing session (no-op if absent)."""
        await self.db.execute(
            "UPDATE sessions SET last_used_at = ? WHERE session_key = ?",
            (_ts(self._clock()), session_key),
        )
        await self.db.commit()

    async def refresh_interaction(self, session_key: str, workspace_path: Path) -> bool:
        """Set ``has_prior_interaction`` from the transcripts on disk.

        A failed run that left a transcript still counts: the next run can
        resume it.
        """
        has_session = self.has_existing_session(workspace_path)
        await self.db.execute(
            "UPDATE sessions SET has_prior_interaction = ? WHERE session_key = ?",
            (int(has_session), session_key),
        )
        await self.db.commit()
        return has_session

    async def evict_oldest_session(self) -> str | None:
        """Remove the least-recently-used session. Returns its key, or None."""
        async with self._lock:
            return await self._evict_oldest()

    async def prune_inactive_sessions(self, threshold_days: float) -> list[str]:
        """Remove every session idle for longer than ``threshold_days``.

        ``now`` is fixed once per sweep. Each candidate is re-checked against
        its own ``last_used_at`` at deletion time, so a workspace touched
        after the sweep started survives. A failure on one candidate is
        logged and the sweep moves on; its record stays for the next sweep.
        """
        cutoff_at = self._clock() - timedelta(days=threshold_days)
        cutoff = _ts(cutoff_at)
        cursor = await self.db.execute(
            "SELECT * FROM sessions WHERE last_used_at < ? ORDER BY last_used_at ASC",
            (cutoff,),
        )
        candidates = [self._row_to_record(row) for row in await cursor.fetchall()]

        pruned: list[str] = []
        for record in candidates:
            if self.is_leased(record.session_key):
                logger.debug("[Session] Skipping in-use session %s", record.session_key)
                continue
            try:
                async with self._lock:
                    current = await self.get_session(record.session_key)
                    if current is None or current.last_used_at >= cutoff_at:
                        continue
                    await self._remove_workspace(current)
                    await self._delete_record(current.session_key)
                pruned.append(record.session_key)
                logger.info(
                    "[Session] Pruned inactive session %s (last used %s)",
                    record.session_key,
                    record.last_used_at.isoformat(),
                )
            except Exception:
                logger.exception("[Session] Failed to prune session %s", record.session_key)

        if pruned:
            logger.info("[Session] Pruned %d inactive session(s)", len(pruned))
        return pruned

    # ── Internals (caller holds self._lock) ──────────────────────────────

    async def _get_or_create(self, session_key: str) -> Path:
        now = _ts(self._clock())
        existing = await self.get_session(session_key)
        if existing is not None:
            path = Path(existing.workspace_path)
            # The directory may have been removed out from under us
            path.mkdir(parents=True, exist_ok=True)
            await self.db.execute(
                "UPDATE sessions SET last_used_at = ? WHERE session_key = ?",
                (now, session_key),
            )
            await self.db.commit()
            return path

        path = self.workspaces_dir / workspace_dir_name(session_key)
        path.mkdir(parents=True, exist_ok=True)
        await self.db.execute(
            """INSERT INTO sessions
               (session_key, workspace_path, has_prior_interaction, created_at, last_used_at)
               VALUES (?, ?, 0, ?, ?)""",
            (session_key, str(path), now, now),
        )
        await self.db.commit()
        logger.info("[Session] Created workspace for %s: %s", session_key, path)
        return path

    async def _evict_oldest(self) -> str | None:
        cursor = await self.db.execute(
            "SELECT * FROM sessions ORDER BY last_used_at ASC, created_at ASC"
        )
        victim: SessionRecord | None = None
        for row in await cursor.fetchall():
            record = self._row_to_record(row)
            if not self.is_leased(record.session_key):
                victim = record
                break

        if victim is None:
            logger.warning("[Session] No evictable session (all in use); exceeding soft cap")
            return None

        try:
            await self._remove_workspace(victim)
        except OSError:
            # The slot is still freed; a leftover directory is reused if the key returns.
            logger.exception("[Session] Failed to delete workspace %s", victim.workspace_path)
        await self._delete_record(victim.session_key)
        logger.info(
            "[Session] Evicted session %s (last used %s)",
            victim.session_key,
            victim.last_used_at.isoformat(),
        )
        return victim.session_key

    async def _remove_workspace(self, record: SessionRecord) -> None:
        path = Path(record.workspace_path)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)

    async def _delete_record(self, session_key: str) -> None:
        await self.db.execute("DELETE FROM sessions WHERE session_key = ?", (session_key,))
        await self.db.commit()

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> SessionRecord:
        return SessionRecord(
            session_key=row["session_key"],
            workspace_path=row["workspace_path"],
            has_prior_interaction=bool(row["has_prior_interaction"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_used_at=datetime.fromisoformat(row["last_used_at"]),
        )


class PruneLoop:
    """Recurring inactivity sweep, independent of job traffic.

    Runs one sweep immediately on ``start()`` and then every
    ``interval_days``. ``stop()`` cancels the task; call it before exit.
    """

    def __init__(
        self,
        manager: SessionManager,
        *,
        interval_days: float | Callable[[], float] = 1,
        threshold_days: float | Callable[[], float] = 7,
    ):
        self.manager = manager
        self._interval_days = interval_days
        self._threshold_days = threshold_days
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def interval_seconds(self) -> float:
        days = self._interval_days() if callable(self._interval_days) else self._interval_days
        return days * 86400

    @property
    def threshold_days(self) -> float:
        if callable(self._threshold_days):
            return self._threshold_days()
        return self._threshold_days

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="session-prune")
        logger.info("Prune loop started (interval=%.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Prune loop stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

    async def run_once(self) -> list[str]:
        """One sweep. Errors are logged, never raised."""
        threshold = self.threshold_days
        logger.info("[Session] Running scheduled prune (threshold: %s days)", threshold)
        try:
            return await self.manager.prune_inactive_sessions(threshold)
        except Exception:
            logger.exception("[Session] Prune failed")
            return []
