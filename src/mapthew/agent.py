"""Agent subprocess runner.

Spawns the Claude Code CLI in a session workspace and captures both of its
output streams through ``BoundedBuffer``, so a runaway agent cannot grow
memory without limit. Only the tail of each stream is kept.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass
from pathlib import Path

from mapthew.output_buffer import DEFAULT_MAX_BUFFER_BYTES, BoundedBuffer

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class AgentOptions:
    """How to invoke the agent CLI."""

    command: str = "claude"
    model: str | None = None
    mcp_config_path: str | None = None
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES
    timeout_seconds: float = 0  # 0 = unbounded


@dataclass
class AgentResult:
    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False


def build_agent_args(prompt: str, options: AgentOptions, *, has_session: bool) -> list[str]:
    """Command line for one non-interactive agent run."""
    args = [options.command, "--print", prompt, "--dangerously-skip-permissions"]
    if options.mcp_config_path:
        args += ["--mcp-config", options.mcp_config_path]
    if options.model:
        args += ["--model", options.model]
    if has_session:
        args.append("--continue")
    return args


async def _pump(
    stream: asyncio.StreamReader, buffer: BoundedBuffer, name: str, label: str
) -> None:
    """Drain ``stream`` into ``buffer``, warning once when it starts dropping output."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    warned = False
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            buffer.append(decoder.decode(b"", final=True))
            break
        buffer.append(decoder.decode(chunk))
        if buffer.truncated and not warned:
            warned = True
            logger.warning(
                "[%s] %s exceeded %d bytes; keeping only the most recent output",
                label,
                name,
                buffer.capacity,
            )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def run_agent(
    prompt: str,
    work_dir: Path,
    *,
    has_session: bool,
    options: AgentOptions,
    label: str = "agent",
) -> AgentResult:
    """Run the agent to completion in ``work_dir``.

    Never raises for process-level failures: a spawn error, a non-zero exit
    or a timeout is reported through ``AgentResult.error``. Cancellation
    kills the process and propagates.

    Args:
        prompt: Full prompt passed via ``--print``.
        work_dir: The session workspace, used as the process cwd.
        has_session: Resume the previous conversation (``--continue``).
        options: Command, model and capture limits.
        label: Readable job id used as a log prefix.
    """
    args = build_agent_args(prompt, options, has_session=has_session)
    logger.info(
        "[%s] Running agent in %s (continue=%s, model=%s)",
        label,
        work_dir,
        has_session,
        options.model,
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(work_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error("[%s] Failed to spawn %s: %s", label, options.command, e)
        return AgentResult(success=False, error=f"Failed to spawn process: {e}")

    stdout = BoundedBuffer(options.max_buffer_bytes)
    stderr = BoundedBuffer(options.max_buffer_bytes)
    run = asyncio.gather(
        _pump(proc.stdout, stdout, "stdout", label),
        _pump(proc.stderr, stderr, "stderr", label),
        proc.wait(),
    )
    timeout = options.timeout_seconds if options.timeout_seconds > 0 else None

    try:
        await asyncio.wait_for(run, timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        logger.error("[%s] Agent timed out after %ss", label, options.timeout_seconds)
        return AgentResult(
            success=False,
            output=stdout.to_string(),
            error=f"Agent timed out after {options.timeout_seconds:g}s",
            exit_code=proc.returncode,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
        )
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    exit_code = proc.returncode
    result = AgentResult(
        success=exit_code == 0,
        output=stdout.to_string(),
        exit_code=exit_code,
        stdout_truncated=stdout.truncated,
        stderr_truncated=stderr.truncated,
    )
    if not result.success:
        result.error = stderr.to_string().strip() or f"Process exited with code {exit_code}"
        logger.warning("[%s] Agent exited with code %s", label, exit_code)
    else:
        logger.info("[%s] Agent finished successfully", label)
    return result
