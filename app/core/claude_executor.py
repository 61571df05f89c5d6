"""Run Claude Code against a workspace and normalize what it prints.

The CLI is started once per request::

    claude --verbose [--dangerously-skip-permissions] -p "<input>" --output-format stream-json

``--dangerously-skip-permissions`` is passed for edits only; asks run with
the CLI's default permission prompts (which, headless, means read-only).

There is no wall-clock limit.  A watchdog wakes every
``claude_activity_check_interval_seconds`` and kills the process group once
nothing has been written to stdout or stderr for longer than the inactivity
ceiling.  The exit code alone decides success.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.core.errors import CLASS_CONFIGURATION, ExecutorError, ExecutorTimeoutError
from app.core.logging import get_logger
from app.core.models import ClaudeCodeResult
from app.core.stream_parser import StreamAccumulator, StreamParser

logger = get_logger("claude")

WORKSPACE_BOUNDARY_NOTICE = (
    "IMPORTANT: Only work within the current workspace directory. "
    "Do not access files outside this workspace."
)

_READ_SIZE = 64 * 1024


class ClaudeCodeRequest(BaseModel):
    question: str
    working_directory: str
    edit_request: bool = False
    context: str | None = None
    source_branch: str | None = None


class ClaudeCodeExecutor:
    """Spawn the Claude Code CLI and collect its result.

    Args:
        settings: Configuration; defaults to :func:`get_settings`.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    @staticmethod
    def build_input(request: ClaudeCodeRequest) -> str:
        text = request.question
        if request.context:
            text += f"\n\nContext: {request.context}"
        if request.edit_request:
            text += f"\n\n{WORKSPACE_BOUNDARY_NOTICE}"
        return text

    def build_command(self, request: ClaudeCodeRequest) -> list[str]:
        args = ["--verbose"]
        if request.edit_request:
            args.append("--dangerously-skip-permissions")
        args += ["-p", self.build_input(request), "--output-format", "stream-json"]

        wrapper = self._settings.claude_wrapper
        if wrapper:
            return ["bash", wrapper, request.working_directory, *args]
        return [self._settings.claude_binary, *args]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = "dumb"
        env["NO_COLOR"] = "1"

        mode = self._settings.claude_auth_mode.lower()
        key = self._settings.anthropic_api_key.strip()
        if mode == "cli":
            env.pop("ANTHROPIC_API_KEY", None)
        elif key:
            env["ANTHROPIC_API_KEY"] = key
        elif mode == "api":
            raise ExecutorError(
                "ANTHROPIC_API_KEY is not configured",
                classification=CLASS_CONFIGURATION,
            )
        return env

    def inactivity_ceiling(self, request: ClaudeCodeRequest) -> float:
        if request.edit_request:
            return self._settings.claude_inactivity_timeout_seconds
        return self._settings.claude_ask_inactivity_timeout_seconds

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: ClaudeCodeRequest) -> ClaudeCodeResult:
        """Run one request to completion.

        Raises:
            ExecutorError:        Missing workspace, spawn failure or non-zero exit.
            ExecutorTimeoutError: No output for longer than the inactivity ceiling.
        """
        workdir = Path(request.working_directory)
        if not workdir.is_dir():
            raise ExecutorError(
                f"Working directory {workdir} does not exist",
                classification=CLASS_CONFIGURATION,
            )

        env = self.build_env()
        command = self.build_command(request)
        ceiling = self.inactivity_ceiling(request)
        interval = min(self._settings.claude_activity_check_interval_seconds, ceiling)

        logger.info(
            "claude | start cwd=%s edit=%s branch=%s ceiling=%.0fs",
            workdir,
            request.edit_request,
            request.source_branch or "-",
            ceiling,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ExecutorError(f"Failed to start Claude Code ({command[0]}): {exc}") from exc

        started = time.monotonic()
        last_activity = started
        parser = StreamParser()
        acc = StreamAccumulator()
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        async def read_stdout() -> None:
            nonlocal last_activity
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while chunk := await proc.stdout.read(_READ_SIZE):
                last_activity = time.monotonic()
                text = decoder.decode(chunk)
                stdout_parts.append(text)
                for event in parser.feed(text):
                    acc.add(event)
            tail = decoder.decode(b"", final=True)
            if tail:
                stdout_parts.append(tail)
                for event in parser.feed(tail):
                    acc.add(event)
            for event in parser.flush():
                acc.add(event)

        async def read_stderr() -> None:
            nonlocal last_activity
            while chunk := await proc.stderr.read(_READ_SIZE):
                last_activity = time.monotonic()
                stderr_parts.append(chunk.decode("utf-8", errors="replace"))

        idle_at_kill: float | None = None

        async def watchdog() -> None:
            nonlocal idle_at_kill
            while proc.returncode is None:
                await asyncio.sleep(interval)
                idle = time.monotonic() - last_activity
                if idle > ceiling and proc.returncode is None:
                    idle_at_kill = idle
                    logger.warning("claude | no output for %.1fs, killing pid %s", idle, proc.pid)
                    self._kill_process(proc)
                    return

        guard = asyncio.create_task(watchdog())
        try:
            await asyncio.gather(read_stdout(), read_stderr())
            returncode = await proc.wait()
        finally:
            guard.cancel()
            with suppress(asyncio.CancelledError):
                await guard
            if proc.returncode is None:
                self._kill_process(proc)
                await proc.wait()

        raw_stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if idle_at_kill is not None:
            raise ExecutorTimeoutError(idle_at_kill, ceiling)

        if returncode != 0:
            preview = stderr.strip()[: self._settings.claude_error_preview_chars]
            logger.error(
                "claude | exit %s after %dms (subtype=%s)", returncode, elapsed_ms, acc.result_subtype
            )
            raise ExecutorError(
                f"Claude Code process exited with code {returncode} "
                f"(result subtype: {acc.result_subtype or 'unknown'}): {preview}",
                details=preview,
                exit_code=returncode,
                stderr=preview,
            )

        output = acc.final_output(raw_stdout, stderr)
        logger.info(
            "claude | done in %dms (%d events, %d chars output)",
            elapsed_ms,
            len(acc.json_logs),
            len(output),
        )
        return ClaudeCodeResult(
            output=output,
            json_logs=acc.json_logs,
            raw_output=raw_stdout,
            usage=acc.usage,
            result_subtype=acc.result_subtype,
            duration_ms=acc.duration_ms if acc.duration_ms is not None else elapsed_ms,
        )

    @staticmethod
    def _kill_process(proc: asyncio.subprocess.Process) -> None:
        """SIGKILL the process group started for *proc*."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            with suppress(ProcessLookupError):
                proc.kill()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def check_available(self) -> bool:
        """Return True when ``<binary> --version`` runs and exits 0."""
        binary = self._settings.claude_binary
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.warning("claude | %s not available: %s", binary, exc)
            return False

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self._settings.claude_version_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("claude | %s --version timed out", binary)
            return False

        if proc.returncode != 0:
            return False
        logger.debug("claude | version %s", stdout.decode("utf-8", errors="replace").strip())
        return True
