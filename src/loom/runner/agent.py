"""Coding agent subprocess management.

Executes the configured agent CLI as an async subprocess inside a task's
workspace, with timeout enforcement, bounded output capture and a
structured result. The runner never raises for process outcomes; every
failure mode is reported through AgentRunResult.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from src.loom.config import AgentProvider, AgentSettings

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024
KILL_WAIT_SECONDS = 5.0
TIMEOUT_ERROR = "timeout"


@dataclass
class AgentRunInput:
    """Everything the agent needs for one task.

    Attributes:
        task_id: Task the run belongs to.
        issue_title: Title of the issue to resolve.
        issue_body: Issue description, None when the issue has no body.
        workspace_path: Cloned repository the agent runs in.
        branch: Working branch already checked out in the workspace.
        config: Agent invocation settings.
    """

    task_id: int
    issue_title: str
    issue_body: Optional[str]
    workspace_path: Path
    branch: str
    config: AgentSettings


@dataclass
class AgentRunResult:
    """Result of an agent execution.

    Attributes:
        success: True when the agent exited with code 0.
        output: Captured stdout then stderr, non-empty parts joined by a newline.
        error: Failure description, None on success.
        exit_code: Process exit code, None on timeout or spawn failure.
        duration_seconds: Wall-clock execution time.
        timed_out: True when the run was killed for exceeding the timeout.
    """

    success: bool
    output: str
    error: Optional[str] = None
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    timed_out: bool = False


def build_prompt(title: str, body: Optional[str], branch: str) -> str:
    lines = [
        "You are working on a GitHub issue. Your task is to implement the changes described below.",
        "",
        f"Issue: {title}",
        f"\nDescription:\n{body}" if body else "",
        "",
        f"You are working on branch: {branch}",
        "",
        "Please implement the changes, commit them, and push the branch.",
        "When done, output a summary of what you changed.",
    ]
    return "\n".join(lines).strip()


def build_args(run_input: AgentRunInput) -> List[str]:
    """Build the agent's argument list (without the executable).

    claude receives ``-p <prompt>`` and an optional ``--model``; custom
    agents receive the prompt as the first positional argument. Extra
    arguments always come last.
    """
    config = run_input.config
    prompt = build_prompt(run_input.issue_title, run_input.issue_body, run_input.branch)

    if config.provider == AgentProvider.CLAUDE:
        args = ["-p", prompt]
        if config.model:
            args.extend(["--model", config.model])
    else:
        args = [prompt]

    args.extend(config.extra_args)
    return args


def _combine_output(stdout: str, stderr: str) -> str:
    return "\n".join(part for part in (stdout, stderr) if part)


class AgentRunner:
    """Manages coding agent subprocess execution.

    Launches the agent in the workspace directory, reads stdout and
    stderr concurrently, enforces the configured timeout, and returns a
    structured result. Each stream keeps at most MAX_OUTPUT_BYTES; data
    beyond that is read and discarded so the process never blocks on a
    full pipe.

    Attributes:
        max_output_bytes: Per-stream capture limit.
    """

    def __init__(self, max_output_bytes: int = MAX_OUTPUT_BYTES):
        self.max_output_bytes = max_output_bytes

    async def run(self, run_input: AgentRunInput) -> AgentRunResult:
        """Execute the agent against a workspace.

        Args:
            run_input: Task, prompt material and invocation settings.

        Returns:
            AgentRunResult describing the outcome.
        """
        start_time = time.monotonic()
        stdout_buffer = bytearray()
        stderr_buffer = bytearray()

        try:
            process = await self._start_process(run_input)
        except (OSError, ValueError) as exc:
            return self._handle_spawn_error(run_input, exc, start_time)

        try:
            await self._collect_output_with_timeout(
                process,
                stdout_buffer,
                stderr_buffer,
                run_input.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._handle_timeout(
                run_input, process, start_time, stdout_buffer, stderr_buffer
            )

        duration = time.monotonic() - start_time
        return self._build_result(
            run_input,
            process.returncode,
            self._decode(stdout_buffer),
            self._decode(stderr_buffer),
            duration,
        )

    async def _start_process(
        self, run_input: AgentRunInput
    ) -> asyncio.subprocess.Process:
        """Launch the agent subprocess.

        Raises:
            OSError: If the agent executable cannot be found or started.
            ValueError: If an argument contains a NUL byte.
        """
        config = run_input.config
        args = build_args(run_input)

        logger.info(
            "Starting agent",
            extra={
                "task_id": run_input.task_id,
                "binary": config.executable,
                "provider": config.provider.value,
                "model": config.model,
                "workspace": str(run_input.workspace_path),
                "timeout": config.timeout_seconds,
            },
        )

        return await asyncio.create_subprocess_exec(
            config.executable,
            *args,
            cwd=str(run_input.workspace_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _collect_output_with_timeout(
        self,
        process: asyncio.subprocess.Process,
        stdout_buffer: bytearray,
        stderr_buffer: bytearray,
        timeout_seconds: float,
    ) -> None:
        """Read both streams and wait for exit within the timeout window.

        The buffers are filled in place so partial output survives a
        timeout.

        Raises:
            asyncio.TimeoutError: If the process exceeds the timeout.
        """

        async def read_all() -> None:
            await asyncio.gather(
                self._read_stream(process.stdout, stdout_buffer),
                self._read_stream(process.stderr, stderr_buffer),
            )
            await process.wait()

        await asyncio.wait_for(read_all(), timeout=timeout_seconds)

    async def _read_stream(
        self,
        stream: Optional[asyncio.StreamReader],
        buffer: bytearray,
    ) -> None:
        if stream is None:
            return

        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            remaining = self.max_output_bytes - len(buffer)
            if remaining > 0:
                buffer.extend(chunk[:remaining])

    @staticmethod
    def _decode(buffer: bytearray) -> str:
        return bytes(buffer).decode("utf-8", errors="replace")

    async def _handle_timeout(
        self,
        run_input: AgentRunInput,
        process: asyncio.subprocess.Process,
        start_time: float,
        stdout_buffer: bytearray,
        stderr_buffer: bytearray,
    ) -> AgentRunResult:
        """Kill the process and return a timeout failure with partial output."""
        try:
            process.kill()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent did not exit after kill",
                extra={"task_id": run_input.task_id},
            )

        duration = time.monotonic() - start_time
        logger.error(
            "Agent timed out",
            extra={
                "task_id": run_input.task_id,
                "timeout": run_input.config.timeout_seconds,
                "duration": round(duration, 1),
            },
        )
        return AgentRunResult(
            success=False,
            output=_combine_output(
                self._decode(stdout_buffer), self._decode(stderr_buffer)
            ),
            error=TIMEOUT_ERROR,
            exit_code=None,
            duration_seconds=duration,
            timed_out=True,
        )

    def _handle_spawn_error(
        self,
        run_input: AgentRunInput,
        exc: Exception,
        start_time: float,
    ) -> AgentRunResult:
        """Return a failure result when the process cannot be started.

        Covers OS errors such as a missing binary and arguments the OS
        rejects, like a NUL byte pasted into the issue body.
        """
        duration = time.monotonic() - start_time
        logger.error(
            "Failed to start agent",
            extra={
                "task_id": run_input.task_id,
                "binary": run_input.config.executable,
                "error": str(exc),
            },
        )
        return AgentRunResult(
            success=False,
            output="",
            error=str(exc),
            exit_code=None,
            duration_seconds=duration,
        )

    def _build_result(
        self,
        run_input: AgentRunInput,
        exit_code: Optional[int],
        stdout: str,
        stderr: str,
        duration: float,
    ) -> AgentRunResult:
        """Construct an AgentRunResult from process output."""
        is_success = exit_code == 0

        for line in stdout.splitlines():
            logger.debug("agent stdout: %s", line)
        for line in stderr.splitlines():
            logger.debug("agent stderr: %s", line)

        if is_success:
            logger.info(
                "Agent completed successfully",
                extra={"task_id": run_input.task_id, "duration": round(duration, 1)},
            )
        else:
            logger.error(
                "Agent failed",
                extra={
                    "task_id": run_input.task_id,
                    "exit_code": exit_code,
                    "duration": round(duration, 1),
                    "stderr": stderr[:500],
                },
            )

        return AgentRunResult(
            success=is_success,
            output=_combine_output(stdout, stderr),
            error=None if is_success else (stderr or f"Exit code {exit_code}"),
            exit_code=exit_code,
            duration_seconds=duration,
        )
