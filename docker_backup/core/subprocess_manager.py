"""Centralized subprocess management with proper resource handling."""

import asyncio
import os
from typing import Any

import structlog

from .exceptions import CommandError
from .output_stream import OutputStream

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30  # Default timeout in seconds
LONG_TIMEOUT = 3600  # Backups of large stacks
KILL_TIMEOUT = 5  # Time to wait after SIGTERM before SIGKILL
READ_CHUNK_SIZE = 65536  # Bytes per read from a streamed child


class SubprocessResult:
    """Result of a subprocess execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        cmd: list[str],
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmd = cmd

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.returncode == 0

    @property
    def error_message(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or "Command failed"

    def check_returncode(self) -> None:
        """Raise an exception if the command failed."""
        if self.returncode != 0:
            raise CommandError(
                f"Command failed with exit code {self.returncode}: {self.error_message}",
                returncode=self.returncode,
                output=self.stdout + self.stderr,
            )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Terminate a child, escalating to SIGKILL after KILL_TIMEOUT."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Process did not terminate gracefully, sending SIGKILL", pid=process.pid)
        process.kill()
        await process.wait()
    except ProcessLookupError:
        # Process already terminated
        pass


def _process_env(env: dict[str, str] | None) -> dict[str, str]:
    merged = os.environ.copy()
    if env:
        merged.update(env)
    return merged


async def run_command(
    cmd: list[str],
    *,
    timeout: float | None = None,
    check: bool = True,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> SubprocessResult:
    """Run a command and capture its output.

    Args:
        cmd: Command and arguments as a list
        timeout: Timeout in seconds (default: DEFAULT_TIMEOUT)
        check: Raise CommandError if the command fails
        cwd: Working directory for the command
        env: Extra environment variables merged over the current environment

    Returns:
        SubprocessResult with returncode, stdout, and stderr

    Raises:
        CommandError: If the executable is missing, or check=True and the command fails
        asyncio.TimeoutError: If the command times out
    """
    if timeout is None:
        timeout = DEFAULT_TIMEOUT

    logger.debug("Executing command", command=" ".join(cmd), timeout=timeout, cwd=cwd)

    kwargs: dict[str, Any] = {
        "cwd": cwd,
        "env": _process_env(env),
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "stdin": asyncio.subprocess.DEVNULL,
    }

    try:
        process = await asyncio.create_subprocess_exec(*cmd, **kwargs)
    except (FileNotFoundError, PermissionError) as e:
        raise CommandError(f"Cannot execute {cmd[0]}: {e}") from e

    try:
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Command timed out, terminating process",
                command=" ".join(cmd),
                timeout=timeout,
                pid=process.pid,
            )
            await _terminate(process)
            raise asyncio.TimeoutError(
                f"Command timed out after {timeout} seconds: {' '.join(cmd)}"
            ) from None
    finally:
        # Covers cancellation as well as timeouts
        await _terminate(process)

    result = SubprocessResult(
        returncode=process.returncode or 0,
        stdout=stdout_bytes.decode(errors="replace") if stdout_bytes else "",
        stderr=stderr_bytes.decode(errors="replace") if stderr_bytes else "",
        cmd=cmd,
    )
    if check:
        result.check_returncode()
    return result


async def stream_command(
    cmd: list[str],
    output: OutputStream,
    *,
    source: str,
    timeout: float | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> SubprocessResult:
    """Run a command, publishing combined stdout/stderr line by line.

    Lines reach the output stream as soon as the child writes them. The
    result's ``stdout`` holds the full combined output.

    Raises:
        CommandError: If the executable cannot be started
        asyncio.TimeoutError: If the command times out
    """
    if timeout is None:
        timeout = LONG_TIMEOUT

    logger.debug("Streaming command", command=" ".join(cmd), timeout=timeout, cwd=cwd)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=_process_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise CommandError(f"Cannot execute {cmd[0]}: {e}") from e

    collected: list[str] = []

    def emit(raw: bytes) -> None:
        line = raw.decode(errors="replace")
        collected.append(line)
        output.publish(source, line)

    async def pump() -> None:
        # Chunked reads: a single line may exceed the StreamReader limit
        assert process.stdout is not None
        pending = b""
        while chunk := await process.stdout.read(READ_CHUNK_SIZE):
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                emit(raw + b"\n")
        if pending:
            emit(pending)
        await process.wait()

    try:
        try:
            await asyncio.wait_for(pump(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Command timed out, terminating process",
                command=" ".join(cmd),
                timeout=timeout,
                pid=process.pid,
            )
            await _terminate(process)
            raise asyncio.TimeoutError(
                f"Command timed out after {timeout} seconds: {' '.join(cmd)}"
            ) from None
    finally:
        await _terminate(process)

    return SubprocessResult(
        returncode=process.returncode or 0,
        stdout="".join(collected),
        stderr="",
        cmd=cmd,
    )
