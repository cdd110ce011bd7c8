"""Compose collaborator: the ``docker compose`` CLI run inside a stack directory."""

import asyncio
from pathlib import Path

import docker
import structlog
from docker.errors import DockerException

from ..constants import COMPOSE_COMMAND_OVERHEAD, COMPOSE_STATUS_TIMEOUT
from .exceptions import CommandError
from .subprocess_manager import run_command

DOCKER_CLIENT_TIMEOUT = 10


class ComposeRunner:
    """Runs compose commands against one stack directory at a time.

    Every call is bounded by a timeout. Timeouts surface as
    ``asyncio.TimeoutError``; an executable that cannot be started surfaces as
    ``CommandError``.
    """

    def __init__(self, executable: str = "docker"):
        self.executable = executable
        self.logger = structlog.get_logger().bind(component="compose")

    def _build_compose_cmd(self, *args: str) -> list[str]:
        return [self.executable, "compose", *args]

    def _build_stop_args(self, timeout: int) -> list[str]:
        return self._build_compose_cmd("stop", "--timeout", str(timeout))

    def _build_start_args(self) -> list[str]:
        return self._build_compose_cmd("start")

    def _build_status_args(self) -> list[str]:
        return self._build_compose_cmd("ps", "--services", "--filter", "status=running")

    async def running_service_count(self, stack_dir: Path) -> int:
        """Number of services currently running in the stack.

        Raises:
            CommandError: If the status query fails
            asyncio.TimeoutError: If the query times out
        """
        result = await run_command(
            self._build_status_args(),
            timeout=COMPOSE_STATUS_TIMEOUT,
            cwd=str(stack_dir),
        )
        return sum(1 for line in result.stdout.splitlines() if line.strip())

    async def stop(self, stack_dir: Path, timeout: int) -> int:
        """Stop the stack gracefully, returning compose's exit code.

        The command itself is allowed ``timeout`` plus a fixed overhead before
        it is killed.
        """
        result = await run_command(
            self._build_stop_args(timeout),
            timeout=timeout + COMPOSE_COMMAND_OVERHEAD,
            check=False,
            cwd=str(stack_dir),
        )
        if not result.success:
            self.logger.warning(
                "Compose stop exited non-zero",
                directory=str(stack_dir),
                returncode=result.returncode,
                error=result.error_message,
            )
        return result.returncode

    async def start(self, stack_dir: Path, timeout: int) -> int:
        """Start the stack's existing containers, returning compose's exit code."""
        result = await run_command(
            self._build_start_args(),
            timeout=timeout + COMPOSE_COMMAND_OVERHEAD,
            check=False,
            cwd=str(stack_dir),
        )
        if not result.success:
            self.logger.warning(
                "Compose start exited non-zero",
                directory=str(stack_dir),
                returncode=result.returncode,
                error=result.error_message,
            )
        return result.returncode

    async def available(self) -> bool:
        """Check that the compose plugin is installed."""
        try:
            result = await run_command(
                self._build_compose_cmd("version"), timeout=COMPOSE_STATUS_TIMEOUT, check=False
            )
        except (CommandError, asyncio.TimeoutError) as e:
            self.logger.warning("Docker compose not available", error=str(e))
            return False
        return result.success

    async def daemon_reachable(self) -> bool:
        """Ping the Docker daemon through the SDK."""

        def ping() -> bool:
            client = docker.from_env(timeout=DOCKER_CLIENT_TIMEOUT)
            try:
                return bool(client.ping())
            finally:
                client.close()

        try:
            return await asyncio.to_thread(ping)
        except (DockerException, OSError) as e:
            self.logger.warning("Docker daemon not reachable", error=str(e))
            return False
