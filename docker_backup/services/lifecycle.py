"""
Stack Lifecycle

Tracks each directory's state at the start of a run and stops/restarts stacks
only when that initial state says they were running. Success of a stop or
start is judged by re-reading ground truth, not by the command's exit code.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

import structlog

from ..constants import (
    FORCED_STOP_SETTLE_SECONDS,
    STATUS_VERIFY_ATTEMPTS,
    STATUS_VERIFY_INTERVAL,
    STOP_SETTLE_SECONDS,
)
from ..core.exceptions import CommandError, DockerError
from ..models.enums import StackState


class ComposeCollaborator(Protocol):
    async def running_service_count(self, stack_dir: Path) -> int: ...

    async def stop(self, stack_dir: Path, timeout: int) -> int: ...

    async def start(self, stack_dir: Path, timeout: int) -> int: ...


PathResolver = Callable[[str], Path]
Sleeper = Callable[[float], Awaitable[None]]


class StackStateTracker:
    """Queries stack status and holds the per-run initial state snapshot."""

    def __init__(self, compose: ComposeCollaborator, resolve_path: PathResolver):
        self.compose = compose
        self.resolve_path = resolve_path
        self._initial: dict[str, StackState] | None = None
        self.logger = structlog.get_logger().bind(component="state_tracker")

    async def check_status(self, identifier: str) -> StackState:
        """Current state of a directory's stack.

        Query failures and timeouts yield ``UNKNOWN`` rather than raising.
        """
        path = self.resolve_path(identifier)
        if not path.is_dir():
            return StackState.NOT_FOUND
        try:
            count = await self.compose.running_service_count(path)
        except (CommandError, asyncio.TimeoutError) as e:
            self.logger.warning("Status query failed", directory=identifier, error=str(e))
            return StackState.UNKNOWN
        return StackState.RUNNING if count > 0 else StackState.STOPPED

    async def store_initial_states(self, identifiers: Iterable[str]) -> Mapping[str, StackState]:
        """Capture the reference state of every directory, once per run.

        Raises:
            RuntimeError: If the states were already captured
        """
        if self._initial is not None:
            raise RuntimeError("Initial stack states already captured for this run")

        states: dict[str, StackState] = {}
        for identifier in identifiers:
            states[identifier] = await self.check_status(identifier)
            self.logger.info(
                "Initial stack state", directory=identifier, state=states[identifier].value
            )
        self._initial = states
        return self.initial_states

    @property
    def captured(self) -> bool:
        return self._initial is not None

    @property
    def initial_states(self) -> Mapping[str, StackState]:
        return MappingProxyType(self._initial or {})

    def get_state(self, identifier: str) -> StackState:
        """Initial state of a directory; ``UNKNOWN`` if it was never captured."""
        return (self._initial or {}).get(identifier, StackState.UNKNOWN)


class StackLifecycleController:
    """Safe stop/start of one directory at a time.

    A directory whose initial state is not ``RUNNING`` is never stopped or
    started. Settle and retry delays are injectable so callers can run the
    controller without real waiting.
    """

    def __init__(
        self,
        compose: ComposeCollaborator,
        tracker: StackStateTracker,
        stop_timeout: int,
        *,
        dry_run: bool = False,
        sleep: Sleeper = asyncio.sleep,
        settle_seconds: float = STOP_SETTLE_SECONDS,
        forced_settle_seconds: float = FORCED_STOP_SETTLE_SECONDS,
        verify_attempts: int = STATUS_VERIFY_ATTEMPTS,
        verify_interval: float = STATUS_VERIFY_INTERVAL,
    ):
        self.compose = compose
        self.tracker = tracker
        self.stop_timeout = stop_timeout
        self.dry_run = dry_run
        self._sleep = sleep
        self.settle_seconds = settle_seconds
        self.forced_settle_seconds = forced_settle_seconds
        self.verify_attempts = max(1, verify_attempts)
        self.verify_interval = verify_interval
        self.logger = structlog.get_logger().bind(component="lifecycle")

    async def _wait_for_state(self, identifier: str, wanted: StackState) -> StackState:
        """Poll status until ``wanted`` is observed or attempts run out."""
        state = StackState.UNKNOWN
        for attempt in range(1, self.verify_attempts + 1):
            state = await self.tracker.check_status(identifier)
            if state == wanted:
                return state
            self.logger.debug(
                "Stack not yet in expected state",
                directory=identifier,
                expected=wanted.value,
                observed=state.value,
                attempt=attempt,
            )
            if attempt < self.verify_attempts:
                await self._sleep(self.verify_interval)
        return state

    async def smart_stop(self, identifier: str) -> list[str]:
        """Stop a directory's stack if it was running at the start of the run.

        Returns:
            Warnings raised while confirming the stop

        Raises:
            DockerError: If containers are still observed running after all retries
        """
        initial = self.tracker.get_state(identifier)
        if initial in (StackState.STOPPED, StackState.NOT_FOUND):
            self.logger.info("Stack was not running, leaving it stopped", directory=identifier)
            return []
        if initial == StackState.UNKNOWN:
            warning = "initial state unknown, stack left untouched"
            self.logger.warning("Initial stack state unknown, not stopping", directory=identifier)
            return [warning]

        current = await self.tracker.check_status(identifier)
        if current == StackState.STOPPED:
            self.logger.info("Stack already stopped out-of-band", directory=identifier)
            return []
        if current == StackState.NOT_FOUND:
            raise DockerError(f"Cannot stop {identifier}: directory no longer exists")

        if self.dry_run:
            self.logger.info("[DRY RUN] Would stop stack", directory=identifier, timeout=self.stop_timeout)
            return []

        path = self.tracker.resolve_path(identifier)
        self.logger.info("Stopping stack", directory=identifier, timeout=self.stop_timeout)
        forced = False
        try:
            returncode = await self.compose.stop(path, self.stop_timeout)
            forced = returncode != 0
        except asyncio.TimeoutError:
            self.logger.warning("Stop command timed out", directory=identifier)
            forced = True
        except CommandError as e:
            self.logger.warning("Stop command failed", directory=identifier, error=str(e))
            forced = True

        await self._sleep(self.forced_settle_seconds if forced else self.settle_seconds)

        final = await self._wait_for_state(identifier, StackState.STOPPED)
        if final == StackState.STOPPED:
            self.logger.info("Stack stopped", directory=identifier)
            return []
        if final == StackState.RUNNING:
            raise DockerError(
                f"Stack {identifier} still has running services after "
                f"{self.verify_attempts} verification attempts"
            )
        warning = f"stop not confirmed, last observed state {final.value}"
        self.logger.warning("Stop could not be confirmed", directory=identifier, state=final.value)
        return [warning]

    async def smart_start(self, identifier: str) -> list[str]:
        """Restart a directory's stack only if it was running at the start of the run.

        Returns:
            Warnings raised while confirming the start

        Raises:
            DockerError: If the stack cannot be confirmed running again
        """
        if self.tracker.get_state(identifier) != StackState.RUNNING:
            return []

        current = await self.tracker.check_status(identifier)
        if current == StackState.RUNNING:
            self.logger.info("Stack already running", directory=identifier)
            return []
        if current == StackState.NOT_FOUND:
            raise DockerError(f"Cannot restart {identifier}: directory no longer exists")

        if self.dry_run:
            self.logger.info("[DRY RUN] Would start stack", directory=identifier)
            return []

        path = self.tracker.resolve_path(identifier)
        self.logger.info("Starting stack", directory=identifier)
        command_ok = True
        try:
            returncode = await self.compose.start(path, self.stop_timeout)
            command_ok = returncode == 0
        except asyncio.TimeoutError:
            self.logger.warning("Start command timed out", directory=identifier)
            command_ok = False
        except CommandError as e:
            self.logger.warning("Start command failed", directory=identifier, error=str(e))
            command_ok = False

        await self._sleep(self.settle_seconds)

        final = await self._wait_for_state(identifier, StackState.RUNNING)
        if final == StackState.RUNNING:
            self.logger.info("Stack started", directory=identifier)
            return []
        if final == StackState.UNKNOWN and command_ok:
            self.logger.warning("Start could not be confirmed", directory=identifier)
            return ["start not confirmed, status query failed"]
        raise DockerError(
            f"Stack {identifier} did not come back up (last observed state {final.value})"
        )
