"""
Backup Orchestrator

Top-level sequential pipeline: preconditions, registry sync, initial state
capture, the per-directory state machine and run statistics.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

import structlog

from ..constants import INSTANCE_LOCK_NAME
from ..core.config_loader import BackupConfig, RepositorySettings
from ..core.exceptions import (
    BackupError,
    ConfigError,
    DockerError,
    SignalError,
    ValidationError,
)
from ..core.locking import InstanceLock
from ..core.output_stream import OutputStream
from ..core.secrets import ResolvedSecret, resolve_secret
from ..models.backup import DirectoryOutcome, RunStatistics
from ..models.enums import ErrorClass
from ..utils import MIB, format_size, free_disk_space_mb
from .discovery import validate_dir_name
from .lifecycle import ComposeCollaborator, StackLifecycleController, StackStateTracker
from .registry import DirectoryRegistry
from .snapshots import SnapshotCollaborator, SnapshotManager


class ComposeService(ComposeCollaborator, Protocol):
    async def available(self) -> bool: ...

    async def daemon_reachable(self) -> bool: ...


class ResticService(SnapshotCollaborator, Protocol):
    async def available(self) -> bool: ...

    async def check_repository(self) -> bool: ...

    def configure_secret(self, env: dict[str, str]) -> None: ...


SecretResolver = Callable[[RepositorySettings], Awaitable[ResolvedSecret]]


class BackupOrchestrator:
    """Runs one complete backup pass over the enabled directories.

    Directories are processed strictly one after another in identifier order.
    Directory-local failures are recorded and the run moves on; global
    failures raise before any stack is touched.
    """

    def __init__(
        self,
        config: BackupConfig,
        registry: DirectoryRegistry,
        compose: ComposeService,
        restic: ResticService,
        *,
        dry_run: bool = False,
        output: OutputStream | None = None,
        secret_resolver: SecretResolver = resolve_secret,
        lifecycle_options: dict | None = None,
    ):
        self.config = config
        self.registry = registry
        self.compose = compose
        self.restic = restic
        self.dry_run = dry_run
        self.output = output or OutputStream()
        self._secret_resolver = secret_resolver

        self.tracker = StackStateTracker(compose, registry.get_full_path)
        self.lifecycle = StackLifecycleController(
            compose,
            self.tracker,
            config.docker.timeout,
            dry_run=dry_run,
            **(lifecycle_options or {}),
        )
        self.snapshots = SnapshotManager(restic, config, self.output, dry_run=dry_run)

        self.instance_lock = InstanceLock(config.paths.lock_dir / f"{INSTANCE_LOCK_NAME}.lock")
        self.stats = RunStatistics()
        self.secret: ResolvedSecret | None = None
        self.current_directory: str | None = None
        self.interrupt_signal: int | None = None
        self.logger = structlog.get_logger().bind(component="orchestrator", dry_run=dry_run)

    # Preconditions

    async def preflight(self) -> None:
        """Global checks that must pass before any stack is touched.

        Raises:
            ConfigError: Stacks directory missing or no usable password
            DockerError: Docker compose or the daemon unavailable
            BackupError: Restic unavailable, repository inaccessible or low disk space
        """
        stacks_dir = self.config.docker.stacks_dir
        if not stacks_dir.is_dir():
            raise ConfigError(f"Stacks directory does not exist: {stacks_dir}")

        if not await self.compose.available():
            raise DockerError("docker compose is not available")
        if not await self.compose.daemon_reachable():
            raise DockerError("Docker daemon is not reachable")
        if not await self.restic.available():
            raise BackupError("restic is not available")

        self.secret = await self._secret_resolver(self.config.repository)
        self.restic.configure_secret(self.secret.env())

        if not await self.restic.check_repository():
            raise BackupError("Restic repository is not accessible")

        required = self.config.resources.min_disk_space_mb
        if required:
            free = free_disk_space_mb(stacks_dir)
            if free < required:
                raise BackupError(
                    f"Insufficient disk space at {stacks_dir}: {format_size(free * MIB)} free, "
                    f"{format_size(required * MIB)} required"
                )

        self.logger.info("Preflight checks passed", stacks_dir=str(stacks_dir))

    def _sync_registry(self) -> list[str]:
        with self.registry.locked():
            delta = self.registry.sync()
            if delta.changed:
                if self.dry_run:
                    self.logger.info(
                        "[DRY RUN] Would save registry changes",
                        added=delta.added,
                        removed=delta.removed,
                    )
                else:
                    self.registry.save()
            return self.registry.enabled_identifiers()

    async def scan_directories(self) -> list[str]:
        """Sync the registry with the filesystem and return enabled identifiers, sorted."""
        identifiers = await asyncio.to_thread(self._sync_registry)
        counts = self.registry.counts()
        self.logger.info("Directory scan complete", **counts)
        if not identifiers:
            self.logger.warning(
                "No directories enabled for backup", dirlist=str(self.registry.dirlist_file)
            )
        return identifiers

    # Per-directory state machine

    def _validate_directory(self, identifier: str) -> Path:
        if not identifier.startswith("/") and not validate_dir_name(identifier):
            raise ValidationError(f"Invalid directory name: {identifier}")
        path = self.registry.get_full_path(identifier)
        if not path.is_dir():
            raise ValidationError(f"Directory not found: {path}")
        return path

    async def _recover_start(self, identifier: str, warnings: list[str]) -> None:
        """Best-effort restart after a failed step; never changes the classification."""
        try:
            warnings.extend(await self.lifecycle.smart_start(identifier))
        except Exception as e:
            self.logger.error("Recovery restart failed", directory=identifier, error=str(e))
            warnings.append(f"restart after failure also failed: {e}")

    async def _advisory(
        self,
        step: str,
        identifier: str,
        warnings: list[str],
        check: Callable[[str], Awaitable[list[str]]],
    ) -> None:
        """Run a post-backup step whose failure only adds a warning."""
        try:
            warnings.extend(await check(identifier))
        except Exception as e:
            self.logger.error(
                "Post-backup step failed", directory=identifier, step=step, error=str(e), exc_info=True
            )
            warnings.append(f"{step} failed: {e}")

    async def process_directory(self, identifier: str) -> DirectoryOutcome:
        """Run stop, backup, verify, retain and start for one directory.

        Once the stack may have been stopped, every failure path goes through
        a recovery restart.
        """
        log = self.logger.bind(directory=identifier)
        warnings: list[str] = []
        log.info("Processing directory", initial_state=self.tracker.get_state(identifier).value)

        try:
            path = self._validate_directory(identifier)
        except ValidationError as e:
            log.error("Directory validation failed", error=str(e))
            return DirectoryOutcome(
                identifier=identifier, error_class=ErrorClass.VALIDATION, message=str(e)
            )

        try:
            warnings.extend(await self.lifecycle.smart_stop(identifier))
        except Exception as e:
            log.error("Stack stop failed", error=str(e), exc_info=not isinstance(e, DockerError))
            await self._recover_start(identifier, warnings)
            return DirectoryOutcome(
                identifier=identifier,
                error_class=ErrorClass.DOCKER,
                message=str(e),
                warnings=warnings,
            )

        try:
            await self.snapshots.backup(identifier, path)
        except Exception as e:
            log.error("Backup failed", error=str(e), exc_info=not isinstance(e, BackupError))
            await self._recover_start(identifier, warnings)
            return DirectoryOutcome(
                identifier=identifier,
                error_class=ErrorClass.BACKUP,
                message=str(e) if isinstance(e, BackupError) else f"unexpected backup error: {e}",
                warnings=warnings,
            )

        await self._advisory("verification", identifier, warnings, self.snapshots.verify)
        await self._advisory("retention", identifier, warnings, self.snapshots.apply_retention)

        try:
            warnings.extend(await self.lifecycle.smart_start(identifier))
        except Exception as e:
            log.error(
                "Restart failed after successful backup",
                error=str(e),
                exc_info=not isinstance(e, DockerError),
            )
            return DirectoryOutcome(
                identifier=identifier,
                error_class=ErrorClass.DOCKER,
                message=f"backup stored, restart failed: {e}",
                backup_succeeded=True,
                warnings=warnings,
            )

        log.info("Directory backed up", warnings=len(warnings))
        return DirectoryOutcome(
            identifier=identifier, backup_succeeded=True, warnings=warnings
        )

    # Run

    async def _handle_interrupt(self) -> None:
        identifier = self.current_directory
        if identifier is None:
            return
        self.logger.warning("Run interrupted, restoring in-flight directory", directory=identifier)
        try:
            await self.lifecycle.smart_start(identifier)
        except (DockerError, asyncio.CancelledError) as e:
            self.logger.error("Could not restore interrupted directory", directory=identifier, error=str(e))

    def cleanup(self) -> None:
        """Remove transient files and release the instance lock."""
        if self.secret is not None:
            self.secret.cleanup()
            self.secret = None
        self.instance_lock.release()

    async def run(self) -> RunStatistics:
        """Execute a full backup run.

        Returns:
            Statistics of the run; ``stats.exit_code`` is the process exit code

        Raises:
            LockError: Another run holds the instance lock
            ConfigError, DockerError, BackupError: A precondition failed
            SignalError: The run was cancelled
        """
        self.stats = RunStatistics()
        self.logger.info("Starting backup run", stacks_dir=str(self.config.docker.stacks_dir))

        self.instance_lock.acquire()
        try:
            await self.preflight()
            identifiers = await self.scan_directories()
            self.stats.enabled = len(identifiers)

            await self.tracker.store_initial_states(identifiers)

            for identifier in identifiers:
                self.current_directory = identifier
                outcome = await self.process_directory(identifier)
                self.stats.record(outcome)
                self.current_directory = None
        except asyncio.CancelledError:
            await self._handle_interrupt()
            raise SignalError("Backup run interrupted", signum=self.interrupt_signal) from None
        finally:
            self.stats.finished_at = datetime.now()
            self.cleanup()

        self.logger.info(
            "Backup run finished",
            processed=self.stats.processed,
            succeeded=self.stats.succeeded,
            failed=self.stats.failed,
            exit_code=self.stats.exit_code,
        )
        return self.stats
