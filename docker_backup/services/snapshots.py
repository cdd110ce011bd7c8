"""
Snapshot Manager

Creates tagged snapshots, verifies them at the configured depth and applies
retention, all scoped to one directory's tag set.
"""

import asyncio
from datetime import date
from pathlib import Path
from typing import Protocol

import structlog

from ..constants import RESTIC_QUERY_TIMEOUT, TAG_NAMESPACE
from ..core.config_loader import BackupConfig
from ..core.exceptions import BackupError, CommandError
from ..core.output_stream import OutputStream
from ..models.backup import BackupTagSet, Snapshot
from ..models.enums import VerificationDepth


class SnapshotCollaborator(Protocol):
    async def backup(
        self,
        path: Path,
        tags: list[str],
        output: OutputStream,
        *,
        timeout: float,
        hostname: str | None = None,
        one_file_system: bool = True,
        exclude_caches: bool = True,
    ) -> int: ...

    async def snapshots(
        self,
        tags: list[str] | None = None,
        *,
        latest: int | None = None,
        hostname: str | None = None,
    ) -> list[Snapshot]: ...

    async def cat_snapshot(self, snapshot_id: str) -> int: ...

    async def list_files(self, snapshot_id: str, *, timeout: float = RESTIC_QUERY_TIMEOUT) -> list[str]: ...

    async def check(self, *, read_data: bool = False, timeout: float) -> int: ...

    async def forget(
        self,
        tags: list[str],
        keep_counts: dict[str, int],
        output: OutputStream,
        *,
        timeout: float,
        hostname: str | None = None,
    ) -> int: ...


class SnapshotManager:
    """Backup, verification and retention for single directories."""

    def __init__(
        self,
        restic: SnapshotCollaborator,
        config: BackupConfig,
        output: OutputStream | None = None,
        *,
        dry_run: bool = False,
    ):
        self.restic = restic
        self.config = config
        self.output = output or OutputStream()
        self.dry_run = dry_run
        self.logger = structlog.get_logger().bind(component="snapshots")

    @property
    def hostname(self) -> str | None:
        return self.config.repository.hostname

    def tag_set(self, identifier: str, stamp: date | None = None) -> BackupTagSet:
        return BackupTagSet.for_directory(identifier, identifier.startswith("/"), stamp)

    async def backup(self, identifier: str, path: Path) -> None:
        """Create a snapshot of ``path`` tagged for ``identifier``.

        Raises:
            BackupError: If restic fails, cannot be started, or times out
        """
        tags = self.tag_set(identifier).tags()
        repository = self.config.repository

        if self.dry_run:
            self.logger.info(
                "[DRY RUN] Would create snapshot", directory=identifier, path=str(path), tags=tags
            )
            return

        self.logger.info("Creating snapshot", directory=identifier, path=str(path), tags=tags)
        try:
            returncode = await self.restic.backup(
                path,
                tags,
                self.output,
                timeout=repository.backup_timeout,
                hostname=repository.hostname,
                one_file_system=repository.one_file_system,
                exclude_caches=repository.exclude_caches,
            )
        except asyncio.TimeoutError as e:
            raise BackupError(
                f"Backup of {identifier} timed out after {repository.backup_timeout}s"
            ) from e
        except CommandError as e:
            raise BackupError(f"Backup of {identifier} could not run: {e}") from e

        if returncode != 0:
            raise BackupError(f"Backup of {identifier} failed with exit code {returncode}")
        self.logger.info("Snapshot created", directory=identifier)

    async def latest_snapshot(self, identifier: str) -> Snapshot | None:
        snapshots = await self.restic.snapshots(
            self.tag_set(identifier).directory_filter(), latest=1, hostname=self.hostname
        )
        return snapshots[-1] if snapshots else None

    async def _verify_snapshot(self, snapshot: Snapshot, depth: VerificationDepth) -> bool:
        if depth == VerificationDepth.METADATA:
            return await self.restic.cat_snapshot(snapshot.id) == 0
        if depth == VerificationDepth.FILES:
            await self.restic.list_files(snapshot.id, timeout=self.config.repository.backup_timeout)
            return True
        # restic cannot check a single snapshot's data, so this reads the whole repository
        returncode = await self.restic.check(
            read_data=True, timeout=self.config.repository.backup_timeout
        )
        return returncode == 0

    async def verify(self, identifier: str) -> list[str]:
        """Verify the latest snapshot of ``identifier``.

        Verification is advisory: problems are logged and returned as warnings,
        never raised.
        """
        settings = self.config.verification
        if not settings.enabled:
            return []
        if self.dry_run:
            self.logger.info(
                "[DRY RUN] Would verify latest snapshot", directory=identifier, depth=settings.depth.value
            )
            return []

        try:
            snapshot = await self.latest_snapshot(identifier)
            if snapshot is None:
                warning = "verification skipped, no snapshot found"
                self.logger.warning("No snapshot found to verify", directory=identifier)
                return [warning]
            ok = await self._verify_snapshot(snapshot, settings.depth)
        except (CommandError, asyncio.TimeoutError) as e:
            self.logger.warning("Snapshot verification failed", directory=identifier, error=str(e))
            return [f"verification failed: {e}"]

        if not ok:
            self.logger.warning(
                "Snapshot verification failed",
                directory=identifier,
                snapshot=snapshot.display_id,
                depth=settings.depth.value,
            )
            return [f"verification ({settings.depth.value}) failed for snapshot {snapshot.display_id}"]

        self.logger.info(
            "Snapshot verified",
            directory=identifier,
            snapshot=snapshot.display_id,
            depth=settings.depth.value,
        )
        return []

    async def apply_retention(self, identifier: str) -> list[str]:
        """Prune old snapshots of ``identifier`` per the retention policy.

        Skipped entirely unless auto-prune is on and at least one keep-count is
        set. Failures are returned as warnings.
        """
        policy = self.config.retention
        if not policy.should_prune:
            self.logger.debug("Retention skipped", directory=identifier, auto_prune=policy.auto_prune)
            return []

        tags = self.tag_set(identifier).directory_filter()
        keep_counts = policy.keep_counts()
        if self.dry_run:
            self.logger.info(
                "[DRY RUN] Would apply retention", directory=identifier, tags=tags, keep=keep_counts
            )
            return []

        self.logger.info("Applying retention", directory=identifier, keep=keep_counts)
        try:
            returncode = await self.restic.forget(
                tags,
                keep_counts,
                self.output,
                timeout=self.config.repository.backup_timeout,
                hostname=self.hostname,
            )
        except (CommandError, asyncio.TimeoutError) as e:
            self.logger.warning("Retention failed", directory=identifier, error=str(e))
            return [f"retention failed: {e}"]

        if returncode != 0:
            self.logger.warning("Retention failed", directory=identifier, returncode=returncode)
            return [f"retention failed with exit code {returncode}"]
        return []

    async def list_snapshots(self, identifier: str | None = None, limit: int | None = None) -> list[Snapshot]:
        """Snapshots created by docker-backup, newest first.

        Raises:
            BackupError: If the repository cannot be listed
        """
        tags = self.tag_set(identifier).directory_filter() if identifier else [TAG_NAMESPACE]
        try:
            snapshots = await self.restic.snapshots(tags, hostname=self.hostname)
        except CommandError as e:
            raise BackupError(f"Cannot list snapshots: {e}") from e

        snapshots.sort(key=lambda snapshot: snapshot.time, reverse=True)
        return snapshots[:limit] if limit else snapshots

    async def restore_preview(self, identifier: str) -> tuple[Snapshot, list[str]]:
        """Latest snapshot of ``identifier`` and the paths it contains.

        Raises:
            BackupError: If no snapshot exists or the listing fails
        """
        try:
            snapshot = await self.latest_snapshot(identifier)
            if snapshot is None:
                raise BackupError(f"No snapshots found for {identifier}")
            files = await self.restic.list_files(snapshot.id)
        except CommandError as e:
            raise BackupError(f"Cannot preview restore for {identifier}: {e}") from e
        return snapshot, files
