"""Snapshot-tool collaborator: the ``restic`` CLI.

Listings are decoded from restic's ``--json`` output by field name; nothing
here parses human-readable tables.
"""

import asyncio
import json
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..constants import RESTIC_CHECK_TIMEOUT, RESTIC_QUERY_TIMEOUT, TAG_SEPARATOR
from ..models.backup import Snapshot
from .exceptions import CommandError
from .output_stream import OutputStream
from .subprocess_manager import SubprocessResult, run_command, stream_command

OUTPUT_SOURCE = "restic"


class ResticRunner:
    """Thin async wrapper around restic commands for one repository."""

    def __init__(
        self,
        repository: str,
        env: dict[str, str] | None = None,
        executable: str = "restic",
    ):
        self.repository = repository
        self.executable = executable
        self._env = dict(env or {})
        self.logger = structlog.get_logger().bind(component="restic")

    def configure_secret(self, env: dict[str, str]) -> None:
        """Environment variables that hand the repository password to restic."""
        self._env.update(env)

    def env(self) -> dict[str, str]:
        return {"RESTIC_REPOSITORY": self.repository, **self._env}

    def _cmd(self, *args: str) -> list[str]:
        return [self.executable, *args]

    async def _query(self, *args: str, timeout: float = RESTIC_QUERY_TIMEOUT) -> SubprocessResult:
        return await run_command(self._cmd(*args), timeout=timeout, env=self.env())

    async def available(self) -> bool:
        """Check that the restic binary runs."""
        try:
            result = await run_command(self._cmd("version"), timeout=RESTIC_CHECK_TIMEOUT, check=False)
        except (CommandError, asyncio.TimeoutError) as e:
            self.logger.warning("Restic not available", error=str(e))
            return False
        return result.success

    async def check_repository(self) -> bool:
        """Confirm the repository is reachable and the password opens it."""
        try:
            await self._query("cat", "config", timeout=RESTIC_CHECK_TIMEOUT)
        except (CommandError, asyncio.TimeoutError) as e:
            self.logger.error("Repository not accessible", error=str(e))
            return False
        return True

    def _build_backup_args(
        self,
        path: Path,
        tags: list[str],
        hostname: str | None,
        one_file_system: bool,
        exclude_caches: bool,
    ) -> list[str]:
        args = ["backup", "--verbose"]
        for tag in tags:
            args.extend(["--tag", tag])
        if hostname:
            args.extend(["--host", hostname])
        if one_file_system:
            args.append("--one-file-system")
        if exclude_caches:
            args.append("--exclude-caches")
        args.append(str(path))
        return self._cmd(*args)

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
    ) -> int:
        """Create a snapshot of ``path``, streaming restic's output.

        Returns restic's exit code.

        Raises:
            CommandError: If restic cannot be started
            asyncio.TimeoutError: If the backup exceeds ``timeout``
        """
        cmd = self._build_backup_args(path, tags, hostname, one_file_system, exclude_caches)
        result = await stream_command(
            cmd,
            output,
            source=OUTPUT_SOURCE,
            timeout=timeout,
            cwd=str(path),
            env=self.env(),
        )
        return result.returncode

    async def snapshots(
        self,
        tags: list[str] | None = None,
        *,
        latest: int | None = None,
        hostname: str | None = None,
    ) -> list[Snapshot]:
        """List snapshots, optionally filtered by a tag set.

        ``tags`` are joined with commas so a snapshot must carry all of them.
        Results are ordered oldest first, as restic returns them.

        Raises:
            CommandError: If the listing fails or cannot be decoded
        """
        args = ["snapshots", "--json"]
        if tags:
            args.extend(["--tag", TAG_SEPARATOR.join(tags)])
        if hostname:
            args.extend(["--host", hostname])
        if latest:
            args.extend(["--latest", str(latest)])

        try:
            result = await self._query(*args)
        except asyncio.TimeoutError as e:
            raise CommandError(f"Snapshot listing timed out: {e}") from e

        try:
            raw = json.loads(result.stdout or "[]")
            return [Snapshot.model_validate(item) for item in raw or []]
        except (json.JSONDecodeError, TypeError, PydanticValidationError) as e:
            raise CommandError(f"Cannot decode snapshot listing: {e}", output=result.stdout) from e

    async def cat_snapshot(self, snapshot_id: str) -> int:
        """Read a snapshot's manifest. Returns restic's exit code."""
        result = await run_command(
            self._cmd("cat", "snapshot", snapshot_id),
            timeout=RESTIC_QUERY_TIMEOUT,
            check=False,
            env=self.env(),
        )
        return result.returncode

    async def list_files(self, snapshot_id: str, *, timeout: float = RESTIC_QUERY_TIMEOUT) -> list[str]:
        """Paths contained in a snapshot, decoded from ``restic ls --json``.

        Raises:
            CommandError: If the listing fails
        """
        try:
            result = await self._query("ls", "--json", snapshot_id, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CommandError(f"File listing timed out: {e}") from e

        paths: list[str] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            try:
                node = json.loads(line)
            except json.JSONDecodeError as e:
                raise CommandError(f"Cannot decode file listing: {e}", output=line) from e
            # First record describes the snapshot itself
            if node.get("struct_type") == "node" and "path" in node:
                paths.append(node["path"])
        return paths

    async def check(self, *, read_data: bool = False, timeout: float) -> int:
        """Run ``restic check``. Returns restic's exit code."""
        args = ["check"]
        if read_data:
            args.append("--read-data")
        result = await run_command(self._cmd(*args), timeout=timeout, check=False, env=self.env())
        return result.returncode

    def _build_forget_args(
        self, tags: list[str], keep_counts: dict[str, int], hostname: str | None
    ) -> list[str]:
        args = ["forget", "--verbose", "--tag", TAG_SEPARATOR.join(tags)]
        if hostname:
            args.extend(["--host", hostname])
        for period, count in keep_counts.items():
            args.extend([f"--keep-{period}", str(count)])
        args.append("--prune")
        return self._cmd(*args)

    async def forget(
        self,
        tags: list[str],
        keep_counts: dict[str, int],
        output: OutputStream,
        *,
        timeout: float,
        hostname: str | None = None,
    ) -> int:
        """Apply keep-counts to the snapshots matching ``tags`` and prune."""
        result = await stream_command(
            self._build_forget_args(tags, keep_counts, hostname),
            output,
            source=OUTPUT_SOURCE,
            timeout=timeout,
            env=self.env(),
        )
        return result.returncode
