"""
Reporting

Human-readable run summaries, snapshot listings, restore previews and the
health report.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel

from ..core.config_loader import BackupConfig, RepositorySettings
from ..core.exceptions import DockerBackupError
from ..core.secrets import ResolvedSecret
from ..models.backup import RunStatistics, Snapshot
from ..utils import MIB, format_duration, format_size, free_disk_space_mb
from .registry import DirectoryRegistry

logger = structlog.get_logger()

RESTORE_PREVIEW_LIMIT = 50
SEPARATOR = "=" * 60


def format_run_summary(stats: RunStatistics, dry_run: bool = False) -> str:
    """Per-directory outcome report plus run totals."""
    title = "BACKUP SUMMARY (DRY RUN)" if dry_run else "BACKUP SUMMARY"
    lines = [SEPARATOR, title, SEPARATOR]

    for outcome in stats.outcomes:
        if outcome.succeeded:
            lines.append(f"  OK      {outcome.identifier}")
        else:
            assert outcome.error_class is not None
            lines.append(
                f"  FAILED  {outcome.identifier} [{outcome.error_class.value}] {outcome.message}"
            )
        for warning in outcome.warnings:
            lines.append(f"          warning: {warning}")

    lines.extend(
        [
            "",
            f"Enabled:    {stats.enabled}",
            f"Processed:  {stats.processed}",
            f"Succeeded:  {stats.succeeded}",
            f"Failed:     {stats.failed}",
            f"Duration:   {format_duration(stats.duration_seconds)}",
        ]
    )
    if stats.failed_identifiers:
        lines.append(f"Failed directories: {', '.join(stats.failed_identifiers)}")
    if stats.first_failure is not None:
        lines.append(f"Run classification: {stats.first_failure.value} (exit {stats.exit_code})")
    lines.append(SEPARATOR)
    return "\n".join(lines)


def _directory_tag(snapshot: Snapshot) -> str:
    # Third tag is the directory identifier
    return snapshot.tags[2] if len(snapshot.tags) > 2 else "-"


def format_snapshot_table(snapshots: list[Snapshot]) -> str:
    if not snapshots:
        return "No snapshots found."
    lines = [f"{'ID':<10} {'Time':<19} {'Host':<16} Directory"]
    for snapshot in snapshots:
        lines.append(
            f"{snapshot.display_id:<10} "
            f"{snapshot.time.strftime('%Y-%m-%d %H:%M:%S'):<19} "
            f"{snapshot.hostname[:16]:<16} "
            f"{_directory_tag(snapshot)}"
        )
    return "\n".join(lines)


def format_restore_preview(
    identifier: str, snapshot: Snapshot, files: list[str], limit: int = RESTORE_PREVIEW_LIMIT
) -> str:
    lines = [
        f"Latest snapshot of {identifier}: {snapshot.display_id} "
        f"({snapshot.time.strftime('%Y-%m-%d %H:%M:%S')}, host {snapshot.hostname or '-'})",
        f"{len(files)} entries:",
    ]
    lines.extend(f"  {path}" for path in files[:limit])
    if len(files) > limit:
        lines.append(f"  ... and {len(files) - limit} more")
    return "\n".join(lines)


class HealthCheck(BaseModel):
    name: str
    ok: bool
    detail: str = ""


class HealthReport(BaseModel):
    checks: list[HealthCheck]

    @property
    def healthy(self) -> bool:
        return all(check.ok for check in self.checks)

    def render(self) -> str:
        lines = ["Health check:"]
        for check in self.checks:
            status = "OK  " if check.ok else "FAIL"
            lines.append(f"  [{status}] {check.name}" + (f": {check.detail}" if check.detail else ""))
        lines.append("Overall: " + ("healthy" if self.healthy else "problems found"))
        return "\n".join(lines)


async def collect_health(
    config: BackupConfig,
    registry: DirectoryRegistry,
    compose,
    restic,
    secret_resolver: Callable[[RepositorySettings], Awaitable[ResolvedSecret]],
) -> HealthReport:
    """Run every read-only check and collect the results."""
    checks: list[HealthCheck] = []
    stacks_dir = config.docker.stacks_dir

    checks.append(HealthCheck(name="docker compose", ok=await compose.available()))
    checks.append(HealthCheck(name="docker daemon", ok=await compose.daemon_reachable()))

    restic_ok = await restic.available()
    checks.append(HealthCheck(name="restic", ok=restic_ok))

    secret: ResolvedSecret | None = None
    try:
        secret = await secret_resolver(config.repository)
        restic.configure_secret(secret.env())
        checks.append(HealthCheck(name="repository password", ok=True, detail=secret.method))
        repo_ok = restic_ok and await restic.check_repository()
        checks.append(HealthCheck(name="repository", ok=repo_ok))
    except DockerBackupError as e:
        checks.append(HealthCheck(name="repository password", ok=False, detail=str(e)))
    finally:
        if secret is not None:
            secret.cleanup()

    if stacks_dir.is_dir():
        free = await asyncio.to_thread(free_disk_space_mb, stacks_dir)
        required = config.resources.min_disk_space_mb
        checks.append(HealthCheck(name="stacks directory", ok=True, detail=str(stacks_dir)))
        checks.append(
            HealthCheck(
                name="disk space",
                ok=free >= required,
                detail=f"{format_size(free * MIB)} free, {format_size(required * MIB)} required",
            )
        )
    else:
        checks.append(
            HealthCheck(name="stacks directory", ok=False, detail=f"missing: {stacks_dir}")
        )

    issues = await asyncio.to_thread(registry.load)
    counts = registry.counts()
    checks.append(
        HealthCheck(
            name="directory list",
            ok=not issues,
            detail=(
                f"{counts['total']} directories, {counts['enabled']} enabled"
                + (f", {len(issues)} malformed lines" if issues else "")
            ),
        )
    )

    report = HealthReport(checks=checks)
    logger.info("Health check complete", healthy=report.healthy)
    return report
