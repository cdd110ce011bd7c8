"""Tests for snapshot creation, verification and retention."""

import asyncio
from datetime import date

import pytest

from docker_backup.core.exceptions import BackupError, CommandError
from docker_backup.core.output_stream import CollectingSubscriber, OutputStream
from docker_backup.models.backup import BackupTagSet
from docker_backup.services.snapshots import SnapshotManager
from tests.fakes import make_stack


@pytest.fixture
def output():
    return OutputStream()


@pytest.fixture
def manager(restic, config, output):
    return SnapshotManager(restic, config, output)


class TestTagSet:
    """Deterministic snapshot labels."""

    def test_discovered_directory_tags(self):
        tags = BackupTagSet.for_directory("web", False, date(2026, 10, 19)).tags()
        assert tags == ["docker-backup", "selective-backup", "web", "2026-10-19"]

    def test_external_directory_carries_marker(self):
        tags = BackupTagSet.for_directory("/opt/ext/stack", True, date(2026, 10, 19)).tags()
        assert tags[-1] == "external"
        assert "/opt/ext/stack" in tags

    def test_directory_filter(self):
        tag_set = BackupTagSet.for_directory("web", False)
        assert tag_set.directory_filter() == ["docker-backup", "web"]


@pytest.mark.asyncio
class TestBackup:
    """Snapshot creation."""

    async def test_backup_streams_output_and_uses_settings(self, manager, restic, output, stacks_dir, config):
        collected = CollectingSubscriber()
        output.subscribe(collected)
        path = make_stack(stacks_dir, "web")

        await manager.backup("web", path)

        args = restic.backup_args[0]
        assert args["path"] == path
        assert args["tags"][:3] == ["docker-backup", "selective-backup", "web"]
        assert args["timeout"] == config.repository.backup_timeout
        assert args["one_file_system"] is True
        assert collected.lines == [("restic", "snapshot for web saved")]

    async def test_nonzero_exit_is_backup_error(self, manager, restic, stacks_dir):
        path = make_stack(stacks_dir, "web")
        restic.fail_backup.add("web")
        with pytest.raises(BackupError, match="exit code 1"):
            await manager.backup("web", path)

    async def test_timeout_is_backup_error(self, manager, restic, stacks_dir):
        path = make_stack(stacks_dir, "web")

        async def slow_backup(*args, **kwargs):
            raise asyncio.TimeoutError()

        restic.backup = slow_backup
        with pytest.raises(BackupError, match="timed out"):
            await manager.backup("web", path)

    async def test_unstartable_tool_is_backup_error(self, manager, restic, stacks_dir):
        path = make_stack(stacks_dir, "web")

        async def missing_binary(*args, **kwargs):
            raise CommandError("Cannot execute restic")

        restic.backup = missing_binary
        with pytest.raises(BackupError, match="could not run"):
            await manager.backup("web", path)

    async def test_dry_run_does_not_call_tool(self, restic, config, stacks_dir):
        manager = SnapshotManager(restic, config, dry_run=True)
        await manager.backup("web", make_stack(stacks_dir, "web"))
        assert restic.calls == []


@pytest.mark.asyncio
class TestVerify:
    """Advisory verification at each depth."""

    async def test_metadata_depth_reads_manifest(self, manager, restic):
        snapshot = restic.add_snapshot(["docker-backup", "selective-backup", "web", "2026-10-19"])
        assert await manager.verify("web") == []
        assert restic.calls == [("cat", snapshot.id[:8])]

    async def test_files_depth_lists_files(self, restic, make_config):
        manager = SnapshotManager(restic, make_config(verification={"depth": "files"}))
        snapshot = restic.add_snapshot(["docker-backup", "web"])
        assert await manager.verify("web") == []
        assert restic.calls == [("ls", snapshot.id[:8])]

    async def test_data_depth_reads_data(self, restic, make_config):
        manager = SnapshotManager(restic, make_config(verification={"depth": "data"}))
        restic.add_snapshot(["docker-backup", "web"])
        assert await manager.verify("web") == []
        assert restic.check_args == [True]

    async def test_failure_is_only_a_warning(self, manager, restic):
        restic.add_snapshot(["docker-backup", "web"])
        restic.verify_returncode = 1
        warnings = await manager.verify("web")
        assert len(warnings) == 1
        assert "metadata" in warnings[0]

    async def test_listing_error_is_only_a_warning(self, manager, restic):
        async def broken(*args, **kwargs):
            raise CommandError("repository locked")

        restic.snapshots = broken
        warnings = await manager.verify("web")
        assert warnings == ["verification failed: repository locked"]

    async def test_missing_snapshot_is_warning(self, manager):
        assert await manager.verify("web") == ["verification skipped, no snapshot found"]

    async def test_verifies_only_the_directory_history(self, manager, restic):
        restic.add_snapshot(["docker-backup", "db"])
        web = restic.add_snapshot(["docker-backup", "web"])
        restic.add_snapshot(["docker-backup", "api"])
        await manager.verify("web")
        assert restic.calls == [("cat", web.id[:8])]

    async def test_disabled(self, restic, make_config):
        manager = SnapshotManager(restic, make_config(verification={"enabled": False}))
        assert await manager.verify("web") == []
        assert restic.calls == []


@pytest.mark.asyncio
class TestRetention:
    """Keep-count pruning scoped to one directory."""

    async def test_prune_scoped_to_directory_and_host(self, restic, make_config):
        manager = SnapshotManager(restic, make_config(repository={"hostname": "nas"}))
        assert await manager.apply_retention("web") == []
        assert restic.forget_args == [
            {
                "tags": ["docker-backup", "web"],
                "keep": {"daily": 7, "weekly": 4, "monthly": 6, "yearly": 2},
                "hostname": "nas",
            }
        ]

    async def test_skipped_without_auto_prune(self, restic, make_config):
        manager = SnapshotManager(restic, make_config(retention={"auto_prune": False}))
        assert await manager.apply_retention("web") == []
        assert restic.forget_args == []

    async def test_skipped_without_counts(self, restic, make_config):
        manager = SnapshotManager(
            restic,
            make_config(
                retention={"keep_daily": 0, "keep_weekly": None, "keep_monthly": 0, "keep_yearly": 0}
            ),
        )
        assert await manager.apply_retention("web") == []
        assert restic.forget_args == []

    async def test_zero_counts_are_omitted(self, restic, make_config):
        manager = SnapshotManager(
            restic, make_config(retention={"keep_daily": 3, "keep_weekly": 0, "keep_monthly": None, "keep_yearly": 0})
        )
        await manager.apply_retention("web")
        assert restic.forget_args[0]["keep"] == {"daily": 3}

    async def test_failure_is_only_a_warning(self, manager, restic):
        restic.forget_returncode = 1
        assert await manager.apply_retention("web") == ["retention failed with exit code 1"]


@pytest.mark.asyncio
class TestListing:
    """Snapshot listing and restore preview."""

    async def test_list_newest_first_with_limit(self, manager, restic):
        old = restic.add_snapshot(["docker-backup", "web"], age_days=3)
        new = restic.add_snapshot(["docker-backup", "db"], age_days=0)
        mid = restic.add_snapshot(["docker-backup", "web"], age_days=1)

        assert [s.id for s in await manager.list_snapshots()] == [new.id, mid.id, old.id]
        assert [s.id for s in await manager.list_snapshots("web", limit=1)] == [mid.id]

    async def test_restore_preview(self, manager, restic):
        snapshot = restic.add_snapshot(["docker-backup", "web"])
        found, files = await manager.restore_preview("web")
        assert found.id == snapshot.id
        assert files == restic.files

    async def test_restore_preview_without_snapshot(self, manager):
        with pytest.raises(BackupError, match="No snapshots"):
            await manager.restore_preview("web")
