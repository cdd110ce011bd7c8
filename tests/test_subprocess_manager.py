"""Tests for subprocess resource management."""

import asyncio

import pytest

from docker_backup.core.exceptions import CommandError
from docker_backup.core.output_stream import CollectingSubscriber, OutputStream
from docker_backup.core.subprocess_manager import (
    SubprocessResult,
    run_command,
    stream_command,
)


@pytest.mark.asyncio
class TestRunCommand:
    """Captured command execution."""

    async def test_run_simple_command(self):
        result = await run_command(["echo", "hello"])
        assert result.success
        assert result.stdout.strip() == "hello"
        assert result.returncode == 0

    async def test_run_command_with_error(self):
        with pytest.raises(CommandError) as exc_info:
            await run_command(["sh", "-c", "echo broken >&2; exit 3"])
        assert exc_info.value.returncode == 3
        assert "broken" in str(exc_info.value)

    async def test_run_command_no_check(self):
        result = await run_command(["sh", "-c", "exit 1"], check=False)
        assert not result.success
        assert result.returncode == 1

    async def test_timeout_kills_process(self):
        with pytest.raises(asyncio.TimeoutError):
            await run_command(["sleep", "10"], timeout=0.2)

    async def test_cwd_and_env(self, tmp_path):
        result = await run_command(
            ["sh", "-c", 'pwd; echo "$BACKUP_TEST_VAR"'],
            cwd=str(tmp_path),
            env={"BACKUP_TEST_VAR": "value"},
        )
        lines = result.stdout.splitlines()
        assert lines[0].endswith(tmp_path.name)
        assert lines[1] == "value"

    async def test_missing_executable(self):
        with pytest.raises(CommandError, match="Cannot execute"):
            await run_command(["definitely-not-a-real-binary-xyz"])


@pytest.mark.asyncio
class TestStreamCommand:
    """Incremental output streaming."""

    async def test_lines_are_published_as_produced(self):
        stream = OutputStream()
        collected = CollectingSubscriber()
        stream.subscribe(collected)

        result = await stream_command(
            ["sh", "-c", "echo one; echo two >&2; exit 2"], stream, source="restic"
        )

        assert result.returncode == 2
        assert sorted(line for _, line in collected.lines) == ["one", "two"]
        assert {source for source, _ in collected.lines} == {"restic"}
        assert "one" in result.stdout

    async def test_line_longer_than_stream_limit(self):
        stream = OutputStream()
        collected = CollectingSubscriber()
        stream.subscribe(collected)

        result = await stream_command(
            ["sh", "-c", "head -c 200000 /dev/zero | tr '\\000' x; echo; echo done"],
            stream,
            source="restic",
        )

        assert result.success
        assert [len(line) for _, line in collected.lines] == [200000, 4]
        assert collected.lines[-1] == ("restic", "done")

    async def test_stream_timeout(self):
        stream = OutputStream()
        with pytest.raises(asyncio.TimeoutError):
            await stream_command(["sh", "-c", "echo start; sleep 10"], stream, source="restic", timeout=0.3)

    async def test_cancellation_terminates_child(self):
        stream = OutputStream()
        task = asyncio.create_task(stream_command(["sleep", "10"], stream, source="restic", timeout=30))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestSubprocessResult:
    def test_check_returncode(self):
        result = SubprocessResult(returncode=1, stdout="", stderr="denied\n", cmd=["restic"])
        with pytest.raises(CommandError, match="denied"):
            result.check_returncode()

    def test_error_message_fallback(self):
        assert SubprocessResult(1, "", "", ["x"]).error_message == "Command failed"

