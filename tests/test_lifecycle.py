"""Tests for stack state tracking and safe stop/start."""

import pytest

from docker_backup.constants import FORCED_STOP_SETTLE_SECONDS, STOP_SETTLE_SECONDS
from docker_backup.core.exceptions import DockerError
from docker_backup.models.enums import StackState
from docker_backup.services.lifecycle import StackLifecycleController, StackStateTracker
from tests.fakes import RecordingSleep, make_stack


@pytest.fixture
def tracker(compose, registry):
    return StackStateTracker(compose, registry.get_full_path)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def controller(compose, tracker, sleep):
    return StackLifecycleController(compose, tracker, stop_timeout=60, sleep=sleep)


@pytest.mark.asyncio
class TestStackStateTracker:
    """Status queries and the initial state snapshot."""

    async def test_check_status(self, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        make_stack(stacks_dir, "db")
        compose.running["web"] = 3

        assert await tracker.check_status("web") == StackState.RUNNING
        assert await tracker.check_status("db") == StackState.STOPPED
        assert await tracker.check_status("ghost") == StackState.NOT_FOUND

    async def test_query_failure_is_unknown(self, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.status_errors.add("web")
        assert await tracker.check_status("web") == StackState.UNKNOWN

    async def test_initial_states_captured_once(self, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 1

        states = await tracker.store_initial_states(["web", "ghost"])
        assert dict(states) == {"web": StackState.RUNNING, "ghost": StackState.NOT_FOUND}

        compose.running["web"] = 0
        assert tracker.get_state("web") == StackState.RUNNING

        with pytest.raises(RuntimeError):
            await tracker.store_initial_states(["web"])

    async def test_initial_states_are_read_only(self, tracker, stacks_dir):
        states = await tracker.store_initial_states([])
        with pytest.raises(TypeError):
            states["web"] = StackState.RUNNING  # type: ignore[index]

    async def test_uncaptured_directory_is_unknown(self, tracker):
        assert tracker.get_state("web") == StackState.UNKNOWN


@pytest.mark.asyncio
class TestSmartStop:
    """Stopping only what was running, confirmed by ground truth."""

    async def test_not_running_is_left_alone(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "db")
        await tracker.store_initial_states(["db", "ghost"])

        assert await controller.smart_stop("db") == []
        assert await controller.smart_start("db") == []
        assert await controller.smart_stop("ghost") == []
        assert await controller.smart_start("ghost") == []
        assert compose.calls == []

    async def test_unknown_initial_state_is_left_alone(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.status_errors.add("web")
        await tracker.store_initial_states(["web"])

        warnings = await controller.smart_stop("web")
        assert warnings and "unknown" in warnings[0]
        assert await controller.smart_start("web") == []
        assert compose.calls == []

    async def test_running_stack_is_stopped_and_verified(
        self, controller, tracker, compose, stacks_dir, sleep
    ):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])

        assert await controller.smart_stop("web") == []
        assert compose.calls == [("stop", "web")]
        assert compose.running["web"] == 0
        assert sleep.delays == [STOP_SETTLE_SECONDS]

    async def test_stopped_out_of_band_skips_command(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])
        compose.running["web"] = 0

        assert await controller.smart_stop("web") == []
        assert compose.calls == []

    async def test_timeout_uses_longer_settle_and_checks_ground_truth(
        self, controller, tracker, compose, stacks_dir, sleep
    ):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        compose.stop_timeouts.add("web")
        await tracker.store_initial_states(["web"])

        assert await controller.smart_stop("web") == []
        assert sleep.delays == [FORCED_STOP_SETTLE_SECONDS]

    async def test_nonzero_exit_but_stopped_is_success(
        self, controller, tracker, compose, stacks_dir
    ):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])

        async def stop_with_error(stack_dir, timeout):
            compose.calls.append(("stop", stack_dir.name))
            compose.running[stack_dir.name] = 0
            return 1

        compose.stop = stop_with_error
        assert await controller.smart_stop("web") == []

    async def test_still_running_after_retries_is_docker_error(
        self, controller, tracker, compose, stacks_dir, sleep
    ):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        compose.fail_stop.add("web")
        await tracker.store_initial_states(["web"])

        with pytest.raises(DockerError, match="still has running services"):
            await controller.smart_stop("web")
        # forced settle, then two intervals between three verification attempts
        assert sleep.delays == [FORCED_STOP_SETTLE_SECONDS, 3, 3]

    async def test_unknown_after_stop_is_warning(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])

        async def stop_then_lose_status(stack_dir, timeout):
            compose.status_errors.add(stack_dir.name)
            return 0

        compose.stop = stop_then_lose_status
        warnings = await controller.smart_stop("web")
        assert warnings == ["stop not confirmed, last observed state unknown"]

    async def test_dry_run_issues_no_commands(self, compose, tracker, stacks_dir, sleep):
        controller = StackLifecycleController(
            compose, tracker, stop_timeout=60, dry_run=True, sleep=sleep
        )
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])

        assert await controller.smart_stop("web") == []
        assert await controller.smart_start("web") == []
        assert compose.calls == []
        assert compose.running["web"] == 2


@pytest.mark.asyncio
class TestSmartStart:
    """Restarting stacks that were running."""

    async def test_round_trip_restores_running(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])

        await controller.smart_stop("web")
        await controller.smart_start("web")

        assert compose.calls == [("stop", "web"), ("start", "web")]
        assert await tracker.check_status("web") == StackState.RUNNING

    async def test_already_running_skips_command(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        await tracker.store_initial_states(["web"])

        assert await controller.smart_start("web") == []
        assert compose.calls == []

    async def test_start_failure_is_docker_error(self, controller, tracker, compose, stacks_dir):
        make_stack(stacks_dir, "web")
        compose.running["web"] = 2
        compose.fail_start.add("web")
        await tracker.store_initial_states(["web"])
        await controller.smart_stop("web")

        with pytest.raises(DockerError, match="did not come back up"):
            await controller.smart_start("web")
