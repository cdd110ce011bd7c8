"""Shared pytest fixtures for docker-backup tests."""

from pathlib import Path
from typing import Any

import pytest

from docker_backup.core.config_loader import BackupConfig
from docker_backup.core.secrets import ResolvedSecret
from docker_backup.services.registry import DirectoryRegistry
from tests.fakes import FakeCompose, FakeRestic, config_data


@pytest.fixture
def stacks_dir(tmp_path: Path) -> Path:
    path = tmp_path / "stacks"
    path.mkdir()
    return path


@pytest.fixture
def make_config(tmp_path: Path, stacks_dir: Path):
    """Factory for a valid configuration rooted in tmp_path."""

    def factory(**sections: dict[str, Any]) -> BackupConfig:
        return BackupConfig.model_validate(config_data(tmp_path, **sections))

    return factory


@pytest.fixture
def config(make_config) -> BackupConfig:
    return make_config()


@pytest.fixture
def registry(config: BackupConfig) -> DirectoryRegistry:
    return DirectoryRegistry(
        config.paths.dirlist_file,
        config.docker.stacks_dir,
        lock_dir=config.paths.lock_dir,
        lock_timeout=1,
    )


@pytest.fixture
def calls() -> list[tuple[str, str]]:
    """Ordered compose and restic calls shared by both fakes."""
    return []


@pytest.fixture
def compose(calls) -> FakeCompose:
    return FakeCompose(calls)


@pytest.fixture
def restic(calls) -> FakeRestic:
    return FakeRestic(calls)


@pytest.fixture
def secret_resolver(tmp_path: Path):
    password_file = tmp_path / "password"
    password_file.write_text("hunter2\n")

    async def resolve(settings) -> ResolvedSecret:
        return ResolvedSecret("file", password_file, temporary=False)

    return resolve
