"""Tests for the docker-backup command line."""

import logging
from unittest.mock import patch

import pytest
import yaml

from docker_backup.cli import build_parser, run_cli
from tests.fakes import FakeCompose, FakeRestic, config_data, make_stack


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for var in ("DOCKER_STACKS_DIR", "RESTIC_REPOSITORY", "RESTIC_PASSWORD", "LOG_LEVEL", "BACKUP_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    with patch("docker_backup.cli.load_dotenv"), patch("docker_backup.core.config_loader.load_dotenv"):
        yield
    logging.getLogger().handlers.clear()


@pytest.fixture
def config_file(tmp_path, stacks_dir):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(config_data(tmp_path)))
    return path


def cli(config_file, *argv: str) -> int:
    return run_cli(["--config", str(config_file), *argv])


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_generate_and_validate_config(tmp_path, capsys):
    target = tmp_path / "generated" / "config.yml"
    assert run_cli(["generate-config", "--output", str(target)]) == 0
    assert target.exists()

    # Template points at paths that do not exist here
    assert run_cli(["--config", str(target), "validate-config"]) == 1
    assert "docker.stacks_dir" in capsys.readouterr().out


def test_validate_config_success(config_file, capsys):
    assert cli(config_file, "validate-config") == 0
    assert "Configuration is valid" in capsys.readouterr().out


def test_invalid_config_exit_code(tmp_path, capsys):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump({"docker": {"stacks_dir": str(tmp_path / "missing")}}))
    assert run_cli(["--config", str(path), "dirlist", "list"]) == 1


def test_dirlist_workflow(config_file, stacks_dir, tmp_path, capsys):
    make_stack(stacks_dir, "web")
    make_stack(stacks_dir, "db")
    external = make_stack(tmp_path / "elsewhere", "ext")

    assert cli(config_file, "dirlist", "sync") == 0
    assert "added    db (disabled)" in capsys.readouterr().out

    assert cli(config_file, "dirlist", "enable", "web") == 0
    assert cli(config_file, "dirlist", "add-external", str(external), "--enable") == 0
    capsys.readouterr()

    assert cli(config_file, "dirlist", "list") == 0
    listing = capsys.readouterr().out
    assert "[x] web" in listing
    assert "[ ] db" in listing
    assert f"[x] {external}" in listing

    assert cli(config_file, "dirlist", "remove-external", str(external)) == 0
    assert str(external) not in (tmp_path / "dirlist").read_text()


def test_dirlist_errors_map_to_exit_codes(config_file, stacks_dir, capsys):
    assert cli(config_file, "dirlist", "enable", "ghost") == 2
    assert cli(config_file, "dirlist", "add-external", "relative/path") == 2
    assert "absolute" in capsys.readouterr().err


def test_dirlist_disable_all(config_file, stacks_dir):
    make_stack(stacks_dir, "web")
    cli(config_file, "dirlist", "sync")
    cli(config_file, "dirlist", "enable", "--all")
    assert "web=true" in (config_file.parent / "dirlist").read_text()

    cli(config_file, "dirlist", "disable", "--all")
    assert "web=false" in (config_file.parent / "dirlist").read_text()


def test_run_dry_run(config_file, stacks_dir, tmp_path, capsys):
    make_stack(stacks_dir, "web")
    (tmp_path / "dirlist").write_text("web=true\n")
    compose, restic = FakeCompose(), FakeRestic()
    compose.running["web"] = 1

    with patch("docker_backup.cli.ComposeRunner", return_value=compose), patch(
        "docker_backup.cli.ResticRunner", return_value=restic
    ):
        assert cli(config_file, "run", "--dry-run") == 0

    assert compose.calls == []
    assert restic.calls == []
    assert "BACKUP SUMMARY (DRY RUN)" in capsys.readouterr().out


def test_run_reports_first_failure(config_file, stacks_dir, tmp_path, capsys):
    make_stack(stacks_dir, "web")
    (tmp_path / "dirlist").write_text("web=true\n")
    restic = FakeRestic()
    restic.fail_backup.add("web")

    with patch("docker_backup.cli.ComposeRunner", return_value=FakeCompose()), patch(
        "docker_backup.cli.ResticRunner", return_value=restic
    ):
        assert cli(config_file, "run") == 3

    out = capsys.readouterr().out
    assert "FAILED  web [BackupError]" in out


def test_snapshots_command(config_file, capsys):
    restic = FakeRestic()
    restic.add_snapshot(["docker-backup", "selective-backup", "web", "2026-10-01"])
    with patch("docker_backup.cli.ResticRunner", return_value=restic):
        assert cli(config_file, "snapshots") == 0
    out = capsys.readouterr().out
    assert "web" in out
    assert "ID" in out


def test_restore_preview_without_snapshots(config_file, capsys):
    with patch("docker_backup.cli.ResticRunner", return_value=FakeRestic()):
        assert cli(config_file, "restore-preview", "web") == 3
    assert "No snapshots" in capsys.readouterr().err


def test_health_command(config_file, capsys):
    with patch("docker_backup.cli.ComposeRunner", return_value=FakeCompose()), patch(
        "docker_backup.cli.ResticRunner", return_value=FakeRestic()
    ):
        assert cli(config_file, "health") == 0
    out = capsys.readouterr().out
    assert "[OK  ] repository" in out
    assert "Overall: healthy" in out
