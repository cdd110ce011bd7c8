"""Repository password resolution.

Exactly one secret source is used, chosen by strict precedence:
``password_file`` > ``password_command`` > ``password``. The chosen source
must yield a non-empty secret before any stack is touched.
"""

import asyncio
import os
import shlex
import tempfile
from pathlib import Path

import structlog

from .config_loader import RepositorySettings
from .exceptions import CommandError, ConfigError
from .subprocess_manager import run_command

logger = structlog.get_logger()

PASSWORD_COMMAND_TIMEOUT = 30


class ResolvedSecret:
    """A password made available to restic through a file.

    For ``password_file`` the configured file is used in place. For command and
    direct values the secret is written to a 0600 temporary file that
    ``cleanup()`` removes.
    """

    def __init__(self, method: str, password_file: Path, temporary: bool):
        self.method = method
        self.password_file = password_file
        self.temporary = temporary

    def env(self) -> dict[str, str]:
        """Environment handed to every restic invocation."""
        return {"RESTIC_PASSWORD_FILE": str(self.password_file)}

    def cleanup(self) -> None:
        if not self.temporary:
            return
        try:
            self.password_file.unlink()
        except FileNotFoundError:
            pass
        else:
            logger.debug("Removed temporary password file")

    def __repr__(self) -> str:
        return f"ResolvedSecret(method={self.method!r}, temporary={self.temporary})"


def _write_temp_secret(secret: str, directory: Path | None = None) -> Path:
    fd, name = tempfile.mkstemp(prefix="docker-backup-", suffix=".pw", dir=directory)
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, secret.encode("utf-8"))
    finally:
        os.close(fd)
    return Path(name)


def _read_password_file(path: Path) -> str:
    try:
        secret = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError(f"Cannot read password file {path}: {e}") from e
    if not secret:
        raise ConfigError(f"Password file is empty: {path}")
    return secret


async def _run_password_command(command: str) -> str:
    try:
        result = await run_command(shlex.split(command), timeout=PASSWORD_COMMAND_TIMEOUT)
    except (CommandError, asyncio.TimeoutError) as e:
        raise ConfigError(f"Password command failed: {e}") from e
    secret = result.stdout.strip()
    if not secret:
        raise ConfigError("Password command returned an empty password")
    return secret


async def resolve_secret(settings: RepositorySettings, temp_dir: Path | None = None) -> ResolvedSecret:
    """Resolve the repository password using the highest-precedence configured source.

    Raises:
        ConfigError: If no source is configured or the chosen source yields no secret
    """
    method = settings.password_method
    if method == "file":
        assert settings.password_file is not None
        _read_password_file(settings.password_file)
        secret = ResolvedSecret(method, settings.password_file, temporary=False)
    elif method == "command":
        assert settings.password_command is not None
        value = await _run_password_command(settings.password_command)
        secret = ResolvedSecret(method, _write_temp_secret(value, temp_dir), temporary=True)
    elif method == "direct":
        assert settings.password is not None
        value = settings.password.get_secret_value()
        secret = ResolvedSecret(method, _write_temp_secret(value, temp_dir), temporary=True)
    else:
        raise ConfigError("No repository password configured")

    logger.debug("Resolved repository password", method=method)
    return secret
