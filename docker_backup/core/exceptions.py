"""Core exceptions for docker-backup operations.

Every exception carries the classification the run reports and the process
exit code that classification maps to.
"""

from ..models.enums import ErrorClass


class DockerBackupError(Exception):
    """Base exception for docker-backup operations."""

    error_class: ErrorClass = ErrorClass.CONFIG

    @property
    def exit_code(self) -> int:
        return self.error_class.exit_code


class ConfigError(DockerBackupError):
    """Configuration validation, loading or secret resolution failed."""

    error_class = ErrorClass.CONFIG


class ValidationError(DockerBackupError):
    """A directory failed validation (missing path, bad identifier)."""

    error_class = ErrorClass.VALIDATION


class BackupError(DockerBackupError):
    """Snapshot creation or repository access failed."""

    error_class = ErrorClass.BACKUP


class DockerError(DockerBackupError):
    """Stack stop/start could not be confirmed against ground truth."""

    error_class = ErrorClass.DOCKER


class SignalError(DockerBackupError):
    """The run was interrupted by a signal."""

    error_class = ErrorClass.SIGNAL

    def __init__(self, message: str, signum: int | None = None):
        super().__init__(message)
        self.signum = signum


class LockError(DockerBackupError):
    """The instance lock or the registry lock could not be acquired."""

    error_class = ErrorClass.LOCK


class CommandError(DockerBackupError):
    """An external command could not be executed or exited non-zero."""

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output
