"""Enum definitions for docker-backup."""

from enum import Enum


class StackState(Enum):
    """Observed state of a compose stack."""

    RUNNING = "running"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class VerificationDepth(Enum):
    """How thoroughly a fresh snapshot is checked."""

    METADATA = "metadata"
    FILES = "files"
    DATA = "data"


class ErrorClass(Enum):
    """Failure classification reported by a run."""

    CONFIG = "ConfigError"
    VALIDATION = "ValidationError"
    BACKUP = "BackupError"
    DOCKER = "DockerError"
    SIGNAL = "SignalError"
    LOCK = "LockError"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    ErrorClass.CONFIG: 1,
    ErrorClass.VALIDATION: 2,
    ErrorClass.BACKUP: 3,
    ErrorClass.DOCKER: 4,
    ErrorClass.SIGNAL: 5,
    ErrorClass.LOCK: 6,
}

EXIT_SUCCESS = 0
