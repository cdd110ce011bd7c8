"""Data models for docker-backup."""

from .backup import (  # noqa: F401
    BackupTagSet,
    DirectoryOutcome,
    RunStatistics,
    Snapshot,
)
from .enums import (  # noqa: F401
    ErrorClass,
    StackState,
    VerificationDepth,
)
from .registry import (  # noqa: F401
    DirectoryEntry,
    LoadIssue,
    SyncDelta,
)

__all__ = [
    # Backup models
    "BackupTagSet",
    "DirectoryOutcome",
    "RunStatistics",
    "Snapshot",
    # Enums
    "ErrorClass",
    "StackState",
    "VerificationDepth",
    # Registry models
    "DirectoryEntry",
    "LoadIssue",
    "SyncDelta",
]
