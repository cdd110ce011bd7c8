"""
Docker Backup Services

Registry, stack lifecycle, snapshot and orchestration logic.
"""

from .lifecycle import StackLifecycleController, StackStateTracker  # noqa: F401
from .orchestrator import BackupOrchestrator  # noqa: F401
from .registry import DirectoryRegistry  # noqa: F401
from .snapshots import SnapshotManager  # noqa: F401

__all__ = [
    "BackupOrchestrator",
    "DirectoryRegistry",
    "SnapshotManager",
    "StackLifecycleController",
    "StackStateTracker",
]
