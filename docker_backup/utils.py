"""Utility functions for docker-backup.

Small formatting and filesystem helpers shared by the services and the CLI.
"""

import shutil
from pathlib import Path

MIB = 1024 * 1024


def format_size(size_bytes: float) -> str:
    """Format bytes into human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string with appropriate unit

    Examples:
        >>> format_size(0)
        '0 B'
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536870912)
        '1.4 GB'
    """
    if size_bytes == 0:
        return "0 B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format a duration as ``1h 2m 3s``.

    Examples:
        >>> format_duration(45)
        '45s'
        >>> format_duration(3725)
        '1h 2m 5s'
    """
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def free_disk_space_mb(path: Path) -> int:
    """Free space in MiB on the filesystem holding ``path``."""
    return shutil.disk_usage(path).free // MIB
