"""
Stack Discovery

Finds compose stack directories and validates directory identifiers.
"""

import re
from pathlib import Path

import structlog

from ..constants import COMPOSE_FILE_NAMES

logger = structlog.get_logger()

# Discovered identifiers are plain directory names
DIR_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_dir_name(name: str) -> bool:
    """Check that ``name`` is a safe, visible directory name."""
    if not name or not DIR_NAME_PATTERN.match(name):
        return False
    if name.startswith("."):
        return False
    return set(name) != {"."}


def find_compose_file(directory: Path) -> Path | None:
    """Return the first recognized compose file in ``directory``."""
    for file_name in COMPOSE_FILE_NAMES:
        candidate = directory / file_name
        if candidate.is_file():
            return candidate
    return None


def has_compose_file(directory: Path) -> bool:
    return find_compose_file(directory) is not None


def discover_directories(stacks_dir: Path) -> list[str]:
    """Names of the immediate subdirectories of ``stacks_dir`` that hold a stack.

    Hidden directories and names that fail validation are skipped. The result
    is sorted.
    """
    if not stacks_dir.is_dir():
        logger.warning("Stacks directory not found", stacks_dir=str(stacks_dir))
        return []

    found: list[str] = []
    for child in stacks_dir.iterdir():
        if not child.is_dir():
            continue
        if not validate_dir_name(child.name):
            if not child.name.startswith("."):
                logger.warning("Skipping directory with invalid name", directory=child.name)
            continue
        if has_compose_file(child):
            found.append(child.name)

    found.sort()
    logger.debug("Discovered stack directories", stacks_dir=str(stacks_dir), count=len(found))
    return found
