"""
Directory Registry

Owns the set of backup-candidate directories and their enabled flags, and
persists them to the line-oriented dirlist file.
"""

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from ..constants import (
    DEFAULT_REGISTRY_LOCK_TIMEOUT,
    DIRLIST_DISCOVERED_SECTION,
    DIRLIST_EXTERNAL_SECTION,
    DIRLIST_FILE_MODE,
    DIRLIST_HEADER,
    REGISTRY_LOCK_NAME,
    TAG_SEPARATOR,
)
from ..core.exceptions import ConfigError, ValidationError
from ..core.locking import FileLock
from ..models.registry import DirectoryEntry, LoadIssue, SyncDelta
from .discovery import discover_directories, has_compose_file, validate_dir_name

BOOL_VALUES = {"true": True, "false": False}


class DirectoryRegistry:
    """Ordered, uniquely keyed mapping of directory identifiers to entries.

    Bare identifiers are relative to ``stacks_dir`` and are managed by
    ``sync()``. Absolute identifiers are external and are only created or
    destroyed by ``add_external()`` / ``remove_external()``.

    Load, mutate and save sequences that may race with another process should
    run inside ``locked()``.
    """

    def __init__(
        self,
        dirlist_file: Path,
        stacks_dir: Path,
        lock_dir: Path | None = None,
        lock_timeout: float = DEFAULT_REGISTRY_LOCK_TIMEOUT,
    ):
        self.dirlist_file = Path(dirlist_file)
        self.stacks_dir = Path(stacks_dir)
        self.lock_dir = Path(lock_dir) if lock_dir else self.dirlist_file.parent
        self.lock_timeout = lock_timeout
        self._entries: dict[str, DirectoryEntry] = {}
        self.load_issues: list[LoadIssue] = []
        self.logger = structlog.get_logger().bind(component="registry")

    # Persistence

    @contextmanager
    def locked(self) -> Iterator["DirectoryRegistry"]:
        """Hold the cross-process registry lock and reload from disk."""
        lock = FileLock(self.lock_dir / f"{REGISTRY_LOCK_NAME}.lock", timeout=self.lock_timeout)
        with lock:
            self.load()
            yield self

    def _parse_line(self, line_number: int, raw: str) -> DirectoryEntry | LoadIssue | None:
        line = raw.strip()
        if not line or line.startswith("#"):
            return None

        identifier, sep, value = line.rpartition("=")
        identifier = identifier.strip()
        if not sep or not identifier:
            return LoadIssue(line_number=line_number, line=raw, reason="expected identifier=true|false")
        if value.strip() not in BOOL_VALUES:
            return LoadIssue(line_number=line_number, line=raw, reason=f"invalid value {value.strip()!r}")

        if identifier.startswith("/"):
            if ".." in Path(identifier).parts:
                return LoadIssue(line_number=line_number, line=raw, reason="external path contains '..'")
            if TAG_SEPARATOR in identifier:
                return LoadIssue(line_number=line_number, line=raw, reason="external path contains ','")
        elif not validate_dir_name(identifier):
            return LoadIssue(line_number=line_number, line=raw, reason="invalid directory name")

        return DirectoryEntry(identifier=identifier, enabled=BOOL_VALUES[value.strip()])

    def load(self) -> list[LoadIssue]:
        """Replace in-memory state with the persisted list.

        Malformed and duplicate lines are skipped and returned as issues. A
        missing file yields an empty registry.
        """
        self._entries = {}
        self.load_issues = []

        if not self.dirlist_file.exists():
            self.logger.debug("Registry file not found, starting empty", dirlist=str(self.dirlist_file))
            return []

        try:
            content = self.dirlist_file.read_bytes()
        except OSError as e:
            raise ConfigError(f"Cannot read registry file {self.dirlist_file}: {e}") from e

        for line_number, raw_bytes in enumerate(content.splitlines(), start=1):
            try:
                raw = raw_bytes.decode("utf-8")
            except UnicodeDecodeError:
                self.load_issues.append(
                    LoadIssue(
                        line_number=line_number,
                        line=raw_bytes.decode("utf-8", errors="replace"),
                        reason="not valid UTF-8",
                    )
                )
                continue
            parsed = self._parse_line(line_number, raw)
            if parsed is None:
                continue
            if isinstance(parsed, LoadIssue):
                self.load_issues.append(parsed)
                continue
            if parsed.identifier in self._entries:
                self.load_issues.append(
                    LoadIssue(line_number=line_number, line=raw, reason="duplicate identifier")
                )
                continue
            self._entries[parsed.identifier] = parsed

        for issue in self.load_issues:
            self.logger.warning(
                "Skipping malformed registry line",
                line_number=issue.line_number,
                line=issue.line,
                reason=issue.reason,
            )
        self.logger.debug("Registry loaded", entries=len(self._entries), issues=len(self.load_issues))
        return list(self.load_issues)

    def render(self) -> str:
        """File content for the current state."""
        discovered = sorted(
            (e for e in self._entries.values() if not e.is_external), key=lambda e: e.identifier
        )
        external = sorted(
            (e for e in self._entries.values() if e.is_external), key=lambda e: e.identifier
        )

        lines = [*DIRLIST_HEADER, "", DIRLIST_DISCOVERED_SECTION]
        lines.extend(f"{e.identifier}={str(e.enabled).lower()}" for e in discovered)
        lines.extend(["", DIRLIST_EXTERNAL_SECTION])
        lines.extend(f"{e.identifier}={str(e.enabled).lower()}" for e in external)
        return "\n".join(lines) + "\n"

    def save(self) -> None:
        """Atomically rewrite the registry file with restrictive permissions."""
        self.dirlist_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.dirlist_file.name}.", dir=self.dirlist_file.parent
        )
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(fd, DIRLIST_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.render())
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.dirlist_file)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        self.logger.info("Registry saved", dirlist=str(self.dirlist_file), entries=len(self._entries))

    # Filesystem synchronization

    def sync(self) -> SyncDelta:
        """Reconcile discovered entries with the stacks directory.

        External entries are never touched. New directories are added
        disabled. The caller decides whether to persist the returned delta.
        """
        on_disk = set(discover_directories(self.stacks_dir))
        known = {ident for ident, entry in self._entries.items() if not entry.is_external}

        added = sorted(on_disk - known)
        removed = sorted(known - on_disk)

        for identifier in removed:
            del self._entries[identifier]
        for identifier in added:
            self._entries[identifier] = DirectoryEntry(identifier=identifier, enabled=False)

        delta = SyncDelta(added=added, removed=removed)
        if delta.changed:
            self.logger.info("Registry synchronized", added=added, removed=removed)
        return delta

    # External directories

    def add_external(self, path: str | Path, enabled: bool = False) -> DirectoryEntry:
        """Register a stack directory outside the stacks root.

        Raises:
            ValidationError: If the path is relative, missing, not a stack,
                already registered, or located inside the stacks root
        """
        raw = str(path)
        if not raw.startswith("/"):
            raise ValidationError(f"External path must be absolute: {raw}")

        identifier = os.path.normpath(raw)
        # The identifier becomes a snapshot tag, and tag filters are comma-separated
        if TAG_SEPARATOR in identifier:
            raise ValidationError(f"External path must not contain ',': {identifier}")
        candidate = Path(identifier)
        if not candidate.exists():
            raise ValidationError(f"Directory does not exist: {identifier}")
        if not candidate.is_dir():
            raise ValidationError(f"Not a directory: {identifier}")
        if not has_compose_file(candidate):
            raise ValidationError(f"No compose file found in {identifier}")
        if identifier in self._entries:
            raise ValidationError(f"Directory already registered: {identifier}")

        resolved = candidate.resolve()
        stacks_root = self.stacks_dir.resolve()
        if resolved == stacks_root or resolved.is_relative_to(stacks_root):
            raise ValidationError(
                f"{identifier} is inside the stacks directory {stacks_root}; "
                "it is picked up by sync instead"
            )

        entry = DirectoryEntry(identifier=identifier, enabled=enabled)
        self._entries[identifier] = entry
        self.logger.info("External directory added", directory=identifier, enabled=enabled)
        return entry

    def remove_external(self, identifier: str) -> None:
        """Remove an external entry.

        Raises:
            ValidationError: If the entry is unknown or is a discovered directory
        """
        entry = self.get(identifier)
        if not entry.is_external:
            raise ValidationError(
                f"{identifier} is a discovered directory; disable it instead of removing it"
            )
        del self._entries[identifier]
        self.logger.info("External directory removed", directory=identifier)

    # Accessors

    def get_full_path(self, identifier: str) -> Path:
        if identifier.startswith("/"):
            return Path(identifier)
        return self.stacks_dir / identifier

    def get(self, identifier: str) -> DirectoryEntry:
        try:
            return self._entries[identifier]
        except KeyError:
            raise ValidationError(f"Unknown directory: {identifier}") from None

    def exists(self, identifier: str) -> bool:
        return identifier in self._entries

    def set_enabled(self, identifier: str, enabled: bool) -> DirectoryEntry:
        entry = self.get(identifier).model_copy(update={"enabled": enabled})
        self._entries[identifier] = entry
        return entry

    def toggle(self, identifier: str) -> DirectoryEntry:
        return self.set_enabled(identifier, not self.get(identifier).enabled)

    def set_all(self, enabled: bool) -> int:
        """Set every entry's flag; returns the number of entries changed."""
        changed = 0
        for identifier, entry in list(self._entries.items()):
            if entry.enabled != enabled:
                self._entries[identifier] = entry.model_copy(update={"enabled": enabled})
                changed += 1
        return changed

    def enabled_identifiers(self) -> list[str]:
        return sorted(ident for ident, entry in self._entries.items() if entry.enabled)

    def entries(self) -> list[DirectoryEntry]:
        """Entries in registry order. Entries are immutable, so the list is a safe copy."""
        return list(self._entries.values())

    def counts(self) -> dict[str, int]:
        enabled = sum(1 for entry in self._entries.values() if entry.enabled)
        return {
            "total": len(self._entries),
            "enabled": enabled,
            "disabled": len(self._entries) - enabled,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries
