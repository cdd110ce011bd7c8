"""Cross-process advisory locks built on ``fcntl.flock``.

Locks are released by the kernel when the holding process exits, so a lock
file left behind by a crashed run never blocks the next one.
"""

import fcntl
import os
import time
from pathlib import Path
from types import TracebackType
from typing import IO

import structlog

from .exceptions import LockError

logger = structlog.get_logger()

POLL_INTERVAL = 0.1


def _read_holder_pid(path: Path) -> int | None:
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(content) if content.isdigit() else None


class FileLock:
    """Exclusive advisory lock with a bounded wait.

    Usable as a context manager; re-entering an already held lock object is an
    error rather than a deadlock.
    """

    def __init__(self, path: Path, timeout: float = 30.0, poll_interval: float = POLL_INTERVAL):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def _open(self) -> IO[str]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return open(self.path, "a+", encoding="utf-8")
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.path}: {e}") from e

    def _try_lock(self, handle: IO[str]) -> bool:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def acquire(self) -> None:
        if self.held:
            raise LockError(f"Lock already held: {self.path}")

        handle = self._open()
        deadline = time.monotonic() + self.timeout
        while not self._try_lock(handle):
            if time.monotonic() >= deadline:
                handle.close()
                holder = _read_holder_pid(self.path)
                raise LockError(
                    f"Timed out after {self.timeout}s waiting for lock {self.path}"
                    + (f" (held by PID {holder})" if holder else "")
                )
            time.sleep(self.poll_interval)

        self._handle = handle
        logger.debug("Acquired lock", lock=str(self.path))

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug("Released lock", lock=str(self.path))

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class InstanceLock(FileLock):
    """Non-blocking single-instance lock that records the holder's PID."""

    def __init__(self, path: Path):
        super().__init__(path, timeout=0)

    @property
    def holder_pid(self) -> int | None:
        return _read_holder_pid(self.path)

    def acquire(self) -> None:
        if self.held:
            raise LockError(f"Lock already held: {self.path}")

        stale_pid = self.holder_pid
        handle = self._open()
        if not self._try_lock(handle):
            handle.close()
            raise LockError(
                f"Another backup run is in progress (PID {self.holder_pid or 'unknown'}, "
                f"lock file {self.path})"
            )

        if stale_pid and stale_pid != os.getpid():
            logger.warning("Taking over stale instance lock", lock=str(self.path), stale_pid=stale_pid)

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired single-instance lock", lock=str(self.path), pid=os.getpid())

    def release(self) -> None:
        if self._handle is None:
            return
        # Keep the file and clear the PID; the path must stay one inode
        self._handle.seek(0)
        self._handle.truncate()
        self._handle.flush()
        super().release()
