"""Incremental command output delivered to any number of subscribers."""

import sys
from collections.abc import Callable
from typing import Any, TextIO

import structlog

logger = structlog.get_logger()

Subscriber = Callable[[str, str], None]


class OutputStream:
    """Fan-out of command output lines.

    Producers publish one line at a time as it is read from a child process;
    each subscriber receives ``(source, line)`` in publication order.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a callable that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, source: str, line: str) -> None:
        line = line.rstrip("\r\n")
        for subscriber in list(self._subscribers):
            try:
                subscriber(source, line)
            except Exception as e:
                # A broken display must not abort the command that produced the output
                logger.warning("Output subscriber failed", source=source, error=str(e))


def console_subscriber(stream: TextIO | None = None) -> Subscriber:
    """Echo output lines to a text stream (stdout by default)."""

    def write(source: str, line: str) -> None:
        target = stream or sys.stdout
        target.write(f"  [{source}] {line}\n")
        target.flush()

    return write


def log_subscriber(bound_logger: Any = None, **context: Any) -> Subscriber:
    """Record output lines as INFO log events."""
    log = bound_logger or logger

    def record(source: str, line: str) -> None:
        if line.strip():
            log.info("Command output", source=source, line=line, **context)

    return record


class CollectingSubscriber:
    """Keep every published line in memory."""

    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def __call__(self, source: str, line: str) -> None:
        self.lines.append((source, line))

    @property
    def text(self) -> str:
        return "\n".join(line for _, line in self.lines)
