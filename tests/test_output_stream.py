"""Tests for the command output stream."""

import io
from unittest.mock import MagicMock

from docker_backup.core.output_stream import (
    CollectingSubscriber,
    OutputStream,
    console_subscriber,
    log_subscriber,
)


def test_lines_reach_every_subscriber_in_order():
    stream = OutputStream()
    first, second = CollectingSubscriber(), CollectingSubscriber()
    stream.subscribe(first)
    stream.subscribe(second)

    stream.publish("restic", "scan started\n")
    stream.publish("restic", "snapshot saved\r\n")

    expected = [("restic", "scan started"), ("restic", "snapshot saved")]
    assert first.lines == expected
    assert second.lines == expected
    assert first.text == "scan started\nsnapshot saved"


def test_unsubscribe():
    stream = OutputStream()
    collected = CollectingSubscriber()
    unsubscribe = stream.subscribe(collected)
    unsubscribe()
    stream.publish("restic", "ignored")
    assert collected.lines == []
    assert stream.subscriber_count == 0


def test_failing_subscriber_does_not_block_others():
    stream = OutputStream()

    def broken(source, line):
        raise RuntimeError("display closed")

    collected = CollectingSubscriber()
    stream.subscribe(broken)
    stream.subscribe(collected)
    stream.publish("compose", "stopping")

    assert collected.lines == [("compose", "stopping")]


def test_console_subscriber_writes_prefixed_lines():
    buffer = io.StringIO()
    console_subscriber(buffer)("restic", "Files: 10 new")
    assert buffer.getvalue() == "  [restic] Files: 10 new\n"


def test_log_subscriber_skips_blank_lines():
    logger = MagicMock()
    record = log_subscriber(logger, directory="web")
    record("restic", "")
    record("restic", "processed 3 files")

    logger.info.assert_called_once_with(
        "Command output", source="restic", line="processed 3 files", directory="web"
    )
