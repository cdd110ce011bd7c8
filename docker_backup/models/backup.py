"""Backup run data models: tags, snapshots, per-directory outcomes and statistics."""

import re
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import TAG_DATE_FORMAT, TAG_EXTERNAL, TAG_NAMESPACE, TAG_SELECTION_MODE
from .enums import EXIT_SUCCESS, ErrorClass

_NANOSECONDS = re.compile(r"(\.\d{6})\d+")


class BackupTagSet(BaseModel):
    """Labels attached to every snapshot of one directory."""

    model_config = ConfigDict(frozen=True)

    directory: str
    stamp: date
    external: bool = False
    namespace: str = TAG_NAMESPACE
    selection_mode: str = TAG_SELECTION_MODE

    @classmethod
    def for_directory(
        cls, identifier: str, external: bool, stamp: date | None = None
    ) -> "BackupTagSet":
        return cls(directory=identifier, external=external, stamp=stamp or date.today())

    def tags(self) -> list[str]:
        """Tags in the order they are passed to the snapshot tool."""
        tags = [
            self.namespace,
            self.selection_mode,
            self.directory,
            self.stamp.strftime(TAG_DATE_FORMAT),
        ]
        if self.external:
            tags.append(TAG_EXTERNAL)
        return tags

    def directory_filter(self) -> list[str]:
        """Tag filter matching exactly this directory's history."""
        return [self.namespace, self.directory]


class Snapshot(BaseModel):
    """One entry of the snapshot tool's JSON listing."""

    model_config = ConfigDict(extra="ignore")

    id: str
    short_id: str = ""
    time: datetime
    hostname: str = ""
    tags: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=list)

    @field_validator("time", mode="before")
    @classmethod
    def _trim_nanoseconds(cls, value):
        # restic reports nanoseconds; datetime holds microseconds
        if isinstance(value, str):
            return _NANOSECONDS.sub(r"\1", value)
        return value

    @property
    def display_id(self) -> str:
        return self.short_id or self.id[:8]


class DirectoryOutcome(BaseModel):
    """Result of processing one directory."""

    identifier: str
    error_class: ErrorClass | None = None
    message: str = ""
    backup_succeeded: bool = False
    warnings: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error_class is None


class RunStatistics(BaseModel):
    """Counters for one backup run.

    ``first_failure`` is sticky: it is set by the first failing directory and
    never overwritten afterwards.
    """

    enabled: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_identifiers: list[str] = Field(default_factory=list)
    first_failure: ErrorClass | None = None
    outcomes: list[DirectoryOutcome] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = None

    def record(self, outcome: DirectoryOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        if outcome.succeeded:
            self.succeeded += 1
            return
        self.failed += 1
        self.failed_identifiers.append(outcome.identifier)
        if self.first_failure is None:
            self.first_failure = outcome.error_class

    @property
    def exit_code(self) -> int:
        if self.first_failure is None:
            return EXIT_SUCCESS
        return self.first_failure.exit_code

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()
