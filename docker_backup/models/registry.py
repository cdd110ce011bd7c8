"""Directory registry data models."""

from pydantic import BaseModel, ConfigDict, Field, computed_field


class DirectoryEntry(BaseModel):
    """A backup candidate directory.

    ``identifier`` is either a bare name relative to the stacks root or an
    absolute path. Whether the entry is external is derived from that form and
    can never be set independently.
    """

    model_config = ConfigDict(frozen=True)

    identifier: str
    enabled: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_external(self) -> bool:
        return self.identifier.startswith("/")


class SyncDelta(BaseModel):
    """Changes applied to the discovered set by a registry sync."""

    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class LoadIssue(BaseModel):
    """A registry file line that was skipped during load."""

    line_number: int
    line: str
    reason: str
