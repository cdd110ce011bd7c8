"""Configuration management for docker-backup.

The configuration is produced by a single validation pass over the merged
YAML file and environment overrides. The pass yields either a frozen
``BackupConfig`` or a structured list of issues, never a partially valid
object.
"""

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..models.enums import VerificationDepth
from .exceptions import ConfigError

logger = structlog.get_logger()

CONFIG_FILE_NAME = "config.yml"


class FrozenModel(BaseModel):
    """Base model for immutable configuration sections."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class DockerSettings(FrozenModel):
    """Compose stack settings."""

    stacks_dir: Path = Path("/opt/docker-stacks")
    timeout: int = Field(default=300, ge=5, description="Graceful stop timeout in seconds")


class RepositorySettings(FrozenModel):
    """Snapshot repository settings."""

    location: str = ""
    password: SecretStr | None = None
    password_file: Path | None = None
    password_command: str | None = None
    hostname: str | None = None
    backup_timeout: int = Field(default=3600, ge=60)
    one_file_system: bool = True
    exclude_caches: bool = True

    @property
    def password_method(self) -> str:
        """Configured secret source, in precedence order."""
        if self.password_file:
            return "file"
        if self.password_command:
            return "command"
        if self.password is not None and self.password.get_secret_value():
            return "direct"
        return "none"


class RetentionPolicy(FrozenModel):
    """Keep-counts for snapshot pruning."""

    keep_daily: int | None = Field(default=7, ge=0)
    keep_weekly: int | None = Field(default=4, ge=0)
    keep_monthly: int | None = Field(default=6, ge=0)
    keep_yearly: int | None = Field(default=2, ge=0)
    auto_prune: bool = True

    def keep_counts(self) -> dict[str, int]:
        """Non-zero keep-counts keyed by the snapshot tool's flag suffix."""
        counts = {
            "daily": self.keep_daily,
            "weekly": self.keep_weekly,
            "monthly": self.keep_monthly,
            "yearly": self.keep_yearly,
        }
        return {period: count for period, count in counts.items() if count}

    @property
    def should_prune(self) -> bool:
        return self.auto_prune and bool(self.keep_counts())


class VerificationSettings(FrozenModel):
    """Post-backup verification settings."""

    enabled: bool = True
    depth: VerificationDepth = VerificationDepth.METADATA


class ResourceSettings(FrozenModel):
    """Host resource preconditions."""

    min_disk_space_mb: int = Field(default=1024, ge=0)


class PathSettings(FrozenModel):
    """Locations of state files written by docker-backup."""

    dirlist_file: Path
    lock_dir: Path
    log_dir: Path


class BackupConfig(FrozenModel):
    """Validated, immutable configuration for one invocation."""

    docker: DockerSettings = Field(default_factory=DockerSettings)
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    resources: ResourceSettings = Field(default_factory=ResourceSettings)
    paths: PathSettings
    registry_lock_timeout: int = Field(default=30, ge=1)
    log_level: str = "INFO"
    config_file: Path | None = None


class BackupEnvironment(BaseSettings):
    """Environment overrides, applied on top of the YAML file."""

    stacks_dir: str | None = Field(default=None, alias="DOCKER_STACKS_DIR")
    repository: str | None = Field(default=None, alias="RESTIC_REPOSITORY")
    password: str | None = Field(default=None, alias="RESTIC_PASSWORD")
    password_file: str | None = Field(default=None, alias="RESTIC_PASSWORD_FILE")
    password_command: str | None = Field(default=None, alias="RESTIC_PASSWORD_COMMAND")
    hostname: str | None = Field(default=None, alias="BACKUP_HOSTNAME")
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)


class ConfigIssue(BaseModel):
    """One problem found by the validation pass."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ConfigValidation(BaseModel):
    """Outcome of the validation pass: a config or a list of issues."""

    config: BackupConfig | None = None
    issues: list[ConfigIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.config is not None and not self.issues


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """Locate the configuration file.

    Priority order:
    1. Explicit path (``--config``)
    2. BACKUP_CONFIG environment variable
    3. ./config/config.yml
    4. ~/.config/docker-backup/config.yml
    """
    if explicit:
        return Path(explicit)

    candidates: list[Path] = []
    if env_path := os.getenv("BACKUP_CONFIG"):
        candidates.append(Path(env_path))
    candidates.append(Path.cwd() / "config" / CONFIG_FILE_NAME)
    candidates.append(Path.home() / ".config" / "docker-backup" / CONFIG_FILE_NAME)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def default_base_dir(config_path: Path | None) -> Path:
    """Directory that holds dirlist, locks and logs when not configured."""
    if config_path is None:
        return Path.cwd()
    config_dir = config_path.resolve().parent
    # config/config.yml keeps state one level up, next to the config directory
    if config_dir.name == "config":
        return config_dir.parent
    return config_dir


def read_config_file(config_path: Path) -> dict[str, Any]:
    """Load a YAML configuration file into a dict."""
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")
    return loaded


def apply_env_overrides(data: dict[str, Any], env: BackupEnvironment) -> dict[str, Any]:
    """Return a copy of ``data`` with environment overrides applied."""
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in data.items()}
    docker = merged["docker"] = merged.get("docker") or {}
    repository = merged["repository"] = merged.get("repository") or {}

    if env.stacks_dir:
        docker["stacks_dir"] = env.stacks_dir
    if env.repository:
        repository["location"] = env.repository
    if env.password:
        repository["password"] = env.password
    if env.password_file:
        repository["password_file"] = env.password_file
    if env.password_command:
        repository["password_command"] = env.password_command
    if env.hostname:
        repository["hostname"] = env.hostname
    if env.log_level:
        merged["log_level"] = env.log_level
    return merged


def _with_default_paths(data: dict[str, Any], base_dir: Path) -> dict[str, Any]:
    paths = dict(data.get("paths") or {})
    paths.setdefault("dirlist_file", str(base_dir / "dirlist"))
    paths.setdefault("lock_dir", str(base_dir / "locks"))
    paths.setdefault("log_dir", str(base_dir / "logs"))
    return {**data, "paths": paths}


def _semantic_issues(config: BackupConfig) -> list[ConfigIssue]:
    issues: list[ConfigIssue] = []

    stacks_dir = config.docker.stacks_dir
    if not stacks_dir.is_absolute():
        issues.append(ConfigIssue(field="docker.stacks_dir", message="must be an absolute path"))
    elif not stacks_dir.is_dir():
        issues.append(
            ConfigIssue(
                field="docker.stacks_dir",
                message=f"stacks directory does not exist: {stacks_dir}",
            )
        )

    if not config.repository.location.strip():
        issues.append(ConfigIssue(field="repository.location", message="repository not configured"))

    if config.repository.password_method == "none":
        issues.append(
            ConfigIssue(
                field="repository.password",
                message="no password method configured (password, password_file or password_command)",
            )
        )

    if config.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        issues.append(ConfigIssue(field="log_level", message=f"unknown log level: {config.log_level}"))

    return issues


def validate_config(data: dict[str, Any], base_dir: Path | None = None) -> ConfigValidation:
    """Run the single validation pass over raw configuration data."""
    data = _with_default_paths(data, base_dir or Path.cwd())

    try:
        config = BackupConfig.model_validate(data)
    except PydanticValidationError as e:
        issues = [
            ConfigIssue(
                field=".".join(str(part) for part in error["loc"]) or "<root>",
                message=error["msg"],
            )
            for error in e.errors()
        ]
        return ConfigValidation(issues=issues)

    issues = _semantic_issues(config)
    if issues:
        return ConfigValidation(issues=issues)
    return ConfigValidation(config=config)


def load_config(config_path: str | Path | None = None) -> BackupConfig:
    """Load, merge and validate configuration.

    Raises:
        ConfigError: If the file cannot be read or validation reports issues
    """
    load_dotenv()

    path = find_config_file(config_path)
    data: dict[str, Any] = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        data = read_config_file(path)
        data["config_file"] = str(path)

    data = apply_env_overrides(data, BackupEnvironment())
    result = validate_config(data, default_base_dir(path))
    if not result.valid:
        details = "\n  - ".join(str(issue) for issue in result.issues)
        raise ConfigError(f"configuration errors:\n  - {details}")

    assert result.config is not None
    logger.debug(
        "Configuration loaded",
        config_file=str(path) if path else None,
        stacks_dir=str(result.config.docker.stacks_dir),
        repository=result.config.repository.location[:20] + "...",
        password_method=result.config.repository.password_method,
    )
    return result.config


CONFIG_TEMPLATE = """\
# docker-backup configuration
# Environment variables override these values:
#   DOCKER_STACKS_DIR, RESTIC_REPOSITORY, RESTIC_PASSWORD, RESTIC_PASSWORD_FILE,
#   RESTIC_PASSWORD_COMMAND, BACKUP_HOSTNAME, LOG_LEVEL

docker:
  stacks_dir: /opt/docker-stacks
  # Seconds compose waits for containers to stop gracefully
  timeout: 300

repository:
  location: /srv/restic-repo
  # Exactly one is used, in this order: password_file, password_command, password
  password_file: /root/.config/restic/password
  # password_command: "pass show restic"
  # password: "change-me"
  # hostname: backup-host
  backup_timeout: 3600
  one_file_system: true
  exclude_caches: true

retention:
  keep_daily: 7
  keep_weekly: 4
  keep_monthly: 6
  keep_yearly: 2
  auto_prune: true

verification:
  enabled: true
  # metadata | files | data
  depth: metadata

resources:
  min_disk_space_mb: 1024

# paths:
#   dirlist_file: /opt/backup/dirlist
#   lock_dir: /opt/backup/locks
#   log_dir: /opt/backup/logs
"""


def generate_config_template(target: Path) -> Path:
    """Write the commented configuration template to ``target``."""
    if target.exists():
        raise ConfigError(f"Refusing to overwrite existing file: {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    target.chmod(0o600)
    return target
