"""Centralized constants for docker-backup to eliminate duplicate strings."""

# Compose files recognized as a stack definition, in lookup order
COMPOSE_FILE_NAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

# Snapshot tags
TAG_NAMESPACE = "docker-backup"
TAG_SELECTION_MODE = "selective-backup"
TAG_EXTERNAL = "external"
TAG_DATE_FORMAT = "%Y-%m-%d"
# restic joins tags in one --tag filter with commas (AND)
TAG_SEPARATOR = ","

# Registry file
DIRLIST_HEADER = (
    "# Auto-generated directory list for selective backup",
    "# Edit this file to enable/disable backup for each directory",
    "# true = backup enabled, false = skip backup",
)
DIRLIST_DISCOVERED_SECTION = "# Discovered directories (relative to DOCKER_STACKS_DIR)"
DIRLIST_EXTERNAL_SECTION = "# External directories (absolute paths)"
DIRLIST_FILE_MODE = 0o600

# Lock names
REGISTRY_LOCK_NAME = "dirlist"
INSTANCE_LOCK_NAME = "docker_backup"

# Timeouts (seconds)
COMPOSE_STATUS_TIMEOUT = 30
COMPOSE_COMMAND_OVERHEAD = 30
RESTIC_QUERY_TIMEOUT = 60
RESTIC_CHECK_TIMEOUT = 30
DEFAULT_REGISTRY_LOCK_TIMEOUT = 30

# Stop verification
STOP_SETTLE_SECONDS = 2
FORCED_STOP_SETTLE_SECONDS = 8
STATUS_VERIFY_ATTEMPTS = 3
STATUS_VERIFY_INTERVAL = 3

# Log file
LOG_FILE_NAME = "docker_backup.log"
