"""
docker-backup command line entry point.

Selective, state-preserving restic backups of docker compose stacks.
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv

from .core.compose import ComposeRunner
from .core.config_loader import (
    BackupConfig,
    BackupEnvironment,
    apply_env_overrides,
    default_base_dir,
    find_config_file,
    generate_config_template,
    load_config,
    read_config_file,
    validate_config,
)
from .core.exceptions import ConfigError, DockerBackupError, SignalError
from .core.logging_config import get_logger, setup_logging
from .core.output_stream import OutputStream, console_subscriber, log_subscriber
from .core.restic import ResticRunner
from .core.secrets import resolve_secret
from .models.enums import EXIT_SUCCESS
from .services.orchestrator import BackupOrchestrator
from .services.registry import DirectoryRegistry
from .services.reporting import (
    collect_health,
    format_restore_preview,
    format_run_summary,
    format_snapshot_table,
)
from .services.snapshots import SnapshotManager

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docker-backup",
        description="Selective restic backups of docker compose stacks",
    )
    parser.add_argument("--config", help="Configuration file path")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides LOG_LEVEL and the config file)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Echo restic output to the console"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Back up all enabled directories")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would happen without stopping, starting, backing up or pruning",
    )

    snapshots = commands.add_parser("snapshots", help="List recent snapshots")
    snapshots.add_argument("--directory", help="Only snapshots of this directory")
    snapshots.add_argument("--limit", type=int, default=20, help="Maximum snapshots to show")

    preview = commands.add_parser("restore-preview", help="Show files in a directory's latest snapshot")
    preview.add_argument("directory")

    commands.add_parser("health", help="Check tools, repository and directory list")
    commands.add_parser("validate-config", help="Validate configuration and exit")

    generate = commands.add_parser("generate-config", help="Write a configuration template")
    generate.add_argument(
        "--output", default="config/config.yml", help="Template destination (default: %(default)s)"
    )

    dirlist = commands.add_parser("dirlist", help="Manage the directory list")
    actions = dirlist.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help="Show all directories and their flags")
    actions.add_parser("sync", help="Synchronize with the stacks directory")
    for name, verb in (("enable", "Enable"), ("disable", "Disable")):
        toggle = actions.add_parser(name, help=f"{verb} directories for backup")
        toggle.add_argument("identifiers", nargs="*")
        toggle.add_argument("--all", action="store_true", help=f"{verb} every directory")
    add_external = actions.add_parser("add-external", help="Register a stack outside the stacks directory")
    add_external.add_argument("path")
    add_external.add_argument("--enable", action="store_true", help="Enable it immediately")
    remove_external = actions.add_parser("remove-external", help="Unregister an external stack")
    remove_external.add_argument("path")

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()
    return build_parser().parse_args(argv)


def _setup_logging_system(args: argparse.Namespace, config: BackupConfig | None):
    """Setup logging; console only until a configuration names the log directory."""
    log_level = args.log_level or (config.log_level if config else os.getenv("LOG_LEVEL", "INFO"))
    log_dir = config.paths.log_dir if config else None
    try:
        setup_logging(log_dir=log_dir, log_level=log_level)
    except OSError as e:
        print(f"Logging setup failed ({e}), using console logging", file=sys.stderr)
        setup_logging(log_dir=None, log_level=log_level)
    return get_logger("cli")


def _registry(config: BackupConfig) -> DirectoryRegistry:
    return DirectoryRegistry(
        config.paths.dirlist_file,
        config.docker.stacks_dir,
        lock_dir=config.paths.lock_dir,
        lock_timeout=config.registry_lock_timeout,
    )


def _output_stream(args: argparse.Namespace) -> OutputStream:
    output = OutputStream()
    output.subscribe(log_subscriber(structlog.get_logger().bind(component="output")))
    if args.verbose:
        output.subscribe(console_subscriber())
    return output


# Commands


def _validate_config_command(args: argparse.Namespace) -> int:
    path = find_config_file(args.config)
    if path is not None and not path.is_file():
        print(f"Configuration file not found: {path}")
        return ConfigError.error_class.exit_code
    data = read_config_file(path) if path else {}

    result = validate_config(apply_env_overrides(data, BackupEnvironment()), default_base_dir(path))
    if result.valid:
        print(f"Configuration is valid ({path or 'environment only'})")
        return EXIT_SUCCESS
    print("Configuration errors:")
    for issue in result.issues:
        print(f"  - {issue}")
    return ConfigError.error_class.exit_code


def _generate_config_command(args: argparse.Namespace) -> int:
    target = generate_config_template(Path(args.output))
    print(f"Configuration template written to {target}")
    return EXIT_SUCCESS


async def _run_command(config: BackupConfig, args: argparse.Namespace, logger) -> int:
    orchestrator = BackupOrchestrator(
        config,
        _registry(config),
        ComposeRunner(),
        ResticRunner(config.repository.location),
        dry_run=args.dry_run,
        output=_output_stream(args),
    )

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(orchestrator.run())

    def on_signal(signum: int) -> None:
        logger.warning("Received signal, cancelling run", signal=signal.Signals(signum).name)
        orchestrator.interrupt_signal = signum
        run_task.cancel()

    for signum in INTERRUPT_SIGNALS:
        loop.add_signal_handler(signum, on_signal, signum)
    try:
        stats = await run_task
    except SignalError as e:
        print(format_run_summary(orchestrator.stats, dry_run=args.dry_run))
        print(f"Interrupted: {e}")
        return e.exit_code
    finally:
        for signum in INTERRUPT_SIGNALS:
            loop.remove_signal_handler(signum)

    print(format_run_summary(stats, dry_run=args.dry_run))
    return stats.exit_code


async def _snapshot_manager(config: BackupConfig):
    secret = await resolve_secret(config.repository)
    restic = ResticRunner(config.repository.location, secret.env())
    return SnapshotManager(restic, config), secret


async def _snapshots_command(config: BackupConfig, args: argparse.Namespace) -> int:
    manager, secret = await _snapshot_manager(config)
    try:
        snapshots = await manager.list_snapshots(args.directory, limit=args.limit)
    finally:
        secret.cleanup()
    print(format_snapshot_table(snapshots))
    return EXIT_SUCCESS


async def _restore_preview_command(config: BackupConfig, args: argparse.Namespace) -> int:
    manager, secret = await _snapshot_manager(config)
    try:
        snapshot, files = await manager.restore_preview(args.directory)
    finally:
        secret.cleanup()
    print(format_restore_preview(args.directory, snapshot, files))
    return EXIT_SUCCESS


async def _health_command(config: BackupConfig) -> int:
    report = await collect_health(
        config,
        _registry(config),
        ComposeRunner(),
        ResticRunner(config.repository.location),
        resolve_secret,
    )
    print(report.render())
    return EXIT_SUCCESS if report.healthy else 1


def _print_registry(registry: DirectoryRegistry) -> None:
    entries = registry.entries()
    discovered = sorted((e for e in entries if not e.is_external), key=lambda e: e.identifier)
    external = sorted((e for e in entries if e.is_external), key=lambda e: e.identifier)
    for title, group in (("Discovered", discovered), ("External", external)):
        print(f"{title}:")
        if not group:
            print("  (none)")
        for entry in group:
            print(f"  [{'x' if entry.enabled else ' '}] {entry.identifier}")
    counts = registry.counts()
    print(f"{counts['total']} directories, {counts['enabled']} enabled, {counts['disabled']} disabled")
    for issue in registry.load_issues:
        print(f"warning: line {issue.line_number} skipped ({issue.reason}): {issue.line}")


def _dirlist_command(config: BackupConfig, args: argparse.Namespace) -> int:
    registry = _registry(config)

    with registry.locked():
        if args.action == "list":
            _print_registry(registry)
            return EXIT_SUCCESS
        if args.action == "sync":
            delta = registry.sync()
            for identifier in delta.added:
                print(f"added    {identifier} (disabled)")
            for identifier in delta.removed:
                print(f"removed  {identifier}")
            if not delta.changed:
                print("Directory list already up to date")
        elif args.action in ("enable", "disable"):
            enabled = args.action == "enable"
            if args.all:
                changed = registry.set_all(enabled)
                print(f"{args.action}d {changed} directories")
            elif not args.identifiers:
                print("Nothing to do: pass identifiers or --all")
                return EXIT_SUCCESS
            for identifier in args.identifiers:
                registry.set_enabled(identifier, enabled)
                print(f"{args.action}d {identifier}")
        elif args.action == "add-external":
            entry = registry.add_external(args.path, enabled=args.enable)
            print(f"registered {entry.identifier} ({'enabled' if entry.enabled else 'disabled'})")
        elif args.action == "remove-external":
            registry.remove_external(os.path.normpath(args.path))
            print(f"removed {args.path}")
        registry.save()
    return EXIT_SUCCESS


def run_cli(argv: list[str] | None = None) -> int:
    """Dispatch a command and return the process exit code."""
    args = parse_args(argv)

    if args.command in ("validate-config", "generate-config"):
        _setup_logging_system(args, None)
        try:
            if args.command == "validate-config":
                return _validate_config_command(args)
            return _generate_config_command(args)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

    try:
        config = load_config(args.config)
    except ConfigError as e:
        _setup_logging_system(args, None)
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    logger = _setup_logging_system(args, config)
    try:
        if args.command == "run":
            return asyncio.run(_run_command(config, args, logger))
        if args.command == "snapshots":
            return asyncio.run(_snapshots_command(config, args))
        if args.command == "restore-preview":
            return asyncio.run(_restore_preview_command(config, args))
        if args.command == "health":
            return asyncio.run(_health_command(config))
        return _dirlist_command(config, args)
    except DockerBackupError as e:
        logger.error("Command failed", command=args.command, error=str(e), error_class=e.error_class.value)
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code


def main() -> None:
    """Main entry point."""
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
