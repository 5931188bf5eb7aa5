"""
Command line entry point for the Grafana migrator.

Copies folders, dashboards and datasources from the source instance (src) to
the destination instance (dst), either in one go or through an exported
snapshot directory.
"""

import argparse
import signal
import sys
from typing import List, Optional, Tuple

from pydantic import ValidationError

from grafana_migrator.core.api_client import GrafanaAPIError
from grafana_migrator.core.config import Config, InstanceConfig
from grafana_migrator.core.logger import setup_logger
from grafana_migrator.core.models import MigrationSummary
from grafana_migrator.services.content_client import ContentClient
from grafana_migrator.services.migration_engine import MigrationEngine
from grafana_migrator.utils.migration_summary import MigrationSummaryReporter
from grafana_migrator.utils.snapshot_store import load_snapshot, save_snapshot


def create_client(instance: InstanceConfig, config: Config, name: str) -> ContentClient:
    """Factory for content clients."""
    return ContentClient(instance, config, name=name)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grafana-migrator",
        description="Migrate Grafana folders, dashboards and datasources between instances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Migrate src -> dst
  %(prog)s --config grafana.yaml migrate    # Same, credentials from a YAML file
  %(prog)s export --output ./snapshot       # Save src content to a directory
  %(prog)s import --input ./snapshot        # Write a saved snapshot to dst
  %(prog)s check                            # Verify both instances are reachable
        """
    )
    parser.add_argument('--config', help='YAML config file (defaults to $CONFIG_FILE)')
    parser.add_argument('--workers', type=int, help='Worker pool size per phase')
    parser.add_argument('--timeout', type=float, help='Stop dispatching new work after this many seconds')
    parser.add_argument('--log-level', help='Logging level (DEBUG, INFO, WARNING, ERROR)')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    export_parser = subparsers.add_parser('export', help='Export src content to a snapshot directory')
    export_parser.add_argument('--output', help='Snapshot directory (defaults to SNAPSHOTS_STORAGE_PATH)')

    import_parser = subparsers.add_parser('import', help='Import a snapshot directory into dst')
    import_parser.add_argument('--input', help='Snapshot directory (defaults to SNAPSHOTS_STORAGE_PATH)')

    subparsers.add_parser('migrate', help='Export from src and import into dst (default)')
    subparsers.add_parser('check', help='Check connectivity and credentials for both instances')

    return parser


def load_config(args: argparse.Namespace) -> Config:
    overrides = {}
    if args.config:
        overrides['config_file'] = args.config
    if args.workers:
        overrides['max_workers'] = args.workers
    if args.timeout:
        overrides['run_timeout_seconds'] = args.timeout
    if args.log_level:
        overrides['log_level'] = args.log_level

    config = Config(**overrides)
    config.validate_config()
    return config


def report(config: Config, summary: MigrationSummary, mode: str, logger) -> int:
    reporter = MigrationSummaryReporter(f"{config.outputs_storage_path}/migration-summary", mode=mode)
    reporter.display_and_save(summary)

    if summary.succeeded:
        logger.info(f"{mode.title()} completed successfully")
        return 0

    logger.error(
        f"{mode.title()} completed with failures",
        failed=len(summary.failed),
        class_failures=summary.class_failures,
        aborted_reason=summary.aborted_reason
    )
    return 1


def run_export(config: Config, engine: MigrationEngine, output: Optional[str], logger) -> int:
    with create_client(config.src, config, 'src') as source:
        snapshot = engine.export(source)

    directory = save_snapshot(snapshot, output or config.snapshots_storage_path)
    logger.info("Snapshot saved", directory=str(directory))

    if snapshot.fetch_errors or snapshot.entity_errors:
        logger.error(
            "Export incomplete",
            fetch_errors=snapshot.fetch_errors,
            failed_entities=[item.entity_key for item in snapshot.entity_errors]
        )
        return 1
    return 0


def run_import(config: Config, engine: MigrationEngine, input_dir: Optional[str], logger) -> int:
    snapshot = load_snapshot(input_dir or config.snapshots_storage_path)

    with create_client(config.dst, config, 'dst') as destination:
        summary = engine.import_snapshot(snapshot, destination)

    return report(config, summary, "IMPORT", logger)


def run_migrate(config: Config, engine: MigrationEngine, logger) -> int:
    with create_client(config.src, config, 'src') as source, \
            create_client(config.dst, config, 'dst') as destination:
        summary = engine.migrate(source, destination)

    return report(config, summary, "MIGRATION", logger)


def run_check(config: Config, logger) -> int:
    healthy = True
    for name, instance in (('src', config.src), ('dst', config.dst)):
        with create_client(instance, config, name) as client:
            try:
                health = client.health()
                client.list_folders()
            except GrafanaAPIError as e:
                logger.error("Instance check failed", instance=name, host=instance.host, error=str(e))
                healthy = False
                continue
        logger.info("Instance reachable", instance=name, host=instance.host,
                    version=health.get('version'), database=health.get('database'))
    return 0 if healthy else 1


def _install_interrupt_handler(engine: MigrationEngine) -> Tuple[bool, object]:
    def handle_interrupt(signum, frame):
        engine.cancel()

    try:
        return True, signal.signal(signal.SIGINT, handle_interrupt)
    except ValueError:
        # Not in the main thread
        return False, None


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the migrator."""
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or 'migrate'

    try:
        config = load_config(args)
    except (ValidationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logger = setup_logger(
        'grafana-migrator',
        command,
        config.log_level,
        json_console=config.log_format == 'json',
        logs_root=config.logs_storage_path,
    )
    logger.info(f"Starting grafana-migrator - Command: {command}")

    if command == 'check':
        return run_check(config, logger)

    engine = MigrationEngine(config, logger=logger)
    installed, previous_handler = _install_interrupt_handler(engine)

    try:
        if command == 'export':
            return run_export(config, engine, args.output, logger)
        if command == 'import':
            return run_import(config, engine, args.input, logger)
        return run_migrate(config, engine, logger)

    except GrafanaAPIError as e:
        logger.error(f"{command} failed", error=str(e), status_code=e.status_code)
        return 1
    except FileNotFoundError as e:
        logger.error(f"{command} failed", error=str(e))
        return 1
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous_handler)


if __name__ == '__main__':
    sys.exit(main())
