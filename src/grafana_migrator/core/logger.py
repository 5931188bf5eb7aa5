"""
Logging configuration for the Grafana migrator.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional
import structlog
from rich.console import Console
from rich.logging import RichHandler


def setup_logger(service_name: str, feature: str, log_level: str = "INFO", json_console: bool = False,
                 logs_root: str = "logs") -> structlog.stdlib.BoundLogger:
    """
    Set up structured logging for the migrator.

    Args:
        service_name: Name of the logger (e.g., 'grafana-migrator')
        feature: Feature name for log file organization
        log_level: Logging level
        json_console: If True, output single-line JSON to the console instead of Rich
        logs_root: Directory the log files are written under

    Returns:
        Configured logger instance
    """
    # Create logs directory structure
    logs_dir = Path(logs_root) / feature
    logs_dir.mkdir(parents=True, exist_ok=True)

    # Generate log filename with timestamp
    timestamp = datetime.now().strftime("%Y-%m-%d-%H")
    log_filename = f"grafana-migrator-{service_name}-{timestamp}.log"
    log_filepath = logs_dir / log_filename

    level = getattr(logging, log_level.upper())

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Repeated setup (one per CLI invocation in tests) must not stack handlers
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Create logger
    logger = structlog.get_logger(service_name)

    # Add file handler for persistent logging (always JSON)
    file_handler = logging.FileHandler(log_filepath)
    file_handler.setLevel(level)
    root_logger.addHandler(file_handler)

    # Add console handler - either JSON or Rich formatting
    if json_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter('%(message)s'))
    else:
        # Rich formatting for human-readable output
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True
        )
        console_handler.setLevel(level)

    root_logger.addHandler(console_handler)

    # httpx logs every request at INFO; the API client logs its own events
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info(
        "Logger initialized",
        service=service_name,
        feature=feature,
        log_file=str(log_filepath),
        log_level=log_level,
        json_console=json_console
    )

    return logger


class LoggerMixin:
    """Mixin class to add migration event logging to a component."""

    logger: structlog.stdlib.BoundLogger

    def log_migration_start(self, operation: str, source: Optional[str] = None,
                            destination: Optional[str] = None):
        """Log migration start."""
        self.logger.info(
            "Migration started",
            operation=operation,
            source=source,
            destination=destination
        )

    def log_migration_complete(self, operation: str, success: bool,
                               resources_processed: int, errors: int = 0):
        """Log migration completion."""
        self.logger.info(
            "Migration completed",
            operation=operation,
            success=success,
            resources_processed=resources_processed,
            errors=errors
        )

    def log_entity_outcome(self, phase: str, entity_type: str, entity_key: str,
                           outcome: str, error_detail: Optional[str] = None):
        """Log the outcome of one entity as a structured event."""
        log_data = {
            "phase": phase,
            "entity_type": entity_type,
            "entity_key": entity_key,
            "outcome": outcome,
        }

        if error_detail:
            log_data["error_detail"] = error_detail

        if outcome == "failed":
            self.logger.error("entity_outcome", **log_data)
        elif error_detail:
            self.logger.warning("entity_outcome", **log_data)
        else:
            self.logger.info("entity_outcome", **log_data)
