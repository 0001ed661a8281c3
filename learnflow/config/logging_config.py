"""
Centralized logging configuration for the learning assistant.

This module provides a function to set up application-wide logging,
including formatting, log levels, and handlers for console and file output.
Log records produced while a query is being routed carry the session and
query identifiers so a single turn can be traced across the router, the
analyzers and the gap pipeline.
"""

import logging
import logging.handlers  # Required for RotatingFileHandler
import sys  # To ensure we can always output to stdout for console
import json
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Tuple

# Fields that components attach through `extra=` and that the formatter promotes to top-level keys
CONTEXT_FIELDS = ('session_id', 'query_id', 'user_id', 'analyzer', 'query_type', 'mode')


class StructuredLogFormatter(logging.Formatter):
    """
    Custom formatter that renders every record as a single JSON line.

    Features:
    - Includes session_id / query_id / analyzer if present in extra fields
    - Includes any `extra_fields` mapping attached to the record
    - Preserves standard log fields (timestamp, level, logger, message)
    """

    def format(self, record):
        log_data = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for field_name in CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_data[field_name] = value

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """
    Logger adapter that merges the adapter's default context with per-call `extra`.

    The stock `LoggerAdapter` replaces the caller's `extra` with its own; routing code logs
    from many concurrent sessions, so context has to travel with each call instead of living
    on a shared adapter.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        merged = dict(self.extra or {})
        merged.update(kwargs.get('extra') or {})
        kwargs['extra'] = merged
        return msg, kwargs


DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: str, **context: Any) -> ContextAdapter:
    """
    Get a logger that accepts structured context on every call.

    Args:
        name (str): Logger name (usually __name__)
        **context: Default context values (for example analyzer="code")

    Returns:
        ContextAdapter: Configured logger adapter
    """
    return ContextAdapter(logging.getLogger(name), context)


def setup_app_logging(config: Optional[Dict[str, Any]] = None, default_level=logging.INFO) -> None:
    """
    Set up logging for the entire application.

    This function configures the root logger with handlers for console
    and file output. Log levels and file paths can be specified via
    the optional config dictionary.

    Args:
        config (dict, optional): A dictionary containing logging configurations.
                                Expected keys:
                                - 'level': String representation of log level (e.g., "DEBUG", "INFO").
                                - 'file_path': Path to the log file; empty disables file logging.
                                - 'max_bytes': Max size of the log file before rotation.
                                - 'backup_count': Number of backup log files to keep.
                                - 'date_format': Custom log date format string.
        default_level (int, optional): The default logging level if not specified
                                     in the config. Defaults to logging.INFO.
    """
    if config is None:
        config = {}

    log_level_str = str(config.get('level', logging.getLevelName(default_level))).upper()
    numeric_log_level = getattr(logging, log_level_str, default_level)
    if not isinstance(numeric_log_level, int):
        print(f"Warning: Invalid log level string '{log_level_str}'. Using default level {logging.getLevelName(default_level)}.", file=sys.stderr)
        numeric_log_level = default_level

    log_date_format = config.get('date_format', DEFAULT_LOG_DATE_FORMAT)
    formatter = StructuredLogFormatter(config.get('format', DEFAULT_LOG_FORMAT), datefmt=log_date_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_log_level)

    # Remove any existing handlers
    if root_logger.hasHandlers():
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_file_path = config.get('file_path')
    if log_file_path:
        try:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path,
                maxBytes=int(config.get('max_bytes', 5 * 1024 * 1024)),  # 5 MB
                backupCount=int(config.get('backup_count', 3)),
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logging to {log_file_path}: {e}. File logging will be disabled.", file=sys.stderr)

    # Third-party clients are chatty at INFO
    for noisy in ('httpx', 'httpcore', 'openai', 'apscheduler'):
        logging.getLogger(noisy).setLevel(max(numeric_log_level, logging.WARNING))

    get_logger("LoggingConfig").info("Application logging setup complete. Level: %s", log_level_str)
