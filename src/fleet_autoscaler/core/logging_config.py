"""Logging configuration for the fleet autoscaler."""

import os
import re
import json
import logging
import logging.handlers
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


_REDACTION_PATTERNS = [
    re.compile(r'(token["\']?\s*[:=]\s*["\']?)([a-zA-Z0-9_\-\.]{8,})', re.IGNORECASE),
    re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\']+)', re.IGNORECASE),
    re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^\s"\']+)', re.IGNORECASE),
]

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'message', 'asctime',
))


class RedactingFormatter(logging.Formatter):
    """Formatter that masks credentials in log messages.

    Proxied request headers and docker endpoints end up in log lines, so
    bearer tokens and passwords are replaced with ``[REDACTED]``.
    """

    def format(self, record):
        return redact(super().format(record))


class StructuredFormatter(RedactingFormatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': redact(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def redact(message: str) -> str:
    """Mask credentials embedded in ``message``."""
    for pattern in _REDACTION_PATTERNS:
        message = pattern.sub(r'\1[REDACTED]', message)
    return message


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    structured: bool = False,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """Set up logging for the autoscaler process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (if None, logs to console only)
        structured: Whether to use structured JSON logging
        max_file_size: Maximum log file size before rotation
        backup_count: Number of backup files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = RedactingFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    configure_library_loggers()

    root_logger.debug("Logging configured", extra={
        'log_level': log_level,
        'log_file': log_file,
        'structured': structured
    })


def configure_library_loggers():
    """Quiet down chatty third-party loggers."""
    logging.getLogger('urllib3.connectionpool').setLevel(logging.WARNING)
    logging.getLogger('docker').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def configure_from_environment() -> None:
    """Configure logging from FLEET_AUTOSCALER_LOG_* environment variables."""
    setup_logging(
        log_level=os.getenv('FLEET_AUTOSCALER_LOG_LEVEL', 'INFO'),
        log_file=os.getenv('FLEET_AUTOSCALER_LOG_FILE') or None,
        structured=os.getenv('FLEET_AUTOSCALER_LOG_STRUCTURED', 'false').lower() == 'true'
    )
