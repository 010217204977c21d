"""
Logging system for the AWS IoT test client.

This module provides:
- ``log()``, the timestamped event log used by the client and the CLI
- File logging with rotation
- Console output for the protocol event stream
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

EVENTS_LOGGER_NAME = "aws_iot_tester.events"

events_logger = logging.getLogger(EVENTS_LOGGER_NAME)
events_logger.addHandler(logging.NullHandler())


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_detail(detail: Any) -> str:
    """Render the optional detail of a log line."""
    if isinstance(detail, (dict, list, tuple)):
        return json.dumps(detail, default=str)
    if isinstance(detail, (bytes, bytearray)):
        return bytes(detail).decode("utf-8", errors="replace")
    return str(detail)


def format_line(message: str, detail: Any = None, moment: Optional[datetime] = None) -> str:
    timestamp = iso_timestamp(moment)
    if detail is None:
        return f"{timestamp} - {message}"
    return f"{timestamp} - {message} {format_detail(detail)}"


def log(message: str, detail: Any = None) -> str:
    """
    Write a timestamped event line.

    Args:
        message: The message to log
        detail: Optional extra value; dicts and lists are JSON encoded

    Returns:
        str: The line that was written
    """
    line = format_line(message, detail)
    events_logger.info(line)
    return line


class TesterLogger:
    """Logging setup for the AWS IoT test client."""

    def __init__(self, config_dir: str, log_level: str = "INFO"):
        """
        Initialize the logging system.

        Args:
            config_dir: Configuration directory where logs will be stored
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        self.config_dir = Path(config_dir)
        self.log_level = getattr(logging, log_level.upper())
        self.log_dir = self.config_dir / "logs"
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / "aws-iot-tester.log"
        self.events_file = self.log_dir / "events.log"
        self._handlers = []

        self._setup_loggers()

    def _setup_loggers(self):
        """Setup all loggers with proper handlers."""
        # Main application logger
        self.app_logger = logging.getLogger("aws_iot_tester")
        self.app_logger.setLevel(self.log_level)

        # Protocol event stream, printed as-is
        self.events_logger = events_logger
        self.events_logger.setLevel(logging.INFO)
        self.events_logger.propagate = False

        # paho is chatty at DEBUG
        logging.getLogger("paho").setLevel(
            logging.DEBUG if self.log_level == logging.DEBUG else logging.WARNING
        )

        self._setup_file_handlers()
        self._setup_console_handlers()

    def _setup_file_handlers(self):
        """Setup file handlers with rotation."""
        file_handler = logging.handlers.RotatingFileHandler(
            self.log_file,
            maxBytes=5*1024*1024,  # 5MB
            backupCount=3
        )
        file_handler.setFormatter(self._get_formatter())
        self._add_handler(self.app_logger, file_handler)

        events_file_handler = logging.handlers.RotatingFileHandler(
            self.events_file,
            maxBytes=5*1024*1024,
            backupCount=3
        )
        events_file_handler.setFormatter(logging.Formatter("%(message)s"))
        self._add_handler(self.events_logger, events_file_handler)

    def _setup_console_handlers(self):
        """Setup console handlers for immediate feedback."""
        events_console = logging.StreamHandler(sys.stdout)
        events_console.setFormatter(logging.Formatter("%(message)s"))
        self._add_handler(self.events_logger, events_console)

        # Diagnostics only reach the console in debug mode or when they matter
        app_console = logging.StreamHandler(sys.stderr)
        app_console.setLevel(logging.DEBUG if self.log_level == logging.DEBUG else logging.WARNING)
        app_console.setFormatter(self._get_console_formatter())
        self._add_handler(self.app_logger, app_console)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler):
        logger.addHandler(handler)
        self._handlers.append((logger, handler))

    def _get_formatter(self):
        """Get detailed formatter for file logging."""
        return logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )

    def _get_console_formatter(self):
        """Get simple formatter for console output."""
        return logging.Formatter('%(levelname)s: %(message)s')

    def cleanup(self):
        """Detach and close every handler this instance installed."""
        self.app_logger.info("Logging session ended")
        for logger, handler in self._handlers:
            logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self.events_logger.propagate = True


# Global logger instance
_global_logger: Optional[TesterLogger] = None


def setup_logging(config_dir: str, log_level: str = "INFO") -> TesterLogger:
    """Setup the global logging system."""
    global _global_logger
    if _global_logger is not None:
        _global_logger.cleanup()
    _global_logger = TesterLogger(config_dir, log_level)
    return _global_logger
