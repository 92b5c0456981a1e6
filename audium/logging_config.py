#!/usr/bin/env python3
"""
Logging for the Audium guide

Three rotating files under the log directory:
    audium.log   everything, DEBUG and up, tagged with the emitting component
    errors.log   errors only, with exception details
    status.log   one line per playback note, i.e. what a docent would want to read

Modules grab the shared instance at import time:

    logger = get_logger()
    logger.info("Guide engine started", "ENGINE")
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

DETAILED_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-14s | %(funcName)-15s:%(lineno)-4d | %(message)s'
SHORT_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'


class GuideLogger:
    """Component-tagged logging shared by every guide module."""

    def __init__(self, log_dir: str = "logs", max_log_size: int = 5 * 1024 * 1024, backup_count: int = 3,
                 console: bool = True):
        """
        Args:
            log_dir: Directory for the log files (created if missing)
            max_log_size: Rotate a file once it reaches this many bytes
            backup_count: Rotated files kept per log
            console: Echo INFO and above to stdout
        """
        self.max_log_size = max_log_size
        self.backup_count = backup_count
        self.status = {
            'started': datetime.now(timezone.utc),
            'notes': 0,
            'last_note': None,
            'errors': 0,
            'last_error': None,
        }
        self.configure(log_dir, console)

    def configure(self, log_dir: str, console: bool = True):
        """(Re)attach handlers; loggers already handed out keep working."""
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        detailed = logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
        short = logging.Formatter(SHORT_FORMAT, datefmt='%H:%M:%S')

        self.main_logger = self._logger('audium', logging.DEBUG, propagate=True)
        self._attach_file(self.main_logger, 'audium.log', logging.DEBUG, detailed)
        if console:
            echo = logging.StreamHandler(sys.stdout)
            echo.setFormatter(short)
            echo.setLevel(logging.INFO)
            self.main_logger.addHandler(echo)

        self.error_logger = self._logger('audium.errors', logging.ERROR)
        self._attach_file(self.error_logger, 'errors.log', logging.ERROR, detailed)

        self.status_logger = self._logger('audium.status', logging.INFO)
        self._attach_file(self.status_logger, 'status.log', logging.INFO, short)

    @staticmethod
    def _logger(name: str, level: int, propagate: bool = False) -> logging.Logger:
        log = logging.getLogger(name)
        # setup_logging() can run more than once per process (CLI, tests)
        for handler in list(log.handlers):
            log.removeHandler(handler)
            handler.close()
        log.setLevel(level)
        log.propagate = propagate
        return log

    def _attach_file(self, log: logging.Logger, filename: str, level: int, formatter: logging.Formatter):
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / filename, maxBytes=self.max_log_size, backupCount=self.backup_count
        )
        handler.setFormatter(formatter)
        handler.setLevel(level)
        log.addHandler(handler)

    def info(self, message: str, component: str = "GUIDE"):
        self.main_logger.info(f"[{component}] {message}")

    def warning(self, message: str, component: str = "GUIDE"):
        self.main_logger.warning(f"[{component}] {message}")
        self.status_logger.warning(f"[{component}] {message}")

    def error(self, message: str, component: str = "GUIDE", exception: Optional[Exception] = None):
        """Log an error, with the exception type and text appended when given."""
        line = f"[{component}] {message}"
        if exception is not None:
            line += f" | {type(exception).__name__}: {exception}"
        for log in (self.main_logger, self.error_logger, self.status_logger):
            log.error(line)

        self.status['errors'] += 1
        self.status['last_error'] = {
            'at': datetime.now(timezone.utc),
            'component': component,
            'message': message,
            'exception': str(exception) if exception is not None else None,
        }

    def debug(self, message: str, component: str = "GUIDE"):
        self.main_logger.debug(f"[{component}] {message}")

    def note(self, message: str, component: str = "FSM"):
        """Record a playback status note: what the guide just decided and why."""
        self.main_logger.info(f"[{component}] {message}")
        self.status_logger.info(f"NOTE | {message}")
        self.status['notes'] += 1
        self.status['last_note'] = message

    def get_status(self) -> dict:
        return dict(self.status)


_instance: Optional[GuideLogger] = None


def get_logger() -> GuideLogger:
    """Shared logger; created on first use in $AUDIUM_LOG_DIR (default ./logs)."""
    global _instance
    if _instance is None:
        _instance = GuideLogger(os.getenv('AUDIUM_LOG_DIR', 'logs'))
    return _instance


def setup_logging(log_dir: Optional[str] = None, console: bool = True) -> GuideLogger:
    """Point the shared logger at a new directory, e.g. once the CLI knows --log-dir."""
    global _instance
    log_dir = log_dir or os.getenv('AUDIUM_LOG_DIR', 'logs')
    if _instance is None:
        _instance = GuideLogger(log_dir, console=console)
    else:
        _instance.configure(log_dir, console)
    return _instance
