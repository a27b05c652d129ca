"""
Centralized logging configuration for the Scan Reconciliation Station.

This module provides the logging setup shared by every module:
- Structured JSON logging to file for later analysis
- Automatic file rotation when a daily log grows past MaxLogSizeMB
- Configurable log level from config.ini
- Cleanup of old log files (retention policy)
- Human-readable console output
- Context-aware logging (scope_id, session_id, operator_id)

Log file location: [Logging] LogDir from config.ini, falling back to
~/.scan_station/logs when the configured directory cannot be created.
Log file format: YYYY-MM-DD.log

Example log entry (JSON format):
    {"timestamp": "2026-03-02T09:12:45.123", "level": "INFO", "tool": "scan_station",
     "scope_id": "0001", "session_id": "fg-check-3f2a", "operator_id": "ASP0001",
     "module": "reconciliation_engine", "function": "apply_scan", "line": 212,
     "message": "Scan applied: MAT01/PO1 +10"}
"""

import logging
import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
import configparser
from contextvars import ContextVar


# Context variables for structured logging
_scope_id: ContextVar[Optional[str]] = ContextVar('scope_id', default=None)
_session_id: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
_operator_id: ContextVar[Optional[str]] = ContextVar('operator_id', default=None)


class StructuredJSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with fields:
    - timestamp: ISO 8601 format with milliseconds
    - level: Log level name
    - tool: Always "scan_station"
    - scope_id: Current shipment/facility scope (if set)
    - session_id: Current scan session (if set)
    - operator_id: Operator badge code (if set)
    - module, function, line: Source location
    - message: Log message
    - exc_info: Exception information (if present)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'tool': 'scan_station',
            'scope_id': _scope_id.get(),
            'session_id': _session_id.get(),
            'operator_id': _operator_id.get(),
            'module': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, ensure_ascii=False)


class AppLogger:
    """
    Centralized application logger with file rotation and cleanup.

    Logging is configured once, on the first get_logger() call, regardless of
    how many modules import this one.

    The logging system is configured from config.ini with these settings:
    - LogDir: Directory for daily log files
    - LogLevel: DEBUG, INFO, WARNING, ERROR, CRITICAL
    - MaxLogSizeMB: Maximum size per log file before rotation
    - LogRetentionDays: How many days of logs to keep

    Attributes:
        _initialized: Whether logging has been configured (class-level)
    """

    _initialized: bool = False

    @classmethod
    def get_logger(cls, name: str = 'ScanStation') -> logging.Logger:
        """
        Get or create a logger, initializing the logging system on first use.

        Usage in modules:
            from logger import get_logger
            logger = get_logger(__name__)
            logger.info("Manifest loaded")

        Args:
            name: Logger name, typically the module name (__name__)

        Returns:
            Configured logger instance for the specified name
        """
        if not cls._initialized:
            cls._setup_logging()
            cls._initialized = True

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls):
        """
        Setup logging configuration from config.ini.

        Configures a JSON file handler with rotation, a console handler, and
        removes log files older than the retention period.

        When a daily file exceeds MaxLogSizeMB:
            2026-03-02.log       (current)
            2026-03-02.log.1     (previous, rotated)
            ... up to backupCount=30 files
        """
        config = cls._load_config()

        default_dir = Path(os.path.expanduser("~")) / ".scan_station" / "logs"
        log_dir = Path(config.get('Logging', 'LogDir', fallback=str(default_dir))).expanduser()

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            # Configured directory unreachable (network share offline)
            log_dir = default_dir
            log_dir.mkdir(parents=True, exist_ok=True)
            print(f"Warning: Could not access configured logs directory. Using local: {log_dir}. Error: {e}")

        log_file = log_dir / f"{datetime.now():%Y-%m-%d}.log"

        log_level_str = config.get('Logging', 'LogLevel', fallback='INFO')
        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        max_log_size = config.getint('Logging', 'MaxLogSizeMB', fallback=10) * 1024 * 1024

        json_formatter = StructuredJSONFormatter()

        # Format: timestamp | module | level | function:line | message
        console_formatter = logging.Formatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(json_formatter)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

        retention_days = config.getint('Logging', 'LogRetentionDays', fallback=30)
        cls._cleanup_old_logs(log_dir, retention_days)

        logger = logging.getLogger('ScanStation')
        logger.info("=" * 80)
        logger.info("Scan Station Started")
        logger.info(f"Log Level: {log_level_str}")
        logger.info(f"Log File: {log_file}")
        logger.info("=" * 80)

    @staticmethod
    def _load_config() -> configparser.ConfigParser:
        """
        Load logging configuration from config.ini in the working directory.

        Configuration options:
            [Logging]
            LogDir = C:\\ScanStation\\logs
            LogLevel = INFO
            MaxLogSizeMB = 10
            LogRetentionDays = 30

        Returns:
            ConfigParser with the loaded file, or empty if config.ini is absent
        """
        config = configparser.ConfigParser()
        config_path = Path('config.ini')

        if config_path.exists():
            config.read(config_path, encoding='utf-8')

        return config

    @staticmethod
    def _cleanup_old_logs(log_dir: Path, retention_days: int):
        """
        Delete log files older than the retention period.

        Args:
            log_dir: Directory containing log files
            retention_days: Number of days to keep logs; 0 or negative keeps
                            all logs forever
        """
        if retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            for log_file in log_dir.glob("*.log*"):
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)

                if file_mtime < cutoff_date:
                    log_file.unlink()
                    logging.getLogger('ScanStation').debug(f"Deleted old log: {log_file.name}")

        except Exception as e:
            # Non-fatal: file in use or directory went away
            logging.getLogger('ScanStation').warning(f"Failed to cleanup old logs: {e}")


def get_logger(name: str = 'ScanStation') -> logging.Logger:
    """
    Get application logger.

    Example:
        >>> from logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Starting scan session")
    """
    return AppLogger.get_logger(name)


def set_scope_context(scope_id: Optional[str]) -> None:
    """
    Set the current shipment/facility scope for structured logging.

    Args:
        scope_id: Scope identifier (e.g. "0001", "ASM1") or None to clear
    """
    _scope_id.set(scope_id)


def set_session_context(session_id: Optional[str]) -> None:
    """
    Set the current scan session ID for structured logging.

    Args:
        session_id: Session identifier or None to clear
    """
    _session_id.set(session_id)


def set_operator_context(operator_id: Optional[str]) -> None:
    """
    Set the current operator badge code for structured logging.

    Args:
        operator_id: Normalized employee code (e.g. "ASP0001") or None to clear
    """
    _operator_id.set(operator_id)


def clear_logging_context() -> None:
    """Clear all logging context (scope_id, session_id, operator_id)."""
    _scope_id.set(None)
    _session_id.set(None)
    _operator_id.set(None)
