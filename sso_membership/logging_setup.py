"""
Logging setup and configuration for SSO Membership Sync.

Every run writes its own timestamped log file and streams to stderr, which
keeps stdout free for command output. Credentials are scrubbed from records
before any handler emits them.
"""

import os
import re
import sys
import glob
import logging
from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta

RUN_LOG_PREFIX = 'sso-membership_run_'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'token', 'secret', 'api_key', 'authorization',
        'access_token', 'refresh_token', 'truststore_password'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            self._patterns.append((re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
            # "key": "value"
            self._patterns.append((re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
            # 'key': 'value' (repr of a dict)
            self._patterns.append((re.compile(rf"('{keyword}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'))
        # Authorization: token xxx / Bearer xxx
        self._patterns.append((re.compile(r'(Authorization\s*:?\s*(?:token|bearer)\s+)[^\s,}\]\'"]+', re.IGNORECASE),
                               r'\1****'))

    def scrub(self, message: str) -> str:
        """Return message with sensitive values masked."""
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record):
        """Filter out sensitive data from log records."""
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.scrub(message)
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for the SSO Membership Sync application.

    Provides one log file per run, retention-based cleanup of earlier run
    logs, and console output on stderr.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.log_file = None
        self.retention_days = 7
        self._handlers = []

    def setup_logging(self, config: Dict[str, Any], debug: bool = False,
                      now: Optional[datetime] = None) -> Optional[str]:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            debug: Force DEBUG level on every handler
            now: Run start time used to name the log file

        Returns:
            Path to this run's log file, or None if file logging is unavailable
        """
        if self.configured:
            return self.log_file

        logging_config = config if config else {}

        log_level = 'DEBUG' if debug else str(logging_config.get('level', 'INFO')).upper()
        level = getattr(logging, log_level, logging.INFO)
        self.log_dir = logging_config.get('log_dir', 'logs')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            timestamp = (now or datetime.now()).strftime('%Y%m%d%H%M%S')
            self.log_file = os.path.join(self.log_dir, f"{RUN_LOG_PREFIX}{timestamp}.log")
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setLevel(level)
            file_handler.setFormatter(detailed_formatter)
            file_handler.addFilter(sensitive_filter)
            self._add_handler(root_logger, file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(level)
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            self._add_handler(root_logger, console_handler)

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, file={self.log_file}, "
                     f"retention={self.retention_days} days, console={console_enabled}")
        return self.log_file

    def _add_handler(self, root_logger: logging.Logger, handler: logging.Handler):
        root_logger.addHandler(handler)
        self._handlers.append(handler)

    def shutdown(self):
        """Detach and close the handlers installed by setup_logging."""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self.configured = False

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                # Fallback to current directory if log directory creation fails
                print(f"Warning: Could not create log directory {self.log_dir}: {e}", file=sys.stderr)
                print("Falling back to current directory for logs", file=sys.stderr)
                self.log_dir = '.'

    def _cleanup_old_logs(self) -> None:
        """Remove run logs older than the retention period."""
        if not self.log_dir or not self.retention_days or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in self.get_log_files():
            if log_file == self.log_file:
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}", file=sys.stderr)

    def get_log_files(self) -> List[str]:
        """
        Get list of run log files in the log directory.

        Returns:
            Sorted list of log file paths
        """
        if not self.log_dir:
            return []

        log_pattern = os.path.join(self.log_dir, f"{RUN_LOG_PREFIX}*.log")
        return sorted(glob.glob(log_pattern))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], debug: bool = False) -> Optional[str]:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        debug: Force DEBUG level

    Returns:
        Path to this run's log file
    """
    return _logging_manager.setup_logging(config, debug=debug)


def shutdown_logging() -> None:
    """Close handlers installed by setup_logging."""
    _logging_manager.shutdown()
