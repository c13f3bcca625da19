"""
Logging for Extension Attribute Sync.

The run log and the security audit log are separate files, both rotated at
midnight and pruned after ``retention_days``. Every handler masks credentials
before a record is written.
"""

import os
import re
import glob
import time
import logging
import logging.handlers
from typing import Dict, Any, List, Optional

RUN_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
AUDIT_FORMAT = '%(asctime)s %(levelname)s %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
AUDIT_LOGGER_NAME = 'security'


class SensitiveDataFilter(logging.Filter):
    """Masks passwords, client secrets and bearer tokens in log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'bearer', 'api_key',
        'client_secret', 'access_token', 'refresh_token'
    ]

    # key=value pairs, including form-encoded token request bodies
    _ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _QUOTED_JSON_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _BARE_JSON_PATTERNS = [
        re.compile(rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _AUTH_HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE)

    @classmethod
    def scrub(cls, message: str) -> str:
        for pattern in cls._ASSIGNMENT_PATTERNS:
            message = pattern.sub(r'\1****', message)
        for pattern in cls._QUOTED_JSON_PATTERNS:
            message = pattern.sub(r'\1****\2', message)
        for pattern in cls._BARE_JSON_PATTERNS:
            message = pattern.sub(r'\1****\3', message)
        return cls._AUTH_HEADER_PATTERN.sub(r'\1****', message)

    def filter(self, record):
        if hasattr(record, 'msg'):
            record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Owns the handlers installed on the root and audit loggers.

    Configuration keys (all optional):
        level, log_dir, log_file, audit_log_file, rotation ('daily' or 'none'),
        retention_days, console_output, console_level
    """

    def __init__(self):
        self.configured = False
        self.log_dir = 'logs'
        self.retention_days = 7
        self.rotation = 'daily'
        self._handlers: List[logging.Handler] = []

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Install the run log, audit log and console handlers.

        Calling it again has no effect until reset().

        Args:
            config: The logging configuration section
        """
        if self.configured:
            return

        config = config or {}
        level = self._level(config.get('level'), logging.INFO)
        self.log_dir = self._usable_directory(config.get('log_dir', 'logs'))
        self.retention_days = config.get('retention_days', 7)
        self.rotation = str(config.get('rotation', 'daily')).lower()

        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(level)
        masker = SensitiveDataFilter()

        run_log = self._file_handler(config.get('log_file', 'extattr-sync.log'), RUN_FORMAT, level, masker)
        root.addHandler(run_log)

        if config.get('console_output', True):
            console = logging.StreamHandler()
            console.setLevel(self._level(config.get('console_level'), logging.WARNING))
            console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            console.addFilter(masker)
            root.addHandler(console)
            self._handlers.append(console)

        audit_file = config.get('audit_log_file', 'audit.log')
        if audit_file:
            audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
            audit_logger.addHandler(self._file_handler(audit_file, AUDIT_FORMAT, logging.INFO, masker))

        removed = self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging to {run_log.baseFilename} "
            f"(level={logging.getLevelName(level)}, retention={self.retention_days} days, "
            f"pruned={removed})"
        )

    @staticmethod
    def _level(name: Optional[str], default: int) -> int:
        if not name:
            return default
        return getattr(logging, str(name).upper(), default)

    @staticmethod
    def _usable_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
            return log_dir
        except OSError as e:
            print(f"Warning: cannot use log directory {log_dir} ({e}), logging to the current directory")
            return '.'

    def _file_handler(self, filename: str, fmt: str, level: int,
                      masker: logging.Filter) -> logging.Handler:
        """Create a file handler in log_dir, rotated at midnight unless rotation is 'none'."""
        path = os.path.join(self.log_dir, filename)
        if self.rotation == 'none':
            handler = logging.FileHandler(path, encoding='utf-8')
        else:
            handler = logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=self.retention_days, encoding='utf-8'
            )
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S'))
        handler.addFilter(masker)
        self._handlers.append(handler)
        return handler

    def _cleanup_old_logs(self) -> int:
        """Delete rotated files (name.log.<suffix>) older than retention_days; returns the count."""
        if self.retention_days <= 0:
            return 0

        cutoff = time.time() - self.retention_days * 86400
        removed = 0
        for path in glob.glob(os.path.join(self.log_dir, '*.log.*')):
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed += 1
            except OSError as e:
                print(f"Warning: could not remove old log file {path}: {e}")
        return removed

    def reset(self) -> None:
        """Detach and close every handler this manager installed."""
        root = logging.getLogger()
        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        for handler in self._handlers:
            root.removeHandler(handler)
            audit_logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure process-wide logging from the logging configuration section."""
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Audit trail of directory logins and attribute writes, on the 'security' logger."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    @staticmethod
    def _outcome(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_authentication_attempt(self, system: str, principal: str, success: bool):
        self.logger.info(f"Authentication {self._outcome(success)}: {system} principal={principal}")

    def log_attribute_write(self, system: str, target: str, attributes: str, success: bool):
        self.logger.info(f"Attribute write {self._outcome(success)}: {system} target={target} {attributes}")

    def log_security_event(self, event: str, details: str = ""):
        self.logger.warning(f"Security event: {event} - {details}" if details else f"Security event: {event}")


security_logger = SecurityAuditLogger()
