"""
Logging setup for LDAP Reconcile.

Configures the root logger once per process: a daily-rotating file log with
retention cleanup, optional console output, and a filter that scrubs secrets
(bind passwords, app secrets, initial user passwords) from every record.
"""

import glob
import logging
import logging.handlers
import os
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List

LOG_FILE_NAME = 'reconcile.log'


class SensitiveDataFilter(logging.Filter):
    """Mask secret values in log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'user_init_password', 'userPassword', 'smtp_password',
        'app_secret', 'secret', 'token', 'access_token', 'corpsecret', 'appsecret', 'credential'
    ]

    PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value
        PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE), r'\1****'))
        # "key": "value" and 'key': 'value'
        PATTERNS.append((re.compile(rf'([\'"]{_keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE),
                         r'\1****\2'))
    PATTERNS.append((re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)\S+', re.IGNORECASE), r'\1****'))
    # Credentials embedded in database URLs
    PATTERNS.append((re.compile(r'(://[^:/@\s]+:)[^@\s]+(@)'), r'\1****\2'))
    del _keyword

    def filter(self, record):
        msg = record.getMessage() if record.args else str(record.msg)
        for pattern, replacement in self.PATTERNS:
            msg = pattern.sub(replacement, msg)
        record.msg = msg
        record.args = ()
        return True


class LoggingManager:
    """
    Owns the process-wide logging configuration.

    ``setup_logging`` is idempotent: the first call wins, later calls are ignored.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Configure the root logger from the ``logging`` configuration section.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config or {}
        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # ldap3 and sqlalchemy are chatty at DEBUG
        for noisy in ('ldap3', 'sqlalchemy.engine'):
            logging.getLogger(noisy).setLevel(logging.WARNING)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.get_log_files():
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}*')))


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging from the ``logging`` configuration section."""
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Records every change the engine makes to the directory or to entity status."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_directory_operation(self, operation: str, dn: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Directory {operation} {status}: dn={dn}")

    def log_status_change(self, username: str, old_status: str, new_status: str, source: str):
        self.logger.info(f"Status change: user={username} source={source} {old_status} -> {new_status}")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


audit_logger = AuditLogger()
