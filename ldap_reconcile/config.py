"""
Configuration loading and management for LDAP Reconcile.

This module loads configuration from a YAML file, applies environment variable
overrides for secrets, validates required fields and fills in defaults.
"""

import logging
import os
from typing import Any, Dict, Optional

import yaml

from ldap_reconcile.logging_setup import audit_logger

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'ldap.user_init_password': 'LDAP_USER_INIT_PASSWORD',
        'database.url': 'DATABASE_URL',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        audit_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        # Per-source app secrets, e.g. DINGTALK_APP_SECRET
        for i, source in enumerate(self.config.get('sources') or []):
            source_name = source.get('name', f'source_{i}')
            env_var = f"{source_name.upper()}_APP_SECRET"
            env_value = os.getenv(env_var)
            if env_value:
                source.setdefault('auth', {})['app_secret'] = env_value
                logger.debug(f"Applied environment override for {source_name} app secret")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields, reporting every problem at once."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password', 'base_dn', 'user_init_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        sources = self.config.get('sources') or []
        if not isinstance(sources, list):
            errors.append("'sources' must be a list")
            sources = []

        flags = set()
        for i, source in enumerate(sources):
            prefix = f"sources[{i}]"
            for field in ['name', 'module', 'base_url', 'auth']:
                if not source.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            auth = source.get('auth') or {}
            if auth and not (auth.get('app_key') and auth.get('app_secret')):
                errors.append(f"Missing app_key or app_secret for {prefix}")

            flag = source.get('flag') or source.get('name')
            if flag in flags:
                errors.append(f"Duplicate source flag '{flag}' in {prefix}")
            flags.add(flag)

            leave_range = source.get('leave_range_days', 0)
            if not isinstance(leave_range, int) or leave_range < 0:
                errors.append(f"{prefix}.leave_range_days must be a non-negative integer")

        interval = (self.config.get('schedule') or {}).get('interval_minutes', 0)
        if not isinstance(interval, int) or interval < 0:
            errors.append("schedule.interval_minutes must be a non-negative integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_config = self.config.setdefault('ldap', {})
        base_dn = ldap_config['base_dn']
        ldap_defaults = {
            'user_base_dn': f"ou=people,{base_dn}",
            'group_base_dn': base_dn,
            'admin_dn': ldap_config['bind_dn'],
            'default_role': 'user',
            'page_size': 1000,
        }
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        self.config.setdefault('database', {}).setdefault('url', 'memory://')

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)
        ldap_config.setdefault('error_handling', error_config)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

        self.config.setdefault('schedule', {}).setdefault('interval_minutes', 0)

        for source in self.config.setdefault('sources', []):
            source.setdefault('flag', source['name'])
            source.setdefault('enabled', True)
            source.setdefault('update_on_sync', False)
            source.setdefault('leave_range_days', 0)
            source.setdefault('verify_ssl', True)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
