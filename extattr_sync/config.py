"""
Configuration loading and management for Extension Attribute Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from extattr_sync.models import ALL_SLOTS, is_valid_slot

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'graph.client_secret': 'GRAPH_CLIENT_SECRET',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    REQUIRED_FIELDS = {
        'ldap': ['server_url', 'bind_dn', 'bind_password'],
        'graph': ['tenant_id', 'client_id', 'client_secret'],
    }

    DEFAULTS = {
        'ldap': {
            'base_dn': '',
            'search_filter': '(objectClass=computer)',
            'page_size': 1000
        },
        'graph': {
            'base_url': 'https://graph.microsoft.com/v1.0',
            'authority': 'https://login.microsoftonline.com',
            'scope': 'https://graph.microsoft.com/.default',
            'verify_ssl': True,
            'proxy_url': None,
            'timeout': 30
        },
        'sync': {
            'containers': [],
            'recursive': True,
            'slots': list(ALL_SLOTS),
            'preview': False,
            'max_workers': 1,
            'report_path': None,
            'report_delimiter': ','
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'log_file': 'extattr-sync.log',
            'audit_log_file': 'audit.log',
            'rotation': 'daily',
            'retention_days': 7
        },
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 2,
            'retry_backoff': 2.0
        },
        'notifications': {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
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
            with open(self.config_path, 'r') as f:
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

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

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
        """Validate required configuration fields."""
        errors = []

        for section, fields in self.REQUIRED_FIELDS.items():
            section_config = self.config.get(section) or {}
            for field in fields:
                if not section_config.get(field):
                    errors.append(f"Missing required {section} field: {field}")

        sync_config = self.config.get('sync') or {}

        slots = sync_config.get('slots')
        if slots is not None:
            if not isinstance(slots, list) or not slots:
                errors.append("sync.slots must be a non-empty list of slot numbers")
            else:
                invalid = [slot for slot in slots if not is_valid_slot(slot)]
                if invalid:
                    errors.append(f"sync.slots contains invalid slots (1-15 allowed): {invalid}")

        containers = sync_config.get('containers')
        if containers is not None and not isinstance(containers, list):
            errors.append("sync.containers must be a list of distinguished names")

        max_workers = sync_config.get('max_workers')
        if max_workers is not None and (not isinstance(max_workers, int) or max_workers < 1):
            errors.append("sync.max_workers must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Fill in optional settings that the file leaves out."""
        for section, defaults in self.DEFAULTS.items():
            section_config = self.config.get(section) or {}
            self.config[section] = section_config
            for key, value in defaults.items():
                section_config.setdefault(key, list(value) if isinstance(value, list) else value)

        # The LDAP client reads its bind retry settings from its own section
        self.config['ldap'].setdefault('error_handling', dict(self.config['error_handling']))


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


def configured_containers(config: Dict[str, Any]) -> List[str]:
    """Return the container DNs listed under sync.containers, blanks removed."""
    containers = (config.get('sync') or {}).get('containers') or []
    return [str(container).strip() for container in containers if str(container).strip()]
