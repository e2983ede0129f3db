"""
Configuration loading and management for SSO Membership Sync.

This module handles loading configuration from an optional YAML file and
environment variables, with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'
DEFAULT_BASE_URL = 'https://api.snyk.io'
DEFAULT_API_VERSION = '2024-10-15'

TRUE_VALUES = ('1', 'true', 'yes', 'on')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings
    ENV_OVERRIDES = {
        'api.token': 'SNYK_TOKEN',
        'api.base_url': 'SNYK_API',
        'api.version': 'SNYK_API_VERSION',
        'logging.level': 'LOG_LEVEL',
    }

    SUPPORTED_AUTH_METHODS = ('token', 'bearer')
    SUPPORTED_TRUSTSTORE_TYPES = ('PEM', 'PKCS12')

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'.
                An explicitly requested file must exist; the default one is optional.
        """
        explicit = config_path or os.getenv('CONFIG_PATH')
        self.config_path = explicit or DEFAULT_CONFIG_PATH
        self.required = bool(explicit)
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
            source = self.config_path
        except FileNotFoundError:
            if self.required:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            self.config = {}
            source = 'environment'
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.debug(f"Configuration loaded successfully from {source}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        skip_verify = os.getenv('SKIP_VERIFY_TLS')
        if skip_verify:
            verify = skip_verify.strip().lower() not in TRUE_VALUES
            self._set_nested_value(self.config, 'api.verify_ssl', verify)
            logger.debug("Applied environment override for api.verify_ssl")

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

        api_config = self.config.get('api') or {}
        if not isinstance(api_config, dict):
            raise ConfigurationError("Configuration section 'api' must be a mapping")

        if not api_config.get('token'):
            errors.append("Missing API token: set api.token or the SNYK_TOKEN environment variable")

        auth_method = str(api_config.get('auth_method', 'token')).lower()
        if auth_method not in self.SUPPORTED_AUTH_METHODS:
            errors.append(f"Unsupported api.auth_method: {auth_method}")

        base_url = api_config.get('base_url')
        if base_url and not str(base_url).startswith(('https://', 'http://')):
            errors.append(f"api.base_url must be an http(s) URL: {base_url}")

        truststore_type = str(api_config.get('truststore_type', 'PEM')).upper()
        if truststore_type not in self.SUPPORTED_TRUSTSTORE_TYPES:
            errors.append(f"Unsupported api.truststore_type: {truststore_type}")

        rate_limits = self.config.get('rate_limits') or {}
        for field in ('rest_per_minute', 'v1_per_minute'):
            if field in rate_limits:
                value = rate_limits[field]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(f"rate_limits.{field} must be a positive integer")

        error_config = self.config.get('error_handling') or {}
        max_retries = error_config.get('max_retries')
        if max_retries is not None and (not isinstance(max_retries, int) or max_retries < 0):
            errors.append("error_handling.max_retries must be a non-negative integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name)
        if not isinstance(section, dict):
            section = self.config[name] = {}
        return section

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        api_defaults = {
            'base_url': DEFAULT_BASE_URL,
            'version': DEFAULT_API_VERSION,
            'auth_method': 'token',
            'verify_ssl': True,
            'timeout_seconds': 30,
            'truststore_type': 'PEM'
        }
        api_config = self._section('api')
        for key, value in api_defaults.items():
            api_config.setdefault(key, value)
        api_config['base_url'] = str(api_config['base_url']).rstrip('/')

        rate_defaults = {
            'rest_per_minute': 1620,
            'v1_per_minute': 2000
        }
        rate_config = self._section('rate_limits')
        for key, value in rate_defaults.items():
            rate_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'console_output': True,
            'retention_days': 7
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 1,
            'retry_backoff': 2.0
        }
        error_config = self._section('error_handling')
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


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
