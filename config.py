#!/usr/bin/env python3
"""
Configuration management for the new works watcher.

This module centralizes logging setup, environment loading and validation,
and the subscriptions.yaml file that seeds subscriptions and the default
global check settings stored in the database.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Quieten the Azure exporter unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    azure_level = level_map.get(azure_level_str, WARNING)
    for name in ("azure", "azure.core", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(azure_level)

    return getLogger("NewWorks")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "collector", "scheduler")

    Returns:
        A logger named "NewWorks.{name}"
    """
    return getLogger(f"NewWorks.{name}")

logger = _setup_global_logger()

# Statuses a user can give a work in their local library
LIBRARY_STATUSES = ("viewed", "browsed", "want")


class Config:
    """Configuration manager for the new works watcher.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. subscriptions.yaml (seed subscriptions and default check settings)

    Example subscriptions.yaml:
    ```yaml
    settings:
      check_interval_hours: 24
      auto_check_enabled: true
      concurrency: 2
      filters:
        date_range_months: 3
        exclude_statuses: [viewed, want]
        category_filters: [s, d]
    subscriptions:
      - id: "x7Ab"
        name: "Some Actor"
      - id: "Qz3k"
        name: "Another Actor"
        enabled: false
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_subscription_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "newworks.db")
        self.SITE_BASE_URL = environ.get("SITE_BASE_URL", "https://javdb.com").rstrip("/")
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0 Safari/537.36",
        )
        self.PROXY_URL = environ.get("PROXY_URL") or None

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Crawl pacing
        self.PAGE_DELAY_SECONDS = self._validate_positive_float("PAGE_DELAY_SECONDS", 3.0, 0.0)

        # Scheduler configuration
        self.BOOTSTRAP_DELAY_SECONDS = self._validate_positive_float("BOOTSTRAP_DELAY_SECONDS", 5.0, 0.0)

        # Notifications
        self.NOTIFY_WEBHOOK_URL = environ.get("NOTIFY_WEBHOOK_URL") or None

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SUBSCRIPTIONS_CONFIG_PATH = environ.get(
            "SUBSCRIPTIONS_CONFIG_PATH", path.join(base_dir, "subscriptions.yaml")
        )

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, the file must be a YAML mapping, either at the
        top level or nested under `environment`. Each key is exported as an
        environment variable.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_subscription_sources(self) -> None:
        """Populate SUBSCRIPTION_SOURCES and DEFAULT_SETTINGS from subscriptions.yaml.

        Any failure results in no seed subscriptions and built-in defaults.
        """
        config_path = self.SUBSCRIPTIONS_CONFIG_PATH
        self.SUBSCRIPTION_SOURCES: List[Dict[str, Any]] = []
        self.DEFAULT_SETTINGS: Dict[str, Any] = {}

        config_data = self._safe_read_yaml(config_path, 5 * 1024 * 1024, 'subscriptions')
        if not isinstance(config_data, dict):
            return

        settings_section = config_data.get('settings')
        if isinstance(settings_section, dict):
            self.DEFAULT_SETTINGS = dict(settings_section)
        elif settings_section is not None:
            logger.warning(f"'settings' in {config_path} must be a mapping; ignoring")

        subs_section = config_data.get('subscriptions') or []
        if not isinstance(subs_section, list):
            logger.warning(f"'subscriptions' in {config_path} must be a list; ignoring")
            return

        for entry in subs_section:
            if isinstance(entry, dict) and entry.get('id'):
                self.SUBSCRIPTION_SOURCES.append({
                    'id': str(entry['id']),
                    'name': str(entry.get('name') or entry['id']),
                    'enabled': entry.get('enabled', True) is not False,
                })
            else:
                logger.warning(f"Skipping invalid subscription entry in {config_path}: {entry}")

        logger.info(f"Loaded {len(self.SUBSCRIPTION_SOURCES)} seed subscriptions from {config_path}")

    def default_global_config(self):
        """Build the GlobalConfig used when the database holds none yet."""
        from models import GlobalConfig
        return GlobalConfig.from_dict(self.DEFAULT_SETTINGS)

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "site_base_url": self.SITE_BASE_URL,
            "http_timeout": self.HTTP_TIMEOUT,
            "page_delay_seconds": self.PAGE_DELAY_SECONDS,
            "bootstrap_delay_seconds": self.BOOTSTRAP_DELAY_SECONDS,
            "seed_subscriptions": len(self.SUBSCRIPTION_SOURCES),
            "has_proxy": bool(self.PROXY_URL),
            "has_webhook": bool(self.NOTIFY_WEBHOOK_URL),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
