#!/usr/bin/env python3
"""
Configuration management for Feed Sync.

This module centralizes configuration loading, validation, and logging setup.
It handles environment variables, the optional secrets file, and the feeds.yaml
declaration file, and provides a clean interface for accessing configuration
values throughout the application.

Runtime knobs that users change while the engine is running (refresh interval,
concurrency, cleanup, global proxy) live in the settings table instead; see
models.DEFAULT_SETTINGS.
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

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
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
        force=True  # Force reconfiguration if already configured
    )

    # Keep exporter chatter out of the feed logs
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedSync")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "discovery", "scheduler")

    Returns:
        A logger named "FeedSync.{name}"
    """
    return getLogger(f"FeedSync.{name}")

# Create single global logger instance
logger = _setup_global_logger()

# Interpreters used for script feeds, keyed by file extension
SCRIPT_INTERPRETERS: Dict[str, List[str]] = {
    ".py": [sys.executable or "python3"],
    ".sh": ["sh"],
    ".js": ["node"],
    ".rb": ["ruby"],
    ".ps1": ["pwsh", "-NoProfile", "-File"],
}


class Config:
    """Configuration manager for Feed Sync.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml feed declarations

    Example feeds.yaml:
    ```yaml
    proxy:
      url: "http://proxy.internal:3128"
    feeds:
      lwn:
        url: "https://lwn.net/headlines/rss"
        category: "Linux"
      scraped:
        script: "scraper.py"
        category: "Misc"
        interval_minutes: 120
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

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
        base_dir = path.dirname(path.abspath(__file__))

        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedSync/1.0)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Script feeds
        self.SCRIPTS_DIR = path.abspath(environ.get("SCRIPTS_DIR", path.join(base_dir, "scripts")))
        self.SCRIPT_TIMEOUT = self._validate_positive_int("SCRIPT_TIMEOUT", 60, 1)

        # Discovery
        self.SINGLE_DISCOVERY_TIMEOUT = self._validate_positive_float("SINGLE_DISCOVERY_TIMEOUT", 90.0, 0.01)
        self.BATCH_DISCOVERY_TIMEOUT = self._validate_positive_float("BATCH_DISCOVERY_TIMEOUT", 300.0, 0.01)
        self.DISCOVERY_MAX_CANDIDATES = self._validate_positive_int("DISCOVERY_MAX_CANDIDATES", 40, 1)
        self.DISCOVERY_CONCURRENCY = self._validate_positive_int("DISCOVERY_CONCURRENCY", 4, 1)
        self.DISCOVERY_REQUESTS_PER_MINUTE = self._validate_positive_int("DISCOVERY_REQUESTS_PER_MINUTE", 120, 1)

        # Fallbacks for settings rows that are missing or malformed
        self.DEFAULT_UPDATE_INTERVAL = self._validate_positive_int("DEFAULT_UPDATE_INTERVAL", 10, 1)
        self.DEFAULT_CONCURRENCY = self._validate_positive_int("DEFAULT_CONCURRENCY", 5, 1)
        self.MAX_CONCURRENCY = self._validate_positive_int("MAX_CONCURRENCY", 20, 1)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets
        environment variables from it. Both a top-level mapping and a mapping
        nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

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

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml.

        Each entry becomes a dict with `url` or `script`, plus optional
        `category`, `title`, `interval_minutes` and `proxy`. Any failure
        results in an empty mapping.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        self.PROXY_URL = None
        self.FEED_SOURCES: Dict[str, Dict[str, Any]] = {}
        if not path.exists(feeds_path):
            logger.debug(f"No feeds file at {feeds_path}")
            return
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            return

        proxy_section = config_data.get('proxy')
        if isinstance(proxy_section, dict):
            proxy_url_value = proxy_section.get('url')
            if isinstance(proxy_url_value, str) and proxy_url_value.strip():
                self.PROXY_URL = proxy_url_value.strip()
                logger.info("Configured HTTP proxy for feed fetching via feeds.yaml")
            elif proxy_url_value is not None:
                logger.warning(f"Invalid proxy.url entry in {feeds_path}; ignoring proxy configuration")
        elif proxy_section not in (None, False):
            logger.warning(f"Proxy configuration in {feeds_path} must be a mapping with a url field")

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            return

        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and (feed_cfg.get('url') or feed_cfg.get('script')):
                self.FEED_SOURCES[str(feed_slug)] = dict(feed_cfg)
                logger.debug(f"Loaded feed {feed_slug}: {feed_cfg.get('url') or feed_cfg.get('script')}")
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")

        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "scripts_dir": self.SCRIPTS_DIR,
            "script_timeout": self.SCRIPT_TIMEOUT,
            "single_discovery_timeout": self.SINGLE_DISCOVERY_TIMEOUT,
            "batch_discovery_timeout": self.BATCH_DISCOVERY_TIMEOUT,
            "declared_feeds": len(self.FEED_SOURCES),
            "proxy_configured": bool(self.PROXY_URL),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
