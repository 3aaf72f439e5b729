#!/usr/bin/env python3
"""
Configuration management for the feed ingestion service.

This module centralizes configuration loading, validation, and logging setup.
It reads environment variables (optionally from a .env file) and the seed
feed list in feeds.yaml, and provides a clean interface for accessing
configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import re
import sys
import yaml
from dotenv import load_dotenv

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
_DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}

def parse_duration(value) -> float:
    """Parse a duration such as "90s", "10m", "1h30m" or a bare number of seconds.

    Returns:
        The duration in seconds.

    Raises:
        ValueError: If the value is empty or not a recognised duration.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

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

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except (AttributeError, ValueError):
        # Replaced streams (e.g. test capture) may not support reconfigure
        pass

    # Keep third-party exporters quiet unless explicitly overridden
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("rssy")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "poller", "models")

    Returns:
        A logger named "rssy.{name}" inheriting the global configuration

    Example:
        logger = get_logger("fetcher")
        logger.info("This will appear as 'rssy.fetcher - INFO - ...'")
    """
    return getLogger(f"rssy.{name}")

# Create single global logger instance
logger = _setup_global_logger()

DEFAULT_REFRESH_INTERVAL = "10m"

class Config:
    """Configuration manager for the feed ingestion service.

    Values are loaded from, in increasing order of precedence:
    1. Built-in defaults
    2. System environment variables
    3. .env file next to this module (if present)

    Seed feeds inserted into an empty database come from feeds.yaml:
    ```yaml
    feeds:
      - name: Hacker News
        url: https://news.ycombinator.com/rss
        category: Tech
        site_url: https://news.ycombinator.com
        description: Hacker News RSS Feed
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_seed_feeds()

    def _load_environment(self):
        """Load environment variables from a .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path, override=True)
            logger.info(f"Loaded environment variables from {dotenv_path}")

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

    def _validate_duration(self, env_var: str, default: str, min_seconds: float = 1.0) -> float:
        """Parse a duration string such as "90s", "10m" or "1h30m" into seconds."""
        raw = environ.get(env_var, default)
        try:
            seconds = parse_duration(raw)
        except ValueError:
            logger.warning(f"Invalid duration for {env_var} ({raw!r}), using default {default}")
            return parse_duration(default)
        if seconds < min_seconds:
            logger.warning(f"{env_var} must be at least {min_seconds}s, using default {default}")
            return parse_duration(default)
        return seconds

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "rssy.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; rssy/1.0; feed aggregator)")
        self.SEED_DEFAULT_FEEDS = environ.get("SEED_DEFAULT_FEEDS", "true").lower() == "true"

        # Polling configuration
        self.FEED_REFRESH_INTERVAL = self._validate_duration("FEED_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)
        self.SHUTDOWN_TIMEOUT = self._validate_positive_int("SHUTDOWN_TIMEOUT", 30, 1)

        # HTTP request configuration
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'feeds')

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

    def _load_seed_feeds(self) -> None:
        """Populate self.SEED_FEEDS from feeds.yaml.

        Any failure results in an empty list; invalid entries are skipped.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.SEED_FEEDS: List[Dict[str, Any]] = []
        if not config_data:
            return

        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, list):
            logger.warning(f"No valid feeds list found in {feeds_path}")
            return

        for feed_cfg in feeds_section:
            url = feed_cfg.get('url') if isinstance(feed_cfg, dict) else None
            if not isinstance(url, str) or not url.strip().startswith(('http://', 'https://')):
                logger.warning(f"Skipping invalid seed feed configuration: {feed_cfg}")
                continue
            self.SEED_FEEDS.append({
                'name': str(feed_cfg.get('name') or feed_cfg['url']),
                'url': str(feed_cfg['url']).strip(),
                'category': feed_cfg.get('category'),
                'site_url': feed_cfg.get('site_url'),
                'description': feed_cfg.get('description'),
            })
            logger.debug(f"Loaded seed feed {feed_cfg.get('name')}: {feed_cfg['url']}")

        logger.info(f"Loaded {len(self.SEED_FEEDS)} seed feeds from {feeds_path}")

    def reload_seed_feeds(self):
        """Reload seed feeds from configuration file."""
        logger.info("Reloading seed feed configuration")
        self._load_seed_feeds()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "feed_refresh_interval_seconds": self.FEED_REFRESH_INTERVAL,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "max_retries": self.MAX_RETRIES,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "shutdown_timeout": self.SHUTDOWN_TIMEOUT,
            "seed_feed_count": len(self.SEED_FEEDS),
            "seed_default_feeds": self.SEED_DEFAULT_FEEDS,
        }

# Global configuration instance
config = Config()
