#!/usr/bin/env python3
"""
Configuration management for Feed Keeper.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, secrets, feed seeding and the sanitation
policy, and provides a clean interface for accessing configuration values
throughout the application.
"""

from os import environ, path, access, R_OK, urandom
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import base64
import binascii
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
    environ["PYTHONUNBUFFERED"] = "1"

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
    except AttributeError:
        # Captured streams under test runners do not support reconfigure()
        pass

    # aiohttp access logs are noisy at INFO; the proxy endpoint is hit per image
    getLogger("aiohttp.access").setLevel(level_map.get(environ.get("ACCESS_LOG_LEVEL", "WARNING").upper(), WARNING))

    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedKeeper")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedKeeper.{name}".

    Args:
        name: The logger name (e.g., "fetcher", "feed_sync", "image_proxy")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"FeedKeeper.{name}")

# Create single global logger instance
logger = _setup_global_logger()

DEFAULT_TRACKING_PARAM_PATTERNS = [
    "utm_*",
    "fbclid",
    "gclid",
    "dclid",
    "msclkid",
    "mc_cid",
    "mc_eid",
    "_hsenc",
    "_hsmi",
    "igshid",
    "yclid",
    "ref_src",
]

DEFAULT_TRACKING_HOST_PATTERNS = [
    "pixel.*",
    "analytics.*",
    "stats.*",
    "track.*",
    "tracking.*",
    "feeds.feedburner.com",
    "feedproxy.google.com",
    "pixel.wp.com",
    "stats.wordpress.com",
    "*.doubleclick.net",
    "*.google-analytics.com",
    "www.facebook.com",
    "pixel.quantserve.com",
    "*.scorecardresearch.com",
    "*.list-manage.com",
]

MIN_SECRET_LENGTH = 16


class Config:
    """Configuration manager for Feed Keeper.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file (seed feeds and sanitation policy)

    Example secrets.yaml format:
    ```yaml
    AZURE_ENDPOINT: "https://your-resource.openai.azure.com/"
    OPENAI_API_KEY: "your-api-key"
    IMAGE_PROXY_SECRET: "base64-encoded-32-bytes"
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
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedKeeper/1.0; RSS Reader)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_FEED_SIZE_MB = self._validate_positive_int("MAX_FEED_SIZE_MB", 10, 1)

        # Scheduler configuration
        self.SCHEDULER_TICK_SECONDS = self._validate_positive_int("SCHEDULER_TICK_SECONDS", 60, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"
        self.SYNC_CONCURRENCY = self._validate_positive_int("SYNC_CONCURRENCY", 8, 1)

        # Reader mode (full article extraction) throttling
        self.READER_MODE_REQUESTS_PER_MINUTE = self._validate_positive_int("READER_MODE_REQUESTS_PER_MINUTE", 10, 1)
        self.READER_MODE_CONCURRENCY = self._validate_positive_int("READER_MODE_CONCURRENCY", 3, 1)

        # Image proxy configuration
        self.IMAGE_PROXY_SECRET = self._load_image_proxy_secret()
        self.IMAGE_MAX_SIZE_MB = self._validate_positive_int("IMAGE_MAX_SIZE_MB", 10, 1)
        self.IMAGE_CACHE_TTL_HOURS = self._validate_positive_int("IMAGE_CACHE_TTL_HOURS", 24, 1)
        self.REWRITE_IMAGES = environ.get("REWRITE_IMAGES", "true").lower() == "true"

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Summary provider selection: "openai" (Azure OpenAI) or "kagi"
        self.SUMMARY_PROVIDER = environ.get("SUMMARY_PROVIDER", "openai").strip().lower()

        # OpenAI/Azure AI configuration for summarizer
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        # Normalize endpoint (strip scheme and trailing slashes) to avoid malformed URLs
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            normalized = normalized.strip("/")
            if normalized != self.AZURE_ENDPOINT:
                logger.info(f"Normalized AZURE_ENDPOINT to '{normalized}'")
            self.AZURE_ENDPOINT = normalized
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")

        # Kagi Universal Summarizer
        self.KAGI_SESSION_TOKEN = environ.get("KAGI_SESSION_TOKEN")
        self.KAGI_LANGUAGE = environ.get("KAGI_LANGUAGE", "EN")

        # Summarizer-specific configuration (longer timeouts for AI API calls)
        self.SUMMARIZER_HTTP_TIMEOUT = self._validate_positive_int("SUMMARIZER_HTTP_TIMEOUT", 60, 10)
        # Retries are left to the sweeper; a value above 0 re-enables inline retries in llm_client
        self.SUMMARIZER_MAX_RETRIES = self._validate_positive_int("SUMMARIZER_MAX_RETRIES", 0, 0)
        self.SUMMARIZER_RETRY_DELAY_BASE = self._validate_positive_float("SUMMARIZER_RETRY_DELAY_BASE", 1.0, 0.1)
        self.SUMMARIZER_REQUESTS_PER_MINUTE = self._validate_positive_int("SUMMARIZER_REQUESTS_PER_MINUTE", 60, 1)

        # Summary queue, leases and cache
        self.SUMMARY_QUEUE_SIZE = self._validate_positive_int("SUMMARY_QUEUE_SIZE", 100, 1)
        self.SUMMARY_LEASE_SECONDS = self._validate_positive_int("SUMMARY_LEASE_SECONDS", 300, 30)
        self.SUMMARY_SWEEP_SECONDS = self._validate_positive_int("SUMMARY_SWEEP_SECONDS", 60, 5)
        self.SUMMARY_CACHE_MAX_ENTRIES = self._validate_positive_int("SUMMARY_CACHE_MAX_ENTRIES", 1000, 1)
        self.SUMMARY_CACHE_TTL_HOURS = self._validate_positive_int("SUMMARY_CACHE_TTL_HOURS", 24, 1)

        # Summary cleanup
        self.SUMMARY_FAILED_RETENTION_HOURS = self._validate_positive_int("SUMMARY_FAILED_RETENTION_HOURS", 24, 1)
        # 0 keeps completed summaries for as long as their entry exists
        self.SUMMARY_COMPLETED_TTL_HOURS = self._validate_positive_int("SUMMARY_COMPLETED_TTL_HOURS", 0, 0)
        self.SUMMARY_CLEANUP_INTERVAL_HOURS = self._validate_positive_float("SUMMARY_CLEANUP_INTERVAL_HOURS", 1.0, 0.01)

        # HTTP server
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 3000, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.PROMPT_CONFIG_PATH = path.join(base_dir, "prompt.yaml")

    def _load_image_proxy_secret(self) -> bytes:
        """Resolve the HMAC key used to sign image proxy URLs.

        A base64 value decoding to at least 16 bytes is used decoded; otherwise
        a raw value of at least 16 characters is used as-is. Anything else
        results in a random per-process secret, which invalidates previously
        issued proxy URLs on restart.
        """
        raw = environ.get("IMAGE_PROXY_SECRET", "").strip()
        if raw:
            try:
                decoded = base64.b64decode(raw, validate=True)
                if len(decoded) >= MIN_SECRET_LENGTH:
                    return decoded
            except (binascii.Error, ValueError):
                pass
            if len(raw) >= MIN_SECRET_LENGTH:
                return raw.encode("utf-8")
            logger.warning(f"IMAGE_PROXY_SECRET shorter than {MIN_SECRET_LENGTH} characters; ignoring it")
        logger.warning("IMAGE_PROXY_SECRET not set; generated a random secret (proxy URLs will not survive restarts)")
        return urandom(32)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets
        environment variables from it. Both a top-level mapping and a mapping
        nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.info("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

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
        """Populate FEED_SOURCES and the sanitation policy from feeds.yaml.

        Each feed entry maps a slug to ``{url, category, reader_mode}``. Any
        failure results in an empty mapping and the default policy.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            config_data = {}

        self._load_policy(config_data.get('policy'))

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            if config_data:
                logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_SOURCES = {}
            return

        new_sources: Dict[str, Dict[str, Any]] = {}
        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                new_sources[feed_slug] = {
                    'url': feed_cfg['url'].strip(),
                    'category': str(feed_cfg.get('category') or 'Uncategorized'),
                    'reader_mode': bool(feed_cfg.get('reader_mode', False)),
                }
                logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")

        self.FEED_SOURCES = new_sources
        logger.info(f"Successfully loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def _load_policy(self, policy_section: Any) -> None:
        """Load tracking patterns and the article length threshold."""
        self.TRACKING_PARAM_PATTERNS: List[str] = list(DEFAULT_TRACKING_PARAM_PATTERNS)
        self.TRACKING_HOST_PATTERNS: List[str] = list(DEFAULT_TRACKING_HOST_PATTERNS)
        self.MIN_ARTICLE_LENGTH = 250
        if policy_section is None:
            return
        if not isinstance(policy_section, dict):
            logger.warning("policy section in feeds.yaml must be a mapping; using defaults")
            return

        params = policy_section.get('tracking_params')
        if isinstance(params, list):
            self.TRACKING_PARAM_PATTERNS = [str(p).strip().lower() for p in params if str(p).strip()]
        hosts = policy_section.get('tracking_hosts')
        if isinstance(hosts, list):
            self.TRACKING_HOST_PATTERNS = [str(h).strip().lower() for h in hosts if str(h).strip()]
        min_len = policy_section.get('min_article_length')
        if min_len is not None:
            try:
                value = int(str(min_len).strip())
                if value >= 0:
                    self.MIN_ARTICLE_LENGTH = value
                else:
                    logger.warning(f"min_article_length must be >=0; keeping default 250 (got {min_len})")
            except ValueError:
                logger.warning(f"Invalid min_article_length value '{min_len}' in feeds.yaml; using default 250")
        logger.info(
            "Loaded policy: %d tracking params, %d tracking hosts, MIN_ARTICLE_LENGTH=%s",
            len(self.TRACKING_PARAM_PATTERNS),
            len(self.TRACKING_HOST_PATTERNS),
            self.MIN_ARTICLE_LENGTH,
        )

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "sync_concurrency": self.SYNC_CONCURRENCY,
            "reader_mode_requests_per_minute": self.READER_MODE_REQUESTS_PER_MINUTE,
            "reader_mode_concurrency": self.READER_MODE_CONCURRENCY,
            "feed_count": len(self.FEED_SOURCES),
            "summary_provider": self.SUMMARY_PROVIDER,
            "summary_cache_max_entries": self.SUMMARY_CACHE_MAX_ENTRIES,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "image_proxy_secret_configured": bool(environ.get("IMAGE_PROXY_SECRET")),
            "has_azure_endpoint": bool(self.AZURE_ENDPOINT),
            "has_openai_key": bool(self.OPENAI_API_KEY),
            "has_kagi_token": bool(self.KAGI_SESSION_TOKEN),
        }

# Global configuration instance
config = Config()
