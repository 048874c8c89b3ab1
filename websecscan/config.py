"""
WebSecScan Configuration Module

Environment-driven defaults (loaded from .env) plus the per-scan
ScanConfig with validation.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from websecscan.exceptions import ConfigurationError

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", component='config')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    """Base configuration with conservative defaults."""

    # Application
    APP_NAME = 'WebSecScan'
    APP_VERSION = '1.0.0'

    # Scanner Configuration
    SCANNER_MAX_DEPTH = _env_int('WEBSECSCAN_MAX_DEPTH', 2)
    SCANNER_MAX_PAGES = _env_int('WEBSECSCAN_MAX_PAGES', 50)
    SCANNER_RATE_LIMIT_MS = _env_int('WEBSECSCAN_RATE_LIMIT_MS', 1000)
    SCANNER_TIMEOUT_MS = _env_int('WEBSECSCAN_TIMEOUT_MS', 10000)
    SCANNER_SCAN_TIMEOUT = _env_int('WEBSECSCAN_SCAN_TIMEOUT', 1800)  # seconds
    SCANNER_MAX_REQUESTS = _env_int('WEBSECSCAN_MAX_REQUESTS', 500)
    SCANNER_RESPECT_ROBOTS = True
    SCANNER_ROBOTS_FAIL_OPEN = _env_bool('WEBSECSCAN_ROBOTS_FAIL_OPEN', True)
    SCANNER_VERIFY_SSL = _env_bool('WEBSECSCAN_VERIFY_SSL', True)

    LOG_LEVEL = os.environ.get('WEBSECSCAN_LOG_LEVEL', 'INFO')


class DevelopmentConfig(BaseConfig):
    """Development configuration."""

    DEBUG = True
    TESTING = False

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(BaseConfig):
    """Testing configuration."""

    DEBUG = True
    TESTING = True

    # Faster scans for testing
    SCANNER_MAX_DEPTH = 2
    SCANNER_MAX_PAGES = 10
    SCANNER_RATE_LIMIT_MS = 100
    SCANNER_TIMEOUT_MS = 5000
    SCANNER_SCAN_TIMEOUT = 60
    SCANNER_VERIFY_SSL = False


class ProductionConfig(BaseConfig):
    """Production configuration."""

    DEBUG = False
    TESTING = False

    LOG_LEVEL = 'WARNING'


# Configuration dictionary for easy access
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


ALL_MODULES = ['xss', 'sqli', 'path_traversal', 'csrf', 'auth', 'headers']


@dataclass
class ScanConfig:
    """
    Options for one scan.

    rate_limit and timeout are milliseconds; scan_timeout is seconds.
    """
    max_depth: int = 2
    max_pages: int = 50
    rate_limit: int = 1000
    timeout: int = 10000
    respect_robots_txt: bool = True
    robots_override_consent: bool = False
    robots_fail_open: bool = True
    allow_external_links: bool = False
    parse_sitemap: bool = False
    scan_timeout: float = 1800
    max_requests: int = 500
    verify_ssl: bool = True
    scan_modules: List[str] = None
    session_headers: Optional[Dict[str, str]] = field(default=None, repr=False)
    session_cookies: Optional[Dict[str, str]] = field(default=None, repr=False)

    # Allowed ranges
    DEPTH_RANGE = (1, 5)
    PAGES_RANGE = (1, 200)
    RATE_LIMIT_RANGE = (100, 5000)
    TIMEOUT_RANGE = (5000, 30000)
    RATE_LIMIT_WARNING = 500

    def __post_init__(self):
        if self.scan_modules is None:
            self.scan_modules = list(ALL_MODULES)

    @classmethod
    def from_env(cls, name: str = 'default', **overrides) -> 'ScanConfig':
        """Build a ScanConfig from one of the config classes."""
        cfg = config[name]
        values = dict(
            max_depth=cfg.SCANNER_MAX_DEPTH,
            max_pages=cfg.SCANNER_MAX_PAGES,
            rate_limit=cfg.SCANNER_RATE_LIMIT_MS,
            timeout=cfg.SCANNER_TIMEOUT_MS,
            scan_timeout=cfg.SCANNER_SCAN_TIMEOUT,
            max_requests=cfg.SCANNER_MAX_REQUESTS,
            respect_robots_txt=cfg.SCANNER_RESPECT_ROBOTS,
            robots_fail_open=cfg.SCANNER_ROBOTS_FAIL_OPEN,
            verify_ssl=cfg.SCANNER_VERIFY_SSL,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def rate_interval(self) -> float:
        """Seconds between request starts."""
        return self.rate_limit / 1000.0

    @property
    def request_timeout(self) -> float:
        """Per-request timeout in seconds."""
        return self.timeout / 1000.0

    def validate(self) -> List[str]:
        """
        Check option ranges and the robots consent rule.

        Returns:
            Soft warnings (the scan may proceed)

        Raises:
            ConfigurationError: Any hard violation
        """
        errors = []

        for name, (low, high) in (('max_depth', self.DEPTH_RANGE),
                                  ('max_pages', self.PAGES_RANGE),
                                  ('rate_limit', self.RATE_LIMIT_RANGE),
                                  ('timeout', self.TIMEOUT_RANGE)):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
                errors.append(f"{name} must be between {low} and {high}, got {value!r}")

        if not self.respect_robots_txt and not self.robots_override_consent:
            errors.append("Disabling robots.txt compliance requires explicit consent "
                          "(robots_override_consent=True)")

        if self.scan_timeout <= 0:
            errors.append("scan_timeout must be positive")
        if self.max_requests < 1:
            errors.append("max_requests must be at least 1")

        unknown = [m for m in self.scan_modules if m not in ALL_MODULES]
        if unknown:
            errors.append(f"Unknown scan modules: {', '.join(unknown)}")

        if errors:
            raise ConfigurationError('; '.join(errors), component='config')

        warnings = []
        if self.rate_limit < self.RATE_LIMIT_WARNING:
            warnings.append(f"rate_limit of {self.rate_limit}ms is aggressive; "
                            f"{self.RATE_LIMIT_WARNING}ms or more is recommended")
        if self.robots_override_consent:
            warnings.append("robots.txt restrictions are overridden by operator consent")
        for warning in warnings:
            logger.warning(warning)
        return warnings
