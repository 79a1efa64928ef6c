"""Paths, constants, HTTP settings, and the TOML-backed run configuration."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from platformdirs import user_cache_dir, user_config_dir, user_data_dir

APP_NAME = "iocweave"

# Local storage
DATA_DIR = Path(user_data_dir(APP_NAME))
CACHE_DIR = Path(user_cache_dir(APP_NAME))
CONFIG_DIR = Path(user_config_dir(APP_NAME))
CONFIG_PATH = CONFIG_DIR / "config.toml"
DB_PATH = DATA_DIR / "iocweave.db"
OUTPUT_DIR = DATA_DIR / "reports"

# HTTP
USER_AGENT = "iocweave/0.1.0 (threat-intel-correlation; security-research)"
REQUEST_TIMEOUT = 30

# Re-download the ATT&CK bundle once a cached copy is older than this
ATTACK_BUNDLE_MAX_AGE = 24 * 60 * 60  # seconds

# Feed defaults
OTX_BASE_URL = "https://otx.alienvault.com/api/v1"
MALWAREBAZAAR_BASE_URL = "https://mb-api.abuse.ch"
MITRE_CTI_BASE_URL = "https://raw.githubusercontent.com/mitre/cti/master"

DEFAULT_IGNORED_DOMAINS = [
    "google.com",
    "microsoft.com",
    "cloudflare.com",
    "amazonaws.com",
]


class ConfigError(ValueError):
    """Raised when the configuration file holds an unusable value."""


@dataclass
class FeedConfig:
    """One intelligence feed and how to reach it."""

    name: str  # registry key, e.g. "alienvault_otx"
    base_url: str
    api_key: str = ""
    is_active: bool = True
    headers: dict[str, str] = field(default_factory=dict)
    rate_limit_per_minute: int = 60

    @property
    def request_delay(self) -> float:
        """Seconds to sleep before each request to stay under the rate limit."""
        if self.rate_limit_per_minute <= 0:
            return 0.0
        return 60.0 / self.rate_limit_per_minute


@dataclass
class CorrelationSettings:
    min_confidence_threshold: float = 0.70
    max_indicators_per_correlation: int = 1000
    enable_infrastructure_pivots: bool = True
    ignored_domains: list[str] = field(
        default_factory=lambda: list(DEFAULT_IGNORED_DOMAINS)
    )
    max_concurrent_requests: int = 5


@dataclass
class AppConfig:
    feeds: list[FeedConfig] = field(default_factory=list)
    correlation: CorrelationSettings = field(default_factory=CorrelationSettings)
    output_dir: Path = OUTPUT_DIR

    @property
    def active_feeds(self) -> list[FeedConfig]:
        return [f for f in self.feeds if f.is_active]


def default_feeds() -> list[FeedConfig]:
    feeds = [
        FeedConfig(name="alienvault_otx", base_url=OTX_BASE_URL),
        FeedConfig(
            name="abusech_malwarebazaar",
            base_url=MALWAREBAZAAR_BASE_URL,
            rate_limit_per_minute=30,
        ),
        FeedConfig(name="mitre_attck", base_url=MITRE_CTI_BASE_URL),
    ]
    for feed in feeds:
        feed.api_key = _env_api_key(feed.name)
    return feeds


def _env_api_key(feed_name: str) -> str:
    return os.environ.get(f"IOCWEAVE_{feed_name.upper()}_API_KEY", "")


def _parse_feed(raw: dict) -> FeedConfig:
    name = str(raw.get("name", "")).strip()
    base_url = str(raw.get("base_url", "")).strip()
    if not name:
        raise ConfigError("every [[feeds]] entry needs a name")
    if not base_url:
        raise ConfigError(f"feed {name!r} is missing base_url")

    headers = raw.get("headers", {})
    if not isinstance(headers, dict):
        raise ConfigError(f"feed {name!r}: headers must be a table")

    rate = raw.get("rate_limit_per_minute", 60)
    if not isinstance(rate, int) or rate < 0:
        raise ConfigError(f"feed {name!r}: rate_limit_per_minute must be >= 0")

    return FeedConfig(
        name=name,
        base_url=base_url,
        api_key=str(raw.get("api_key", "")) or _env_api_key(name),
        is_active=bool(raw.get("is_active", True)),
        headers={str(k): str(v) for k, v in headers.items()},
        rate_limit_per_minute=rate,
    )


def _parse_correlation(raw: dict) -> CorrelationSettings:
    settings = CorrelationSettings()

    threshold = raw.get("min_confidence_threshold", settings.min_confidence_threshold)
    if not isinstance(threshold, (int, float)) or not 0.0 <= threshold <= 1.0:
        raise ConfigError("min_confidence_threshold must be between 0.0 and 1.0")
    settings.min_confidence_threshold = float(threshold)

    max_per = raw.get(
        "max_indicators_per_correlation", settings.max_indicators_per_correlation
    )
    if not isinstance(max_per, int) or max_per < 1:
        raise ConfigError("max_indicators_per_correlation must be a positive integer")
    settings.max_indicators_per_correlation = max_per

    workers = raw.get("max_concurrent_requests", settings.max_concurrent_requests)
    if not isinstance(workers, int) or workers < 1:
        raise ConfigError("max_concurrent_requests must be a positive integer")
    settings.max_concurrent_requests = workers

    settings.enable_infrastructure_pivots = bool(
        raw.get("enable_infrastructure_pivots", True)
    )
    if "ignored_domains" in raw:
        settings.ignored_domains = [
            str(d).strip().lower() for d in raw["ignored_domains"] if str(d).strip()
        ]
    return settings


def load_config(path: Path | None = None) -> AppConfig:
    """Load the TOML config file, falling back to defaults.

    An explicit *path* must exist; the default location is optional. When the
    file has no ``[[feeds]]`` entries the three built-in feeds are used.
    """
    if path is None:
        path = CONFIG_PATH
        if not path.exists():
            return AppConfig(feeds=default_feeds())
    elif not path.exists():
        raise ConfigError(f"config file not found: {path}")

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML in {path}: {e}") from e

    if "feeds" in raw:
        feeds = [_parse_feed(entry) for entry in raw["feeds"]]
    else:
        feeds = default_feeds()

    config = AppConfig(
        feeds=feeds,
        correlation=_parse_correlation(raw.get("correlation", {})),
    )
    if raw.get("output_dir"):
        config.output_dir = Path(raw["output_dir"]).expanduser()
    return config
