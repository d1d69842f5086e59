"""
Configuration module for the Listing Harvester.

Uses Pydantic Settings for type-safe configuration with environment variable support.
"""

from pathlib import Path
from typing import Literal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitConfig(BaseSettings):
    """Sliding window rate limiting configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_RATE_")

    # Hard cap
    max_requests: int = Field(default=10, description="Requests allowed per window")
    window_seconds: float = Field(default=60.0, description="Length of the trailing window (seconds)")

    # Human-like pacing between page actions
    min_delay: float = Field(default=2.0, description="Minimum random delay between pages (seconds)")
    max_delay: float = Field(default=5.0, description="Maximum random delay between pages (seconds)")


class ProxyConfig(BaseSettings):
    """Proxy rotation configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_PROXY_")

    enabled: bool = Field(default=False, description="Enable proxy rotation")
    proxy_file: Path | None = Field(default=None, description="Path to proxy list file")
    rotation_strategy: Literal["round_robin", "random", "sticky", "health_based"] = Field(
        default="round_robin",
        description="Proxy rotation strategy"
    )
    health_check_url: str = Field(default="https://httpbin.org/ip", description="URL used to probe proxies")
    health_check_interval: int = Field(default=300, description="Seconds between health sweeps")
    max_failures: int = Field(default=5, description="Consecutive failures before a proxy is unhealthy")
    cooldown_seconds: float = Field(default=300.0, description="Seconds before an unhealthy proxy is re-probed")
    probe_timeout: float = Field(default=10.0, description="Health probe timeout (seconds)")


class BrowserConfig(BaseSettings):
    """Headless browser pool configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_BROWSER_")

    headless: bool = Field(default=True, description="Run browser in headless mode")
    instances: int = Field(default=3, description="Browser instances in the pool")
    sessions_per_instance: int = Field(default=3, description="Pages held by each browser instance")
    navigation_timeout: int = Field(default=30000, description="Page navigation timeout in milliseconds")

    # Resource blocking
    block_images: bool = Field(default=True, description="Block image requests")
    block_fonts: bool = Field(default=True, description="Block font requests")
    block_media: bool = Field(default=True, description="Block media requests")
    block_analytics: bool = Field(default=True, description="Block analytics/tracking")

    blocked_domains: list[str] = Field(
        default=[
            "google-analytics.com",
            "googletagmanager.com",
            "facebook.com",
            "doubleclick.net",
            "analytics.",
            "tracker.",
            "ads.",
        ],
        description="Domains to block"
    )


class RetryConfig(BaseSettings):
    """Retry and backoff configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_RETRY_")

    max_retries: int = Field(default=3, description="Retries after the first attempt")
    base_delay: float = Field(default=1.0, description="Initial backoff delay (seconds)")
    max_delay: float = Field(default=30.0, description="Backoff ceiling (seconds)")
    backoff_multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class CircuitBreakerConfig(BaseSettings):
    """Circuit breaker configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_BREAKER_")

    failure_threshold: int = Field(default=5, description="Consecutive failures before opening")
    reset_timeout: float = Field(default=60.0, description="Seconds before a half-open trial")


class QueueConfig(BaseSettings):
    """Job queue and scheduler configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_QUEUE_")

    max_concurrent_jobs: int = Field(default=3, description="Jobs allowed in PROCESSING at once")
    poll_interval: float = Field(default=5.0, description="Seconds between scheduler polls")
    stall_timeout: float = Field(default=600.0, description="Seconds without update before a job is reaped")
    reaper_interval: float = Field(default=300.0, description="Seconds between stall sweeps")
    default_max_records: int = Field(default=1000, description="Record cap for jobs without one")


class WebhookConfig(BaseSettings):
    """Webhook delivery configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_WEBHOOK_")

    max_attempts: int = Field(default=5, description="Delivery attempts before giving up")
    retry_delays: list[float] = Field(
        default=[5.0, 30.0, 120.0, 600.0, 3600.0],
        description="Retry ladder in seconds (5s, 30s, 2m, 10m, 1h)"
    )
    delivery_timeout: float = Field(default=30.0, description="Per-attempt HTTP timeout (seconds)")
    retry_scan_interval: float = Field(default=30.0, description="Seconds between retry scans")
    failure_ceiling: int = Field(default=10, description="Endpoint failures before auto-disable")
    user_agent: str = Field(default="Listing-Harvester-Webhook/1.0", description="User-Agent for deliveries")
    history_size: int = Field(default=1000, description="Finished deliveries kept for inspection")


class StorageConfig(BaseSettings):
    """Data storage configuration."""

    model_config = SettingsConfigDict(env_prefix="HARVESTER_STORAGE_")

    backend: Literal["memory", "sqlite"] = Field(default="memory", description="Job/listing store backend")
    base_path: Path = Field(default=Path("storage"), description="Base storage directory")
    database_name: str = Field(default="harvester.db", description="SQLite database filename")
    export_subdir: str = Field(default="exports", description="Export files subdirectory")

    @property
    def database_path(self) -> Path:
        """Full path to the SQLite database."""
        return self.base_path / self.database_name

    @property
    def export_path(self) -> Path:
        """Full path to export directory."""
        return self.base_path / self.export_subdir


class HarvesterConfig(BaseSettings):
    """Main configuration aggregating all sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="HARVESTER_",
        env_nested_delimiter="__",
    )

    # Sub-configurations
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Target site
    search_url: str = Field(
        default="https://www.bizbuysell.com/businesses-for-sale/",
        description="Base URL that filter query strings are appended to"
    )
    max_pages: int = Field(default=50, description="Page cap per job")

    # Red Light Law - halt durations
    halt_on_429: int = Field(default=60, description="Seconds to halt after rate limiting")
    halt_on_captcha: int = Field(default=120, description="Seconds to halt after captcha")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    def ensure_directories(self) -> None:
        """Create necessary storage directories if they don't exist."""
        self.storage.base_path.mkdir(parents=True, exist_ok=True)
        self.storage.export_path.mkdir(parents=True, exist_ok=True)


# Global config instance (can be overridden)
config = HarvesterConfig()
