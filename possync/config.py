"""
Configuration management for possync.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for a single-device install
    - Batch size and spacing together define the outbound rate ceiling
    - The sales window must stay within the range the remote indexes cheaply

How to change safely:
    - Add new settings with defaults that keep current behavior
    - Keep env var names stable; installed devices set them in their launcher
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_PRODUCTS = ("อเมริกาโน่เย็น", "อเมริกาโน่ร้อน", "คาปูชิโน่")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class RemoteBackend(Enum):
    """Supported remote store backends."""

    MEMORY = "memory"


@dataclass(frozen=True)
class OutboundConfig:
    """Outbound write queue configuration.

    Attributes:
        batch_size: Maximum operations dispatched per batch
        batch_spacing_seconds: Minimum delay between batch starts
        debounce_seconds: Window collapsing repeated settings writes
        cooldown_seconds: Suppression period after a rate-limit rejection
    """

    batch_size: int = 5
    batch_spacing_seconds: float = 2.0
    debounce_seconds: float = 5.0
    cooldown_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> OutboundConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=int(os.getenv("POSSYNC_BATCH_SIZE", "5")),
            batch_spacing_seconds=float(os.getenv("POSSYNC_BATCH_SPACING_SECONDS", "2.0")),
            debounce_seconds=float(os.getenv("POSSYNC_DEBOUNCE_SECONDS", "5.0")),
            cooldown_seconds=float(os.getenv("POSSYNC_COOLDOWN_SECONDS", "60.0")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Change-feed configuration.

    Attributes:
        sales_window: Number of most recent sales covered by the live feed
        sales_history_limit: Page size for forced sales sync and history queries
        reconnect_delay_seconds: Delay before resubscribing a broken feed
        sample_product_names: Product names never materialized locally
    """

    sales_window: int = 100
    sales_history_limit: int = 200
    reconnect_delay_seconds: float = 5.0
    sample_product_names: tuple[str, ...] = DEFAULT_SAMPLE_PRODUCTS

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        raw_samples = os.getenv("POSSYNC_SAMPLE_PRODUCTS")
        samples = (
            tuple(name.strip() for name in raw_samples.split(",") if name.strip())
            if raw_samples is not None
            else DEFAULT_SAMPLE_PRODUCTS
        )
        return cls(
            sales_window=int(os.getenv("POSSYNC_SALES_WINDOW", "100")),
            sales_history_limit=int(os.getenv("POSSYNC_SALES_HISTORY_LIMIT", "200")),
            reconnect_delay_seconds=float(os.getenv("POSSYNC_RECONNECT_DELAY_SECONDS", "5.0")),
            sample_product_names=samples,
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite key-value file
        db_file: SQLite file name
        key_prefix: Prefix of the per-tenant snapshot key
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "./data"
    db_file: str = "possync.db"
    key_prefix: str = "posData_"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("POSSYNC_DATA_DIR", "./data"),
            db_file=os.getenv("POSSYNC_DB_FILE", "possync.db"),
            key_prefix=os.getenv("POSSYNC_KEY_PREFIX", "posData_"),
            busy_timeout_ms=int(os.getenv("POSSYNC_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_file)


@dataclass(frozen=True)
class SessionConfig:
    """Tenant session settings.

    Attributes:
        autosave_interval_seconds: Safety-net persistence cadence
        auto_lock_minutes: Inactivity period before the lock callback fires
        failure_alert_threshold: Consecutive remote failures before notifying
        tenant_id: Tenant started by the process entry point
        tenant_name: Display name of that tenant
    """

    autosave_interval_seconds: float = 30.0
    auto_lock_minutes: float = 10.0
    failure_alert_threshold: int = 5
    tenant_id: str = "default"
    tenant_name: str = ""

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from environment variables."""
        return cls(
            autosave_interval_seconds=float(os.getenv("POSSYNC_AUTOSAVE_SECONDS", "30")),
            auto_lock_minutes=float(os.getenv("POSSYNC_AUTO_LOCK_MINUTES", "10")),
            failure_alert_threshold=int(os.getenv("POSSYNC_FAILURE_ALERT_THRESHOLD", "5")),
            tenant_id=os.getenv("POSSYNC_TENANT_ID", "default"),
            tenant_name=os.getenv("POSSYNC_TENANT_NAME", ""),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Status HTTP endpoint configuration."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8081

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("POSSYNC_HTTP_ENABLED", "true"),
            host=os.getenv("POSSYNC_HTTP_HOST", "127.0.0.1"),
            port=int(os.getenv("POSSYNC_HTTP_PORT", "8081")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class SyncConfig:
    """Complete engine configuration.

    Attributes:
        remote_backend: Which remote store backend to use
        outbound: Outbound queue configuration
        feed: Change-feed configuration
        storage: Local storage configuration
        session: Session timer configuration
        http: Status endpoint configuration
        observability: Logging configuration
    """

    remote_backend: RemoteBackend = RemoteBackend.MEMORY
    outbound: OutboundConfig = field(default_factory=OutboundConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("POSSYNC_REMOTE_BACKEND", "memory").lower()
        try:
            remote_backend = RemoteBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid POSSYNC_REMOTE_BACKEND '{backend_str}'. Must be one of: memory"
            )

        config = cls(
            remote_backend=remote_backend,
            outbound=OutboundConfig.from_env(),
            feed=FeedConfig.from_env(),
            storage=StorageConfig.from_env(),
            session=SessionConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.outbound.batch_size < 1:
            raise ValueError("POSSYNC_BATCH_SIZE must be at least 1")
        if self.outbound.batch_spacing_seconds < 0:
            raise ValueError("POSSYNC_BATCH_SPACING_SECONDS must not be negative")
        if self.outbound.debounce_seconds < 0:
            raise ValueError("POSSYNC_DEBOUNCE_SECONDS must not be negative")
        if self.outbound.cooldown_seconds <= 0:
            raise ValueError("POSSYNC_COOLDOWN_SECONDS must be positive")
        if not 1 <= self.feed.sales_window <= 500:
            raise ValueError("POSSYNC_SALES_WINDOW must be between 1 and 500")
        if self.feed.sales_history_limit < 1:
            raise ValueError("POSSYNC_SALES_HISTORY_LIMIT must be at least 1")
        if not self.storage.key_prefix:
            raise ValueError("POSSYNC_KEY_PREFIX must not be empty")
        if not self.session.tenant_id:
            raise ValueError("POSSYNC_TENANT_ID must not be empty")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Sync configuration loaded",
            extra={
                "remote_backend": self.remote_backend.value,
                "batch_size": self.outbound.batch_size,
                "batch_spacing_seconds": self.outbound.batch_spacing_seconds,
                "debounce_seconds": self.outbound.debounce_seconds,
                "cooldown_seconds": self.outbound.cooldown_seconds,
                "sales_window": self.feed.sales_window,
                "tenant_id": self.session.tenant_id,
                "db_path": self.storage.db_path,
                "http_enabled": self.http.enabled,
                "log_level": self.observability.log_level,
            },
        )
