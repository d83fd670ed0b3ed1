"""
possync - Main entry point.

This module starts the sync engine with all components:
- Local snapshot store (SQLite key-value file)
- Remote store connection
- Sync coordinator for the configured tenant
- Status HTTP server (optional)

Usage:
    python -m possync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The tenant is served from the local snapshot even if the remote is down
    - Graceful shutdown persists the tenant before exiting

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .api import StatusServer
from .config import SyncConfig
from .coordinator import SyncCoordinator
from .local import LocalStore, SqliteKeyValueStore
from .models import Tenant
from .remote import create_remote_store

logger = logging.getLogger(__name__)


def setup_logging(config: SyncConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class App:
    """possync process orchestrator.

    Attributes:
        config: Engine configuration
        coordinator: Sync coordinator for the configured tenant
        status_server: Status HTTP server (None when disabled)

    Example:
        >>> app = App()
        >>> await app.start()  # runs until request_shutdown()
        >>> await app.stop()
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        self.config = config or SyncConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self.coordinator: SyncCoordinator | None = None
        self.status_server: StatusServer | None = None

    async def start(self) -> None:
        """Start every component and wait for the shutdown signal."""
        if self._running:
            logger.warning("App already running")
            return

        logger.info("Starting possync")
        self.config.log_config()

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)
            kv = SqliteKeyValueStore(
                self.config.storage.db_path,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            local_store = LocalStore(kv, key_prefix=self.config.storage.key_prefix)
            remote = create_remote_store(self.config)

            self.coordinator = SyncCoordinator(
                remote,
                local_store,
                self.config,
                on_lock=lambda: logger.info("Terminal locked after inactivity"),
                notify=lambda message: logger.warning(f"Sync alert: {message}"),
            )
            tenant = Tenant(
                id=self.config.session.tenant_id,
                name=self.config.session.tenant_name,
            )
            await self.coordinator.start(tenant)

            if self.config.http.enabled:
                self.status_server = StatusServer(self.coordinator, self.config.http)
                await self.status_server.start()

            self._running = True
            logger.info("possync started successfully", extra={"tenant_id": tenant.id})

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop gracefully; the tenant is persisted by the coordinator."""
        if not self._running:
            return

        logger.info("Stopping possync")
        if self.status_server is not None:
            await self.status_server.stop()
        if self.coordinator is not None:
            await self.coordinator.stop()

        self._running = False
        logger.info("possync stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = SyncConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = App(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(app.stop())
        loop.close()


if __name__ == "__main__":
    main()
