"""
Status HTTP surface for possync.

A small aiohttp application the POS front end polls for sync status. It
exposes no mutating endpoints; the sync engine has no push channel.

Endpoints:
    GET /v1/status  SyncStatus as JSON
    GET /v1/health  200 while a tenant is being served locally, 503 otherwise

Invariants:
    - Handlers only read coordinator state; they never await remote calls
    - JSON request/response format

How to change safely:
    - Add fields to SyncStatus rather than new endpoints
    - Version the path if the payload changes incompatibly
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from aiohttp import web

from ..config import HttpConfig
from ..coordinator import SyncCoordinator, SyncState

logger = logging.getLogger(__name__)

COORDINATOR_KEY: web.AppKey[SyncCoordinator] = web.AppKey("coordinator")


def create_status_app(coordinator: SyncCoordinator) -> web.Application:
    """Create the status application.

    Args:
        coordinator: Coordinator whose status is served

    Returns:
        aiohttp Application instance
    """
    app = web.Application()
    app[COORDINATOR_KEY] = coordinator

    app.router.add_get("/v1/status", handle_status)
    app.router.add_get("/v1/health", handle_health)

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            response = await handler(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        return response

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app.middlewares.append(error_middleware)
    app.middlewares.append(cors_middleware)
    return app


async def handle_status(request: web.Request) -> web.Response:
    """Handle GET /v1/status - Current sync status."""
    coordinator = request.app[COORDINATOR_KEY]
    status = coordinator.status()
    body = status.to_dict()
    if coordinator.queue is not None:
        body["queue"] = coordinator.queue.stats
    if coordinator.reconciler is not None:
        body["feeds"] = coordinator.reconciler.stats
    return web.json_response(body)


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Health check."""
    status = request.app[COORDINATOR_KEY].status()
    serving = status.state in (SyncState.LIVE, SyncState.RECONNECTING)
    body = {
        "healthy": serving,
        "state": status.state.value,
        "connected": status.state is SyncState.LIVE and not status.degraded,
        "tenant_id": status.tenant_id,
    }
    return web.json_response(body, status=200 if serving else 503)


class StatusServer:
    """Runs the status application on a TCP port.

    Example:
        >>> server = StatusServer(coordinator, HttpConfig(port=8081))
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(self, coordinator: SyncCoordinator, config: HttpConfig | None = None) -> None:
        self.coordinator = coordinator
        self.config = config or HttpConfig()
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        app = create_status_app(self.coordinator)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(f"Status server running on http://{self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Status server stopped")
