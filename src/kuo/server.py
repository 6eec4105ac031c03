"""Liveness endpoint.

Serves ``GET /health`` and ``GET /api/health``, both answering ``200 OK``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from aiohttp import web

if TYPE_CHECKING:
    from kuo.config import ServerConfig

logger = structlog.get_logger(__name__)

HEALTH_PATHS = ("/health", "/api/health")


async def health(_request: web.Request) -> web.Response:
    """Liveness probe handler."""
    return web.Response(text="OK")


def create_app() -> web.Application:
    """Build the aiohttp application with the health routes."""
    app = web.Application()
    app.add_routes([web.get(path, health) for path in HEALTH_PATHS])
    return app


async def serve(config: ServerConfig, stop: asyncio.Event | None = None) -> None:
    """Serve the health endpoint until cancelled or ``stop`` is set.

    Args:
        config: Bind address.
        stop: Optional event ending the server.
    """
    runner = web.AppRunner(create_app(), access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info("health_server_started", host=config.host, port=config.port)
    try:
        if stop is None:
            await asyncio.Event().wait()
        else:
            await stop.wait()
    finally:
        await runner.cleanup()
        logger.info("health_server_stopped")


__all__ = ["HEALTH_PATHS", "create_app", "health", "serve"]
