"""figbridge — HTTP Health Endpoint

Optional side-channel for humans and supervisors (enabled with
--health-port). stdout belongs to MCP, so this is the only way to ask a
running bridge whether the plugin is connected without going through an
agent.

    GET /health  → {"status": "ok", "server", "version", "figmaConnected"}
    GET /status  → BridgeStatus.to_dict()
"""

from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from core.figma_bridge import FigmaBridge

logger = logging.getLogger("figbridge.health")

BRIDGE_KEY = web.AppKey("bridge", FigmaBridge)
NAME_KEY = web.AppKey("server_name", str)
VERSION_KEY = web.AppKey("server_version", str)


async def _health(request: web.Request) -> web.Response:
    bridge = request.app[BRIDGE_KEY]
    return web.json_response({
        "status": "ok",
        "server": request.app[NAME_KEY],
        "version": request.app[VERSION_KEY],
        "figmaConnected": bridge.is_connected(),
    })


async def _status(request: web.Request) -> web.Response:
    bridge = request.app[BRIDGE_KEY]
    return web.json_response(bridge.get_status().to_dict())


def create_health_app(
    bridge: FigmaBridge,
    server_name: str = "figbridge",
    server_version: str = "0.1.0",
) -> web.Application:
    app = web.Application()
    app[BRIDGE_KEY] = bridge
    app[NAME_KEY] = server_name
    app[VERSION_KEY] = server_version
    app.router.add_get("/health", _health)
    app.router.add_get("/status", _status)
    return app


class HealthServer:
    def __init__(self, bridge: FigmaBridge, host: str, port: int, **app_kwargs):
        self._app = create_health_app(bridge, **app_kwargs)
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Health endpoint on http://%s:%d/health", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
