"""Bridge Server - FastAPI application

Architecture:
    BridgeServer
        /                - WebSocket endpoint for the generation host
        /api/health      - Health check
        /api/status      - Queue, connection and stream state

The generation host (the SillyTavern extension) connects to ``/`` and
exchanges JSON text frames with the bridge. Only one host connection is
tracked at a time; a newer connection replaces the older one.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect

from tavern_bridge.bridge import Bridge

logger = logging.getLogger(__name__)


class BridgeServer:
    """FastAPI application around one Bridge.

    Usage:
        server = BridgeServer(Bridge(load_config()))
        app = server.app  # for uvicorn
    """

    def __init__(self, bridge: Bridge, version: str = "0.1.0") -> None:
        self._bridge = bridge
        self._app = FastAPI(
            title="Tavern Bridge",
            version=version,
            docs_url="/api/docs",
            openapi_url="/api/openapi.json",
            lifespan=self._lifespan,
        )
        self._app.include_router(self._api_routes())
        self._app.add_api_websocket_route("/", self._host_socket)

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def bridge(self) -> Bridge:
        return self._bridge

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        await self._bridge.start()
        try:
            yield
        finally:
            await self._bridge.stop()

    def _api_routes(self) -> APIRouter:
        router = APIRouter(prefix="/api", tags=["bridge"])
        bridge = self._bridge

        @router.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "ok", "version": self._app.version}

        @router.get("/status")
        async def status() -> dict[str, Any]:
            """Host connection, queue depth, active job and open streams."""
            return bridge.status()

        return router

    async def _host_socket(self, websocket: WebSocket) -> None:
        """Serve one generation host connection until it closes."""
        await websocket.accept()
        logger.info("Generation host connected from %s", websocket.client)
        self._bridge.host_connected(websocket)
        try:
            while True:
                await self._bridge.host_frame(await websocket.receive_text())
        except WebSocketDisconnect as exc:
            logger.info("Generation host closed the connection (code %s)", exc.code)
        except Exception:
            logger.exception("Error on generation host connection")
        finally:
            await self._bridge.host_disconnected(websocket)


def create_server(bridge: Bridge) -> BridgeServer:
    """Factory function for creating the server."""
    from tavern_bridge.server.startup import package_version

    return BridgeServer(bridge, version=package_version())
