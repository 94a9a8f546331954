"""Tracks the single WebSocket connection to the generation host."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from .errors import HostUnavailableError

logger = logging.getLogger(__name__)


class HostSocket(Protocol):
    """The part of a WebSocket the bridge uses (starlette's WebSocket fits)."""

    async def send_json(self, data: Any, mode: str = "text") -> None: ...


LossListener = Callable[[], Awaitable[None]]


class HostConnection:
    """Exactly one generation host connection at a time.

    A newer connection replaces the tracked one; loss of a connection that
    is no longer tracked is ignored.
    """

    def __init__(self) -> None:
        self._socket: HostSocket | None = None
        self._listeners: list[LossListener] = []

    @property
    def is_connected(self) -> bool:
        return self._socket is not None

    def on_lost(self, listener: LossListener) -> None:
        """Register a coroutine to run (in registration order) on loss."""
        self._listeners.append(listener)

    def attach(self, socket: HostSocket) -> None:
        if self._socket is not None and self._socket is not socket:
            logger.warning("New generation host connection replaces the existing one")
        self._socket = socket
        logger.info("Generation host connected")

    async def send(self, payload: dict[str, Any]) -> None:
        socket = self._socket
        if socket is None:
            raise HostUnavailableError("Generation host is not connected")
        try:
            await socket.send_json(payload)
        except Exception as exc:
            raise HostUnavailableError(
                f"Failed to send to generation host: {exc}"
            ) from exc

    async def handle_loss(self, socket: HostSocket) -> bool:
        """Clear the tracked socket and run the loss listeners.

        Returns False (and does nothing) for a stale socket.
        """
        if socket is not self._socket:
            logger.debug("Ignoring loss of a stale host connection")
            return False
        self._socket = None
        logger.warning("Generation host disconnected")
        for listener in self._listeners:
            try:
                await listener()
            except Exception:
                logger.exception("Connection loss listener failed")
        return True
