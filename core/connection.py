"""figbridge — Connection Slot

Holds the single authoritative plugin connection. Each attach() bumps a
generation counter; pending requests remember the generation they were
sent on, so a late reply on a superseded socket can never settle a request
issued against a newer session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from core.errors import NotConnectedError, SendFailureError
from models.models import PluginInfo

logger = logging.getLogger("figbridge.connection")

CLOSE_SUPERSEDED = 1000
CLOSE_GOING_AWAY = 1001


class ConnectionHandle:
    """One accepted plugin WebSocket plus its generation number."""

    def __init__(self, websocket: Any, generation: int):
        self.websocket = websocket
        self.generation = generation
        self.plugin_info = PluginInfo()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def remote_address(self) -> str:
        addr = getattr(self.websocket, "remote_address", None)
        if isinstance(addr, (tuple, list)) and len(addr) >= 2:
            return f"{addr[0]}:{addr[1]}"
        return "unknown"

    def mark_closed(self) -> None:
        self._open = False

    async def send(self, text: str) -> None:
        if not self._open:
            raise SendFailureError(
                f"Connection generation {self.generation} is closed"
            )
        try:
            await self.websocket.send(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SendFailureError(f"Send failed: {e}") from e

    async def close(self, code: int = CLOSE_SUPERSEDED, reason: str = "") -> None:
        self._open = False
        try:
            await self.websocket.close(code, reason)
        except Exception as e:
            logger.debug("Close of connection gen %d failed: %s", self.generation, e)

    def __repr__(self) -> str:
        state = "open" if self._open else "closed"
        return f"<ConnectionHandle gen={self.generation} {state} {self.remote_address}>"


class ConnectionSlot:
    """At most one current ConnectionHandle.

    on_replaced(old_handle) runs synchronously inside attach(), after the
    old handle is marked closed and before the new one becomes visible.
    """

    def __init__(self, on_replaced: Optional[Callable[[ConnectionHandle], None]] = None):
        self._current: Optional[ConnectionHandle] = None
        self._generation = 0
        self._on_replaced = on_replaced

    def attach(self, websocket: Any) -> ConnectionHandle:
        old = self._current
        if old is not None:
            old.mark_closed()
            self._current = None
            logger.warning(
                "Plugin connection gen %d superseded by a new connection",
                old.generation,
            )
            if self._on_replaced is not None:
                self._on_replaced(old)

        self._generation += 1
        handle = ConnectionHandle(websocket, self._generation)
        self._current = handle
        logger.info("Plugin connection gen %d attached from %s",
                    handle.generation, handle.remote_address)
        return handle

    def current(self) -> Optional[ConnectionHandle]:
        handle = self._current
        if handle is None or not handle.is_open:
            return None
        return handle

    def require(self) -> ConnectionHandle:
        handle = self.current()
        if handle is None:
            raise NotConnectedError()
        return handle

    def is_current(self, handle: ConnectionHandle) -> bool:
        return self._current is handle and handle.is_open

    def detach(self, handle: ConnectionHandle) -> bool:
        """Clear the slot if handle is still current. Idempotent."""
        handle.mark_closed()
        if self._current is not handle:
            return False
        self._current = None
        logger.info("Plugin connection gen %d detached", handle.generation)
        return True

    def release(self) -> Optional[ConnectionHandle]:
        """Empty the slot for shutdown. Returns the handle that was current."""
        handle = self._current
        self._current = None
        if handle is not None:
            handle.mark_closed()
        return handle

    @property
    def generation(self) -> int:
        return self._generation
