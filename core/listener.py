"""figbridge — Transport Listener

WebSocket endpoint the Figma plugin connects to. The plugin runs inside
Figma's sandbox and can only reach us through a socket it opens itself, so
this side listens and the plugin dials in.

Session policy (configurable):
- last-connected-wins (default): a new connection supersedes the current
  one; requests pending on the old session fail with ConnectionLostError.
- reject-new: while a live session exists, newcomers are closed with 1013.

Malformed frames are logged and dropped; they never reach a caller since
they cannot be correlated to an id.
"""

from __future__ import annotations

import errno
import logging
from typing import Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from core.connection import ConnectionHandle, ConnectionSlot
from core.correlation import CorrelationTable
from core.errors import ConnectionLostError, MalformedMessageError
from core.protocol import MSG_HANDSHAKE, MSG_RESPONSE, decode_message, sanitize
from models.models import BridgeConfig, PluginInfo, ReplacePolicy

logger = logging.getLogger("figbridge.listener")

CLOSE_TRY_AGAIN_LATER = 1013


class TransportListener:
    def __init__(
        self,
        config: BridgeConfig,
        slot: ConnectionSlot,
        table: CorrelationTable,
    ):
        self.config = config
        self.slot = slot
        self.table = table
        self._server: Optional[Server] = None

    async def start(self) -> None:
        """Bind the listening socket. Raises OSError if the port is taken."""
        if self._server is not None:
            logger.info("Listener already started on port %d", self.port)
            return
        try:
            self._server = await serve(
                self._handle_connection,
                self.config.host,
                self.config.port,
                max_size=self.config.max_message_bytes,
                ping_interval=self.config.ping_interval,
                compression=None,
            )
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.error(
                    "Port %d is already in use. Stop the process using it or "
                    "set FIGMA_WS_PORT to a different port (e.g. FIGMA_WS_PORT=8081).",
                    self.config.port,
                )
            raise
        logger.info(
            "Figma bridge listening on ws://%s:%d, waiting for plugin connection",
            self.config.host, self.port,
        )

    async def stop(self) -> None:
        server = self._server
        if server is None:
            return
        self._server = None
        logger.info("Stopping listener...")
        server.close()
        await server.wait_closed()
        logger.info("Listener stopped")

    @property
    def port(self) -> int:
        """Actual bound port (differs from config when config.port == 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self.config.port

    # --- Per-connection handling ---

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        if (self.config.replace_policy is ReplacePolicy.REJECT_NEW
                and self.slot.current() is not None):
            logger.warning(
                "Rejecting plugin connection from %s: a session is already active",
                websocket.remote_address,
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "another plugin session is active")
            return

        handle = self.slot.attach(websocket)
        try:
            async for raw in websocket:
                self._on_message(handle, raw)
        except ConnectionClosed as e:
            logger.warning(
                "Plugin connection gen %d closed abnormally: %s",
                handle.generation, sanitize(e),
            )
        except Exception as e:
            # Transport errors are handled exactly like a close
            logger.error(
                "Plugin connection gen %d error: %s",
                handle.generation, sanitize(e), exc_info=True,
            )
        finally:
            self._on_close(handle)

    def _on_message(self, handle: ConnectionHandle, raw) -> None:
        if not self.slot.is_current(handle):
            logger.warning(
                "Dropping message from superseded connection gen %d",
                handle.generation,
            )
            return

        try:
            msg = decode_message(raw)
        except MalformedMessageError as e:
            logger.warning("Malformed message from plugin dropped: %s", e)
            return

        if msg.kind == MSG_RESPONSE:
            if self.table.settle(msg.request_id, msg.outcome, generation=handle.generation):
                logger.debug("Request %s settled (%s)",
                             msg.request_id, msg.outcome.kind.value)
            else:
                logger.warning("Reply for unknown or expired request %s dropped",
                               sanitize(msg.request_id, 128))
        elif msg.kind == MSG_HANDSHAKE:
            handle.plugin_info = PluginInfo(source=msg.source, version=msg.version)
            logger.info(
                "Plugin handshake on gen %d: source=%s version=%s",
                handle.generation, msg.source, msg.version or "?",
            )
        else:
            logger.debug("Ignoring plugin message of type %s", msg.type_name)

    def _on_close(self, handle: ConnectionHandle) -> None:
        if self.slot.detach(handle):
            logger.warning("Figma plugin disconnected, waiting for reconnection")
        self.table.fail_all(
            ConnectionLostError("connection closed: Figma plugin disconnected"),
            generation=handle.generation,
        )
