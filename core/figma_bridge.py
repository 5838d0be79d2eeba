"""figbridge — Figma Bridge (Dispatcher + Shutdown Supervisor)

Public entry point used by the MCP tool layer:

    bridge = FigmaBridge(BridgeConfig.from_env())
    await bridge.start()
    result = await bridge.execute("return figma.currentPage.name")
    ...
    await bridge.shutdown()

Every operation takes the same path: fresh id → envelope → connection
check → register (with timeout) → send → await settlement. No ordering is
guaranteed between concurrent requests; replies are matched by id only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, Set

from core.connection import CLOSE_GOING_AWAY, CLOSE_SUPERSEDED, ConnectionHandle, ConnectionSlot
from core.correlation import CorrelationTable
from core.errors import (
    ConnectionLostError,
    NotConnectedError,
    RemoteError,
    SendFailureError,
)
from core.listener import TransportListener
from core.protocol import encode_request
from models.models import (
    BridgeConfig,
    BridgeStatus,
    Outcome,
    RequestKind,
    validate_positive_seconds,
)

logger = logging.getLogger("figbridge.bridge")

SCRIPT_PREVIEW_CHARS = 100


class FigmaBridge:
    def __init__(self, config: Optional[BridgeConfig] = None):
        self.config = config or BridgeConfig()
        self._table = CorrelationTable()
        self._slot = ConnectionSlot(on_replaced=self._on_connection_replaced)
        self._listener = TransportListener(self.config, self._slot, self._table)
        self._request_counter = 0
        self._started_at = time.monotonic()
        self._shut_down = False
        self._background: Set[asyncio.Task] = set()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind the plugin endpoint. Bind failure propagates (fatal at startup)."""
        await self._listener.start()

    async def shutdown(self) -> None:
        """Fail every pending request, release the connection, stop listening.

        Safe to call more than once.
        """
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("Shutting down Figma bridge (%d pending)", self._table.pending_count)

        self._table.fail_all(ConnectionLostError("bridge shutting down"))
        handle = self._slot.release()
        if handle is not None:
            await handle.close(CLOSE_GOING_AWAY, "bridge shutting down")
        await self._listener.stop()

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Figma bridge stopped")

    async def __aenter__(self) -> "FigmaBridge":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def port(self) -> int:
        return self._listener.port

    # --- Public API ---

    async def execute(self, script: str, timeout: Optional[float] = None) -> Any:
        """Run a script in the plugin and return whatever it returns."""
        if not isinstance(script, str):
            raise TypeError(f"script must be a string, got {type(script).__name__}")
        return await self._request(
            RequestKind.EXECUTE,
            self._deadline(timeout, self.config.request_timeout),
            script=script,
        )

    async def get_context(self, timeout: Optional[float] = None) -> dict:
        """Document, page, selection, variables and viewport of the open file."""
        context = await self._request(
            RequestKind.GET_CONTEXT,
            self._deadline(timeout, self.config.context_timeout),
        )
        if not isinstance(context, dict):
            raise RemoteError(
                f"Plugin returned a {type(context).__name__} context, expected an object"
            )
        return context

    async def notify(self, message: str, duration_ms: Optional[int] = None) -> None:
        """Show a toast in Figma. Round-trips so delivery failures are visible."""
        if duration_ms is None:
            duration_ms = self.config.notify_duration_ms
        await self._request(
            RequestKind.NOTIFY,
            self.config.request_timeout,
            message=str(message),
            timeout=int(duration_ms),
        )
        logger.info("Sent notification: %r", str(message)[:SCRIPT_PREVIEW_CHARS])

    def is_connected(self) -> bool:
        return self._slot.current() is not None

    def get_status(self) -> BridgeStatus:
        handle = self._slot.current()
        return BridgeStatus(
            connected=handle is not None,
            pending_count=self._table.pending_count,
            total_requests=self._request_counter,
            uptime_ms=int((time.monotonic() - self._started_at) * 1000),
            plugin=handle.plugin_info if handle is not None else None,
        )

    # --- Internals ---

    @staticmethod
    def _deadline(timeout: Optional[float], default: float) -> float:
        """Per-call timeout, or the configured default. Raises ValueError if <= 0."""
        if timeout is None:
            return default
        return validate_positive_seconds("timeout", timeout)

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"req-{self._request_counter}-{int(time.time() * 1000)}"

    async def _request(self, kind: RequestKind, deadline: float, **payload: Any) -> Any:
        if self._shut_down:
            raise NotConnectedError("Figma bridge is shut down")

        request_id = self._next_request_id()
        envelope = encode_request(kind, request_id, **payload)

        handle = self._slot.current()
        if handle is None:
            logger.warning("Request %s (%s) rejected: plugin not connected",
                           request_id, kind.value)
            raise NotConnectedError()

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._table.register(request_id, future, deadline, handle.generation, kind)

        if kind is RequestKind.EXECUTE:
            logger.info("Executing script (request: %s): %r",
                        request_id, payload["script"][:SCRIPT_PREVIEW_CHARS])
        else:
            logger.debug("Sending %s (request: %s)", kind.value, request_id)

        try:
            if not self._slot.is_current(handle):
                raise SendFailureError(
                    f"Connection generation {handle.generation} was replaced before send"
                )
            await handle.send(envelope)
        except SendFailureError as e:
            logger.error("Request %s: %s", request_id, e)
            self._table.settle(request_id, Outcome.failure(e))

        return await future

    def _on_connection_replaced(self, old: ConnectionHandle) -> None:
        self._table.fail_all(
            ConnectionLostError("connection replaced by a newer plugin session"),
            generation=old.generation,
        )
        task = asyncio.get_running_loop().create_task(
            old.close(CLOSE_SUPERSEDED, "superseded by newer connection"),
            name=f"close-plugin-gen-{old.generation}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
