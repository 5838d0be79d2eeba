"""figbridge — MCP Protocol Handler

JSON-RPC 2.0 over newline-delimited stdio:
- initialize / notifications/initialized handshake (lenient: clients that
  skip initialize are auto-initialized)
- tools/list, tools/call, ping
- Request size limit; batch requests rejected
- Tool failures are successful responses with isError=true; JSON-RPC error
  objects are reserved for protocol-level failures

Each request line is served in its own task, so a long figma_execute does
not hold up ping or other tool calls. Responses may therefore arrive out of
order; clients match them by id.

stdout carries protocol frames only. Logs go to stderr.
"""

from __future__ import annotations
import asyncio
import json
import sys
import logging
from typing import Optional, Any, Set

from core.dispatcher import ToolDispatcher
from core.tool_registry import ToolRegistry

logger = logging.getLogger("figbridge.mcp_server")

MAX_REQUEST_LINE_BYTES = 10 * 1024 * 1024  # 10 MB max per JSON-RPC line
JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Custom error codes (MCP range)
REQUEST_TOO_LARGE = -32003


def _sanitize_log(s: Any) -> str:
    if not isinstance(s, str):
        return "invalid"
    return s.replace('\n', '\\n').replace('\r', '\\r').replace('\x00', '')


class FigBridgeMCPServer:
    def __init__(
        self,
        dispatcher: ToolDispatcher,
        registry: ToolRegistry,
        server_name: str = "figbridge",
        server_version: str = "0.1.0",
    ):
        self.dispatcher = dispatcher
        self.registry = registry
        self.server_name = server_name
        self.server_version = server_version
        self._initialized = False
        self._init_confirmed = False  # True after notifications/initialized received
        self._shutting_down = False
        self._in_flight: Set[asyncio.Task] = set()

    def _make_response(self, req_id: Any, result: Any) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "result": result}

    def _make_error(self, req_id: Any, code: int, message: str, data: Any = None) -> dict:
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "error": error}

    def handle_initialize(self, params: dict) -> dict:
        if self._initialized:
            logger.warning("Re-initialization attempt rejected")
            raise ValueError("Already initialized")

        self._initialized = True
        client_info = params.get("clientInfo", {})
        if not isinstance(client_info, dict):
            client_info = {}
        logger.info(
            "MCP initialize: client=%s version=%s",
            _sanitize_log(client_info.get("name", "unknown")),
            _sanitize_log(client_info.get("version", "unknown")),
        )
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {
                "tools": {"listChanged": False},
            },
            "serverInfo": {
                "name": self.server_name,
                "version": self.server_version,
            },
        }

    def handle_list_tools(self) -> dict:
        return {"tools": self.registry.list_tools()}

    async def handle_call_tool(self, params: dict, req_id: Any) -> dict:
        tool_name = params.get("name")
        arguments = params.get("arguments", {})
        if arguments is None:
            arguments = {}

        if not tool_name or not isinstance(tool_name, str):
            return {"content": [{"type": "text", "text": "Missing tool name"}], "isError": True}

        if not isinstance(arguments, dict):
            return {"content": [{"type": "text", "text": "arguments must be an object"}], "isError": True}

        request_id = str(req_id) if req_id is not None else None
        return await self.dispatcher.handle_mcp_call(tool_name, arguments, request_id)

    async def handle_line(self, line_bytes: bytes) -> Optional[dict]:
        """Process one raw frame. Returns the response, or None for notifications."""
        if len(line_bytes) > MAX_REQUEST_LINE_BYTES:
            logger.warning("Request too large: %d bytes", len(line_bytes))
            return self._make_error(None, REQUEST_TOO_LARGE,
                                    f"Request exceeds {MAX_REQUEST_LINE_BYTES} byte limit")

        line = line_bytes.decode("utf-8", errors="replace")
        if not line.strip():
            return None
        logger.debug("MCP RECV: %s", line.strip()[:200])

        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("JSON parse error: %s", e)
            return self._make_error(None, PARSE_ERROR, "Invalid JSON")
        except RecursionError:
            logger.warning("JSON recursion limit exceeded (deeply nested payload)")
            return self._make_error(None, PARSE_ERROR, "JSON structure too deep")

        if isinstance(request, list):
            return self._make_error(None, INVALID_REQUEST,
                                    "Batch requests are not supported. Send requests individually.")
        if not isinstance(request, dict):
            return self._make_error(None, INVALID_REQUEST, "Invalid request (not an object)")

        return await self.handle_request(request)

    async def handle_request(self, request: dict) -> Optional[dict]:
        if request.get("jsonrpc") != JSONRPC_VERSION:
            return self._make_error(request.get("id"), INVALID_REQUEST, "Invalid jsonrpc version")

        method = request.get("method")
        if not isinstance(method, str) or not method:
            return self._make_error(request.get("id"), INVALID_REQUEST, "Invalid method")

        req_id = request.get("id", None)
        if "id" in request and isinstance(req_id, (dict, list, bool)):
            return self._make_error(None, INVALID_REQUEST, "Invalid id type")

        params = request.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return self._make_error(req_id, INVALID_PARAMS, "params must be an object")

        is_notification = "id" not in request

        if method == "notifications/initialized":
            if self._initialized:
                self._init_confirmed = True
                logger.info("Client initialization confirmed")
            return None
        if method not in ("initialize", "ping"):
            if not self._initialized:
                logger.info("Auto-initializing (client skipped initialize handshake)")
                self._initialized = True
                self._init_confirmed = True
            elif not self._init_confirmed:
                self._init_confirmed = True
                logger.info("Client implicitly confirmed initialization")

        try:
            if method == "initialize":
                response = self._make_response(req_id, self.handle_initialize(params))
            elif method == "tools/list":
                response = self._make_response(req_id, self.handle_list_tools())
            elif method == "tools/call":
                result = await self.handle_call_tool(params, req_id)
                response = self._make_response(req_id, result)
            elif method == "ping":
                response = self._make_response(req_id, {})
            else:
                response = self._make_error(req_id, METHOD_NOT_FOUND,
                                            f"Method not found: {_sanitize_log(method)[:200]}")
        except ValueError as e:
            response = self._make_error(req_id, INVALID_REQUEST, str(e))
        except Exception as e:
            logger.error("Handler error for method=%s: %s", method, e, exc_info=True)
            response = self._make_error(req_id, INTERNAL_ERROR, "Internal server error")

        return None if is_notification else response

    async def _serve_line(self, line_bytes: bytes) -> None:
        response = await self.handle_line(line_bytes)
        if response is not None:
            self._write_response(response)

    async def run_stdio(self) -> None:
        """Main stdio loop. Ends on EOF, broken pipe, or request_shutdown()."""
        loop = asyncio.get_running_loop()
        logger.info("%s v%s starting stdio transport", self.server_name, self.server_version)

        def _readline_limited():
            """Read at most MAX_REQUEST_LINE_BYTES + 1 to detect oversize."""
            return sys.stdin.buffer.readline(MAX_REQUEST_LINE_BYTES + 1)

        def _drain_line():
            """Drain remainder of an oversized line to keep stream aligned."""
            while True:
                chunk = sys.stdin.buffer.readline(1024 * 1024)
                if not chunk or chunk.endswith(b"\n"):
                    break

        try:
            while not self._shutting_down:
                try:
                    line_bytes = await loop.run_in_executor(None, _readline_limited)
                except (EOFError, KeyboardInterrupt):
                    break

                if not line_bytes:
                    break

                if len(line_bytes) > MAX_REQUEST_LINE_BYTES:
                    logger.warning("Request too large: %d bytes", len(line_bytes))
                    if not line_bytes.endswith(b"\n"):
                        await loop.run_in_executor(None, _drain_line)
                    self._write_response(
                        self._make_error(None, REQUEST_TOO_LARGE,
                                         f"Request exceeds {MAX_REQUEST_LINE_BYTES} byte limit")
                    )
                    continue

                task = loop.create_task(self._serve_line(line_bytes))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

            # EOF: let requests already read finish and answer
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
        finally:
            for task in list(self._in_flight):
                task.cancel()

        logger.info("MCP server stdio loop ended")

    def _write_response(self, response: dict) -> None:
        try:
            sys.stdout.write(json.dumps(response) + "\n")
            sys.stdout.flush()
        except TypeError as e:
            logger.error("JSON serialization failed: %s", e)
            fallback = self._make_error(None, INTERNAL_ERROR, "Response serialization failed")
            sys.stdout.write(json.dumps(fallback) + "\n")
            sys.stdout.flush()
        except (BrokenPipeError, OSError) as e:
            logger.error("Failed to write response: %s", e)
            self._shutting_down = True

    def request_shutdown(self) -> None:
        self._shutting_down = True
        logger.info("Shutdown requested")

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down
