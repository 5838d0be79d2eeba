"""figbridge — Tool Dispatcher

Pipeline for every MCP tools/call: lookup → validate → execute (with the
tool's timeout) → format result.

Bridge failures (not connected, remote error, timeout, ...) are returned to
the client verbatim since they are short and meant for the agent to act on.
Anything else is logged in full and reported generically.
"""

from __future__ import annotations
import asyncio
import inspect
import json
import logging
import uuid
from typing import Optional, Any

from core.errors import BridgeError, RemoteError
from core.protocol import sanitize
from core.tool_registry import ToolRegistry
from models.models import Tool

logger = logging.getLogger("figbridge.dispatcher")

MAX_RESULT_SIZE = 1_000_000  # 1MB max result returned to client
MAX_LOGGED_ERROR_CHARS = 2000


class ToolDispatcher:
    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def handle_mcp_call(
        self,
        tool_name: str,
        params: dict,
        request_id: Optional[str] = None,
    ) -> dict:
        if request_id is None:
            request_id = str(uuid.uuid4())

        tool = self.registry.get(tool_name)
        if not tool:
            logger.warning("[%s] Tool not found: %s", request_id, sanitize(tool_name))
            return self._error_response(f"Tool '{tool_name}' not found")

        params = params or {}

        validation_error = self._validate_params(tool, params)
        if validation_error:
            logger.warning("[%s] Validation failed for %s: %s", request_id, tool_name, validation_error)
            return self._error_response(f"Invalid parameters: {validation_error}")

        try:
            logger.debug("[%s] Calling %s", request_id, tool_name)
            result = tool.handler(**params)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=tool.max_execution_seconds)
            return {"content": [{"type": "text", "text": self._format_result(result, request_id)}]}

        except BridgeError as e:
            logger.warning("[%s] %s failed: %s: %s", request_id, tool_name,
                           type(e).__name__, sanitize(e, MAX_LOGGED_ERROR_CHARS))
            if isinstance(e, RemoteError) and e.stack:
                logger.debug("[%s] Remote stack:\n%s", request_id, e.stack)
            return self._error_response(str(e))

        except asyncio.TimeoutError:
            logger.error("[%s] Timeout: %s exceeded %ss", request_id, tool_name, tool.max_execution_seconds)
            return self._error_response("Tool execution timed out.")

        except Exception as e:
            logger.error("[%s] Tool execution error: %s: %s", request_id, tool_name, e, exc_info=True)
            return self._error_response("Internal tool error. Check server logs.")

    @staticmethod
    def _format_result(result: Any, request_id: str) -> str:
        if result is None:
            text = "null"
        elif isinstance(result, str):
            text = result
        else:
            try:
                text = json.dumps(result, indent=2, default=str)
            except (TypeError, ValueError, RecursionError):
                text = "[unserializable result]"
        if len(text) > MAX_RESULT_SIZE:
            logger.warning("[%s] Result truncated (%d chars)", request_id, len(text))
            text = text[:MAX_RESULT_SIZE] + f"\n... [TRUNCATED at {MAX_RESULT_SIZE} chars]"
        return text

    def _validate_params(self, tool: Tool, params: dict) -> Optional[str]:
        """Check params against the tool's schema: required, unknown, basic types."""
        schema = tool.parameters
        if not schema:
            if params:
                return "Tool accepts no parameters"
            return None

        unknown = set(params.keys()) - set(schema.keys())
        if unknown:
            return f"Unknown parameters: {', '.join(sorted(unknown))}"

        for param_name, param_def in schema.items():
            if param_name not in params:
                if isinstance(param_def, dict) and param_def.get("optional", False):
                    continue
                return f"Missing required parameter: '{param_name}'"

            if isinstance(param_def, dict) and "type" in param_def:
                expected_type = param_def["type"]
                value = params[param_name]
                if not self._check_type(value, expected_type):
                    return f"Parameter '{param_name}' expected type '{expected_type}', got '{type(value).__name__}'"

        return None

    @staticmethod
    def _check_type(value: Any, expected: str) -> bool:
        if expected == "integer":
            return isinstance(value, int) and not isinstance(value, bool)
        if expected == "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool)

        type_map = {
            "string": str,
            "boolean": bool,
            "array": list,
            "object": dict,
        }
        expected_types = type_map.get(expected)
        if expected_types is None:
            return True
        return isinstance(value, expected_types)

    @staticmethod
    def _error_response(message: str) -> dict:
        return {"content": [{"type": "text", "text": message}], "isError": True}
