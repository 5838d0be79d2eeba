"""
figbridge Module: Figma Tools
Exposes the plugin bridge as MCP tools so any MCP client (Claude Desktop,
etc.) can run Plugin API scripts inside the open Figma file.
"""

import logging

from core.figma_bridge import FigmaBridge
from models.models import Tool

logger = logging.getLogger("figbridge.figma_tools")

MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 30 * 60 * 1000  # 30 minutes for long-running batch scripts
TOOL_TIMEOUT_SLACK = 5.0         # Bridge timeout must fire before the tool's


class FigmaToolsModule:
    module_id = "figma_tools"

    def __init__(self, bridge: FigmaBridge):
        self.bridge = bridge

    def register_tools(self):
        config = self.bridge.config
        return [
            Tool(
                name="figma_execute",
                description=(
                    "Execute JavaScript in the Figma plugin sandbox with full Plugin API "
                    "access (the `figma` global). The script body runs inside an async "
                    "function: use `return` to send a JSON-serializable value back and "
                    "`await` for async APIs. Requires the AI Agent Bridge plugin to be "
                    "running in Figma Desktop."
                ),
                parameters={
                    "script": {
                        "type": "string",
                        "description": "Plugin API script body, e.g. 'return figma.currentPage.name'"
                    },
                    "timeout_ms": {
                        "type": "integer",
                        "description": (
                            f"Deadline in milliseconds (default {int(config.request_timeout * 1000)}, "
                            f"max {MAX_TIMEOUT_MS})"
                        ),
                        "optional": True
                    }
                },
                handler=self.execute,
                module_id=self.module_id,
                max_execution_seconds=MAX_TIMEOUT_MS / 1000 + TOOL_TIMEOUT_SLACK,
            ),
            Tool(
                name="figma_get_context",
                description=(
                    "Get the current Figma file context: document and page names, the "
                    "selection (id, name, type, geometry), local variables, variable "
                    "collections and viewport."
                ),
                parameters={},
                handler=self.get_context,
                module_id=self.module_id,
                max_execution_seconds=config.context_timeout + TOOL_TIMEOUT_SLACK,
            ),
            Tool(
                name="figma_notify",
                description="Show a toast notification to the designer inside Figma.",
                parameters={
                    "message": {
                        "type": "string",
                        "description": "Text to display"
                    },
                    "duration_ms": {
                        "type": "integer",
                        "description": f"How long to show it (default {config.notify_duration_ms})",
                        "optional": True
                    }
                },
                handler=self.notify,
                module_id=self.module_id,
                max_execution_seconds=config.request_timeout + TOOL_TIMEOUT_SLACK,
            ),
            Tool(
                name="figma_bridge_status",
                description="Report whether the Figma plugin is connected, pending request count and uptime.",
                parameters={},
                handler=self.status,
                module_id=self.module_id,
            ),
        ]

    # --- Handlers ---

    async def execute(self, script: str, timeout_ms: int = None):
        timeout = None
        if timeout_ms is not None:
            clamped = max(MIN_TIMEOUT_MS, min(timeout_ms, MAX_TIMEOUT_MS))
            if clamped != timeout_ms:
                logger.debug("timeout_ms %d clamped to %d", timeout_ms, clamped)
            timeout = clamped / 1000
        return await self.bridge.execute(script, timeout=timeout)

    async def get_context(self):
        return await self.bridge.get_context()

    async def notify(self, message: str, duration_ms: int = None):
        if duration_ms is not None:
            duration_ms = max(0, duration_ms)
        await self.bridge.notify(message, duration_ms)
        return f"Notification shown: {message}"

    def status(self):
        return self.bridge.get_status().to_dict()
