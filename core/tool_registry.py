"""figbridge — Tool Registry

Name → Tool mapping served to MCP clients via tools/list. Names are unique;
a second registration under the same name is an error, never an overwrite.
"""

from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional

from models.models import Tool

logger = logging.getLogger("figbridge.tool_registry")


class ToolRegistrationError(Exception):
    pass


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ToolRegistrationError(
                f"Tool '{tool.name}' already registered by module "
                f"'{self._tools[tool.name].module_id}'. "
                f"Module '{tool.module_id}' attempted duplicate registration."
            )
        self._tools[tool.name] = tool
        logger.info("Tool registered: name=%s module=%s", tool.name, tool.module_id)

    def register_all(self, tools: List[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, tool_name: str) -> Optional[Tool]:
        return self._tools.get(tool_name)

    def list_tools(self) -> List[Dict[str, Any]]:
        result = []
        for tool in self._tools.values():
            params = tool.parameters
            try:
                json.dumps(params)
            except (TypeError, ValueError):
                logger.warning("Tool %r has non-serializable parameters schema, replacing with empty", tool.name)
                params = {}
            # Every declared param is required unless marked optional
            required = [
                pname for pname, pdef in params.items()
                if isinstance(pdef, dict) and not pdef.get("optional", False)
            ]
            properties = {
                pname: {k: v for k, v in pdef.items() if k != "optional"}
                if isinstance(pdef, dict) else pdef
                for pname, pdef in params.items()
            }
            schema = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            result.append({
                "name": tool.name,
                "description": tool.description,
                "inputSchema": schema,
            })
        return result

    @property
    def tool_count(self) -> int:
        return len(self._tools)
