import asyncio
import logging

import pytest

from core.dispatcher import MAX_RESULT_SIZE, ToolDispatcher
from core.errors import NotConnectedError, RemoteError, RequestTimeoutError
from core.tool_registry import ToolRegistry, ToolRegistrationError
from models.models import Tool


def _make_tool(parameters, handler=None, name="demo_tool", max_execution_seconds=30.0):
    return Tool(
        name=name,
        description="Demo",
        parameters=parameters,
        handler=handler or (lambda **_: "ok"),
        module_id="test",
        max_execution_seconds=max_execution_seconds,
    )


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def dispatcher(registry):
    return ToolDispatcher(registry)


def test_check_type_rejects_bool_for_integer_and_number():
    assert ToolDispatcher._check_type(5, "integer")
    assert not ToolDispatcher._check_type(True, "integer")

    assert ToolDispatcher._check_type(5, "number")
    assert ToolDispatcher._check_type(3.14, "number")
    assert not ToolDispatcher._check_type(True, "number")


def test_validate_params_optional_field_is_not_required(dispatcher):
    tool = _make_tool(
        {
            "script": {"type": "string"},
            "timeout_ms": {"type": "integer", "optional": True},
        }
    )
    assert dispatcher._validate_params(tool, {"script": "return 1"}) is None


def test_validate_params_rejects_unknown_param(dispatcher):
    tool = _make_tool({"script": {"type": "string"}})
    error = dispatcher._validate_params(tool, {"script": "return 1", "extra": 1})
    assert error == "Unknown parameters: extra"


def test_validate_params_rejects_missing_required(dispatcher):
    tool = _make_tool({"script": {"type": "string"}})
    error = dispatcher._validate_params(tool, {})
    assert error == "Missing required parameter: 'script'"


def test_validate_params_rejects_bool_for_integer(dispatcher):
    tool = _make_tool({"timeout_ms": {"type": "integer"}})
    error = dispatcher._validate_params(tool, {"timeout_ms": True})
    assert error == "Parameter 'timeout_ms' expected type 'integer', got 'bool'"


def test_validate_params_rejects_params_for_parameterless_tool(dispatcher):
    tool = _make_tool({})
    assert dispatcher._validate_params(tool, {"x": 1}) == "Tool accepts no parameters"


def test_unknown_tool(dispatcher):
    result = asyncio.run(dispatcher.handle_mcp_call("nope", {}))
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Tool 'nope' not found"


def test_sync_and_async_handlers(registry, dispatcher):
    async def async_handler(value):
        return {"value": value}

    registry.register(_make_tool({"value": {"type": "integer"}}, handler=async_handler, name="a"))
    registry.register(_make_tool({}, handler=lambda: None, name="b"))

    result = asyncio.run(dispatcher.handle_mcp_call("a", {"value": 3}))
    assert result["content"][0]["text"] == '{\n  "value": 3\n}'
    assert "isError" not in result

    result = asyncio.run(dispatcher.handle_mcp_call("b", {}))
    assert result["content"][0]["text"] == "null"


def test_bridge_errors_are_returned_verbatim(registry, dispatcher):
    async def not_connected():
        raise NotConnectedError()

    async def timed_out():
        raise RequestTimeoutError("req-1-1", 0.5)

    registry.register(_make_tool({}, handler=not_connected, name="offline"))
    registry.register(_make_tool({}, handler=timed_out, name="slow"))

    result = asyncio.run(dispatcher.handle_mcp_call("offline", {}))
    assert result["isError"] is True
    assert "Figma plugin not connected" in result["content"][0]["text"]

    result = asyncio.run(dispatcher.handle_mcp_call("slow", {}))
    assert result["content"][0]["text"] == "Request req-1-1 timed out after 500ms"


def test_unexpected_errors_are_not_leaked(registry, dispatcher):
    async def broken():
        raise KeyError("internal detail")

    registry.register(_make_tool({}, handler=broken, name="broken"))
    result = asyncio.run(dispatcher.handle_mcp_call("broken", {}))
    assert result["isError"] is True
    assert result["content"][0]["text"] == "Internal tool error. Check server logs."


def test_tool_deadline_enforced(registry, dispatcher):
    async def hang():
        await asyncio.sleep(10)

    registry.register(_make_tool({}, handler=hang, name="hang", max_execution_seconds=0.05))
    result = asyncio.run(dispatcher.handle_mcp_call("hang", {}))
    assert result["content"][0]["text"] == "Tool execution timed out."


def test_large_results_are_truncated():
    text = ToolDispatcher._format_result("x" * (MAX_RESULT_SIZE + 10), "req")
    assert text.startswith("x" * 100)
    assert "TRUNCATED" in text


def test_registry_rejects_duplicate_names(registry):
    registry.register(_make_tool({}))
    with pytest.raises(ToolRegistrationError):
        registry.register(_make_tool({}))


def test_list_tools_marks_required_params(registry):
    registry.register(_make_tool({
        "script": {"type": "string"},
        "timeout_ms": {"type": "integer", "optional": True},
    }))
    [listed] = registry.list_tools()
    schema = listed["inputSchema"]
    assert schema["required"] == ["script"]
    assert schema["properties"]["timeout_ms"] == {"type": "integer"}


def test_long_remote_error_reaches_client_verbatim(registry, dispatcher, caplog):
    long_message = "Cannot write to node with unloaded font " + "x" * 5000

    async def failing():
        raise RemoteError(long_message, stack="at line 3")

    registry.register(_make_tool({}, handler=failing, name="failing"))
    with caplog.at_level(logging.DEBUG, logger="figbridge.dispatcher"):
        result = asyncio.run(dispatcher.handle_mcp_call("failing", {}, request_id="r-1"))

    assert result["isError"] is True
    assert result["content"][0]["text"] == long_message

    warning = next(r for r in caplog.records if r.levelno == logging.WARNING)
    assert warning.args[0] == "r-1"
    assert len(warning.getMessage()) < len(long_message)
    assert any("at line 3" in r.getMessage() for r in caplog.records if r.levelno == logging.DEBUG)
