import pytest

from models.models import (
    DEFAULT_WS_PORT,
    BridgeConfig,
    PluginInfo,
    ReplacePolicy,
    Tool,
)


def test_defaults():
    config = BridgeConfig()
    assert config.port == DEFAULT_WS_PORT == 8080
    assert config.request_timeout == 30.0
    assert config.context_timeout == 10.0
    assert config.replace_policy is ReplacePolicy.LAST_CONNECTED_WINS
    assert config.url == "ws://localhost:8080"


def test_from_env_reads_figma_variables():
    config = BridgeConfig.from_env({
        "FIGMA_WS_PORT": "9001",
        "FIGMA_WS_HOST": "0.0.0.0",
        "FIGMA_BRIDGE_TIMEOUT": "12.5",
        "FIGMA_BRIDGE_REPLACE_POLICY": "Reject-New",
    })
    assert config.port == 9001
    assert config.host == "0.0.0.0"
    assert config.request_timeout == 12.5
    assert config.replace_policy is ReplacePolicy.REJECT_NEW


def test_from_env_overrides_win_and_none_is_ignored():
    config = BridgeConfig.from_env({"FIGMA_WS_PORT": "9001"}, port=9002, host=None)
    assert config.port == 9002
    assert config.host == "localhost"


@pytest.mark.parametrize("env", [
    {"FIGMA_WS_PORT": "eighty"},
    {"FIGMA_WS_PORT": "70000"},
    {"FIGMA_BRIDGE_TIMEOUT": "soon"},
    {"FIGMA_BRIDGE_TIMEOUT": "-1"},
    {"FIGMA_BRIDGE_REPLACE_POLICY": "first-wins"},
])
def test_from_env_rejects_bad_values(env):
    with pytest.raises(ValueError):
        BridgeConfig.from_env(env)


@pytest.mark.parametrize("kwargs", [
    {"host": ""},
    {"port": True},
    {"request_timeout": 0},
    {"context_timeout": float("inf")},
    {"notify_duration_ms": -5},
    {"max_message_bytes": 10},
    {"ping_interval": 0},
])
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        BridgeConfig(**kwargs)


def test_plugin_info_to_dict():
    info = PluginInfo(source="figma-plugin", version="1.0.0").to_dict()
    assert info["source"] == "figma-plugin"
    assert info["version"] == "1.0.0"
    assert info["connectedAt"].endswith("+00:00")


def test_tool_name_validation():
    with pytest.raises(ValueError):
        Tool(name="bad name", description="", parameters={}, handler=lambda: None, module_id="m")
    with pytest.raises(ValueError):
        Tool(name="ok", description="", parameters={}, handler=lambda: None, module_id="m",
             max_execution_seconds=4000)
