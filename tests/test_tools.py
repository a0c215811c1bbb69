"""Tool registry and tool-call extraction."""

import pytest

from fleet.tools import ToolRegistry, Tool, extract_tool_call


def test_extract_tool_call():
    reply = 'Checking.\n```json\n{"tool": "check_server_health", "args": {"server_id": "web-1"}}\n```'
    call = extract_tool_call(reply)
    assert call.tool == "check_server_health"
    assert call.args == {"server_id": "web-1"}


def test_no_tool_call():
    assert extract_tool_call("Just talking.") is None


def test_malformed_tool_call():
    with pytest.raises(ValueError):
        extract_tool_call("```json\n{not json}\n```")
    with pytest.raises(ValueError):
        extract_tool_call('```json\n{"args": {}}\n```')


def test_unknown_tool(tmp_path):
    registry = ToolRegistry(str(tmp_path))
    assert registry.execute("launch_rockets", {}) == "Error: Tool 'launch_rockets' not found."


def test_failing_tool_reports_inline(tmp_path):
    registry = ToolRegistry(str(tmp_path))

    def explode():
        raise RuntimeError("disk on fire")

    registry.register(Tool(name="explode", description="fails", parameters=[], handler=explode))
    assert registry.execute("explode") == "Error executing tool: disk on fire"


def test_builtin_tools_registered(tmp_path):
    assert set(ToolRegistry(str(tmp_path)).names()) == {"check_server_health", "fetch_latest_logs"}


def test_check_server_health(tmp_path):
    result = ToolRegistry(str(tmp_path)).execute("check_server_health", {"server_id": "web-1"})
    assert result.startswith("[web-1] Status:")
    assert "CPU:" in result


def test_fetch_latest_logs(tmp_path):
    (tmp_path / "api.log").write_text("\n".join(f"line {i}" for i in range(20)) + "\n")
    registry = ToolRegistry(str(tmp_path))
    assert registry.execute("fetch_latest_logs", {"service_name": "api", "lines": 2}) == "line 18\nline 19"
    assert registry.execute("fetch_latest_logs", {"service_name": "db"}) == "No logs found for db"
