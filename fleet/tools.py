"""
Tool Registry
=============

Capabilities an agent may invoke by replying with a fenced JSON block::

    ```json
    {"tool": "check_server_health", "args": {"server_id": "web-1"}}
    ```

``execute`` never raises: unknown tools and tool failures come back as
inline error strings.
"""

import json
import re
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable

import psutil

logger = logging.getLogger(__name__)

TOOL_CALL_PATTERN = re.compile(r'```json\s*\n(.*?)\n?```', re.DOTALL)


@dataclass
class Tool:
    name: str
    description: str
    parameters: List[str]
    handler: Callable[..., str]


@dataclass
class ToolCall:
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)


def extract_tool_call(reply: str) -> Optional[ToolCall]:
    """
    Find a fenced tool call in a model reply.

    Returns:
        None when the reply has no ```json block

    Raises:
        ValueError: the block is not a valid tool call
    """
    match = TOOL_CALL_PATTERN.search(reply)
    if not match:
        return None
    try:
        payload = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        raise ValueError(f"Tool call is not valid JSON: {e}") from e
    if not isinstance(payload, dict) or not payload.get('tool'):
        raise ValueError("Tool call must be an object with a 'tool' field")
    args = payload.get('args') or {}
    if not isinstance(args, dict):
        raise ValueError("Tool call 'args' must be an object")
    return ToolCall(tool=payload['tool'], args=args)


class ToolRegistry:
    """Named tools, executed with keyword arguments."""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self._tools: Dict[str, Tool] = {}
        self.register(Tool(
            name="check_server_health",
            description="Checks CPU/Memory/Disk status of the host.",
            parameters=["server_id"],
            handler=self._check_server_health
        ))
        self.register(Tool(
            name="fetch_latest_logs",
            description="Retrieves the last lines of a service log.",
            parameters=["service_name", "lines"],
            handler=self._fetch_latest_logs
        ))

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def list(self) -> List[Tool]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools)

    def find(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def execute(self, name: str, args: Optional[Dict[str, Any]] = None) -> str:
        tool = self._tools.get(name)
        if tool is None:
            return f"Error: Tool '{name}' not found."
        logger.info(f"Executing tool {name} with args {args}")
        try:
            return tool.handler(**(args or {}))
        except Exception as e:
            logger.warning(f"Tool {name} failed: {e}")
            return f"Error executing tool: {e}"

    # ==================== Built-in tools ====================

    def _check_server_health(self, server_id: str = "localhost") -> str:
        cpu = psutil.cpu_percent(interval=0.1)
        mem = psutil.virtual_memory().percent
        disk = psutil.disk_usage('/').percent
        status = "CRITICAL" if max(cpu, mem, disk) > 90 else "HEALTHY"
        return f"[{server_id}] Status: {status} | CPU: {cpu}% | MEM: {mem}% | DISK: {disk}%"

    def _fetch_latest_logs(self, service_name: str, lines: int = 10) -> str:
        name = Path(service_name).name
        log_file = self.log_dir / f"{name}.log"
        if not log_file.exists():
            return f"No logs found for {name}"
        with open(log_file, errors='replace') as f:
            tail = deque(f, maxlen=int(lines))
        return ''.join(tail).rstrip('\n')
