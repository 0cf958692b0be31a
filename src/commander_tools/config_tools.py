"""
Configuration tools for MCP servers: ``get_config`` and ``set_config_value``.

Usage:
    from commander_tools.config_tools import register_config_tools

    mcp = FastMCP("my-server")
    register_config_tools(mcp, store)
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from commander_tools.config_store import ConfigStore
from commander_tools.errors import WriteOutcome, WriteResult
from commander_tools.system_info import get_system_info
from commander_tools.telemetry import DiagnosticsReporter


def describe_config(store: ConfigStore, current_client: dict[str, Any] | None = None) -> str:
    """Render the config document plus client and host details for display."""
    system_info = get_system_info()
    document = {
        **store.read(),
        "currentClient": current_client,
        "systemInfo": system_info,
    }
    text = f"Current configuration:\n{json.dumps(document, indent=2)}"
    if store.dirty:
        text += "\n\n(Unsaved changes: the configuration could not be written to disk.)"
    return text


def describe_write(store: ConfigStore, result: WriteResult) -> str:
    if result.outcome is WriteOutcome.REJECTED:
        return result.message or f"Invalid value for {result.key}"
    if result.outcome is WriteOutcome.UNSAVED:
        return f"Value changed in memory but couldn't be saved to disk: {result.message}"
    return (
        f"Successfully set {result.key} to {json.dumps(result.value, indent=2)}\n\n"
        f"Updated configuration:\n{json.dumps(store.read(), indent=2)}"
    )


class ConfigTools:
    """Configuration tool implementations bound to the process-wide ConfigStore."""

    def __init__(
        self,
        store: ConfigStore,
        *,
        reporter: DiagnosticsReporter | None = None,
        current_client: Callable[[], dict[str, Any] | None] | None = None,
    ):
        self._store = store
        self._reporter = reporter
        self._current_client = current_client

    def get_config(self) -> str:
        """Get the complete server configuration as JSON.

        Includes blockedCommands, defaultShell, allowedDirectories,
        fileReadLineLimit, fileWriteLineLimit, telemetryEnabled, the connected
        client and host system information.
        """
        client = self._current_client() if self._current_client else None
        return describe_config(self._store, client)

    async def set_config_value(self, key: str, value: Any) -> str:
        """Set a specific configuration value by key.

        Arrays may be passed as JSON text, e.g. '["/home/me", "/tmp"]'.
        allowedDirectories and blockedCommands always end up as lists of
        strings; a single string becomes a one-element list.

        Args:
            key: Configuration key, e.g. "blockedCommands".
            value: New value (string, number, boolean, array or object).
        """
        result = await self._store.write(key, value)
        text = describe_write(self._store, result)
        if self._reporter is not None:
            await self._reporter.capture_async(
                "server_set_config_value", key=key, outcome=result.outcome.value
            )
        if not result.ok or result.partial:
            raise ToolError(text)
        return text


def register_config_tools(
    mcp: FastMCP,
    store: ConfigStore,
    *,
    reporter: DiagnosticsReporter | None = None,
    current_client: Callable[[], dict[str, Any] | None] | None = None,
) -> ConfigTools:
    """Register the configuration tools on an MCP server.

    Args:
        mcp: FastMCP instance to register tools on.
        store: The process-wide configuration store.
        reporter: Optional diagnostics reporter for config change events.
        current_client: Returns the connected client's name/version, if known.
    """
    tools = ConfigTools(store, reporter=reporter, current_client=current_client)
    mcp.tool(tools.get_config, name="get_config")
    mcp.tool(tools.set_config_value, name="set_config_value")
    return tools
