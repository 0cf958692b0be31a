"""Shared fixtures for desktop-commander tests."""

from __future__ import annotations

import io
import json
from pathlib import Path

import anyio
import mcp.types as types
import pytest
from fastmcp import FastMCP

from commander_tools.config_store import ConfigStore


def make_stdin(*lines: str) -> anyio.AsyncFile[str]:
    """An in-memory async text stream yielding ``lines`` then EOF."""
    return anyio.wrap_file(io.StringIO("".join(line if line.endswith("\n") else line + "\n" for line in lines)))


def make_stdout() -> anyio.AsyncFile[str]:
    """An in-memory async text stream; read it back with ``written_lines``."""
    return anyio.wrap_file(io.StringIO())


def written_lines(stdout: anyio.AsyncFile[str]) -> list[dict]:
    """Decode every JSON line written to a ``make_stdout()`` stream."""
    return [json.loads(line) for line in stdout.wrapped.getvalue().splitlines() if line.strip()]


def notification(data: str) -> types.JSONRPCNotification:
    return types.JSONRPCNotification(
        jsonrpc="2.0",
        method="notifications/message",
        params={"level": "info", "logger": "test", "data": data},
    )


@pytest.fixture
def mcp() -> FastMCP:
    """Create a fresh FastMCP instance for testing."""
    return FastMCP("test-server")


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    return tmp_path / "config" / "config.json"


@pytest.fixture
def store(config_file: Path) -> ConfigStore:
    """An unloaded ConfigStore backed by a file under tmp_path."""
    return ConfigStore(config_file)
