"""
File and command tools guarded by the server configuration.

Provides 4 tools (read_file, write_file, list_directory, execute_command).
Every call re-reads the relevant settings from the ConfigStore, so changes
made through ``set_config_value`` apply immediately:

- allowedDirectories: paths outside these roots are refused (empty = no limit)
- blockedCommands: commands whose executable is listed are refused
- defaultShell: shell used by execute_command
- fileReadLineLimit / fileWriteLineLimit: read page size, write warning size
"""

from __future__ import annotations

import os
import re
import shlex
import subprocess
import sys
from pathlib import Path

from fastmcp import FastMCP

from commander_tools.config_store import ConfigStore

# ── Constants ─────────────────────────────────────────────────────────────

MAX_LINE_LENGTH = 2000
MAX_COMMAND_OUTPUT = 30_000  # chars before truncation
MAX_LIST_ENTRIES = 500
DEFAULT_COMMAND_TIMEOUT_MS = 30_000

_COMMAND_SEPARATORS = re.compile(r"&&|\|\||[;|&\n]")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# ── Guards ────────────────────────────────────────────────────────────────


def resolve_allowed_path(path: str, allowed_directories: list[str]) -> Path:
    """Resolve ``path`` and check it lies under one of ``allowed_directories``.

    Raises ValueError when the path is outside every allowed root.
    """
    resolved = Path(path).expanduser().resolve()
    if not allowed_directories:
        return resolved
    for root in allowed_directories:
        root_path = Path(root).expanduser().resolve()
        if resolved == root_path or root_path in resolved.parents:
            return resolved
    raise ValueError(f"Access denied: '{path}' is outside the allowed directories.")


def command_executables(command: str) -> list[str]:
    """Executable names of every segment in a shell command line."""
    names = []
    for segment in _COMMAND_SEPARATORS.split(command):
        try:
            tokens = shlex.split(segment, posix=sys.platform != "win32")
        except ValueError:
            tokens = segment.split()
        tokens = [t for t in tokens if not _ENV_ASSIGNMENT.match(t)]
        if tokens:
            names.append(os.path.basename(tokens[0]).lower())
    return names


def find_blocked_command(command: str, blocked_commands: list[str]) -> str | None:
    """First executable in ``command`` that is blocked, or None."""
    blocked = {b.lower() for b in blocked_commands}
    for name in command_executables(command):
        stem = name[:-4] if name.endswith(".exe") else name
        if name in blocked or stem in blocked:
            return name
    return None


def _looks_binary(resolved: Path) -> bool:
    try:
        with open(resolved, "rb") as f:
            return b"\x00" in f.read(4096)
    except OSError:
        return False


def _shell_argv(shell: str, command: str) -> list[str]:
    name = os.path.basename(shell).lower()
    if name.startswith(("powershell", "pwsh")):
        return [shell, "-NoProfile", "-Command", command]
    if name in ("cmd", "cmd.exe"):
        return [shell, "/c", command]
    return [shell, "-c", command]


# ── Tools ─────────────────────────────────────────────────────────────────


class GuardedTools:
    """Tool implementations bound to the process-wide ConfigStore."""

    def __init__(self, store: ConfigStore):
        self._store = store

    def _resolve(self, path: str) -> Path:
        return resolve_allowed_path(path, self._store.get("allowedDirectories"))

    def read_file(self, path: str, offset: int = 0, length: int = 0) -> str:
        """Read a text file with line numbers.

        Args:
            path: File path inside the allowed directories.
            offset: Number of lines to skip (default: 0).
            length: Max lines to return, 0 = fileReadLineLimit (default: 0).
        """
        try:
            resolved = self._resolve(path)
        except ValueError as e:
            return f"Error: {e}"
        if not resolved.is_file():
            return f"Error: File not found: {path}"
        if _looks_binary(resolved):
            return f"Binary file: {path} ({resolved.stat().st_size:,} bytes). Cannot display binary content."

        limit = length if length > 0 else self._store.get("fileReadLineLimit")
        try:
            with open(resolved, encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError as e:
            return f"Error reading file: {e}"

        start = max(0, offset)
        end = min(start + limit, len(lines))
        output = []
        for i in range(start, end):
            line = lines[i].rstrip("\n\r")
            if len(line) > MAX_LINE_LENGTH:
                line = line[:MAX_LINE_LENGTH] + "..."
            output.append(f"{i + 1:>6}\t{line}")
        result = "\n".join(output)
        if end < len(lines):
            result += f"\n\n(Showing lines {start + 1}-{end} of {len(lines)}. Use offset={end} to continue.)"
        return result

    def write_file(self, path: str, content: str, mode: str = "rewrite") -> str:
        """Write or append text to a file, creating parent directories.

        Args:
            path: File path inside the allowed directories.
            content: Text to write.
            mode: "rewrite" to replace the file, "append" to add to it.
        """
        if mode not in ("rewrite", "append"):
            return f"Error: Invalid mode '{mode}'. Use 'rewrite' or 'append'."
        try:
            resolved = self._resolve(path)
        except ValueError as e:
            return f"Error: {e}"

        try:
            existed = resolved.is_file()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            with open(resolved, "a" if mode == "append" else "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            return f"Error writing file: {e}"

        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        action = "Appended to" if mode == "append" else ("Updated" if existed else "Created")
        result = f"{action} {path} ({len(content):,} bytes, {line_count} lines)"
        write_limit = self._store.get("fileWriteLineLimit")
        if line_count > write_limit:
            result += (
                f"\n\nNote: {line_count} lines exceeds fileWriteLineLimit ({write_limit}). "
                "Prefer smaller chunks written with mode='append'."
            )
        return result

    def list_directory(self, path: str) -> str:
        """List directory contents; directories carry a / suffix.

        Args:
            path: Directory path inside the allowed directories.
        """
        try:
            resolved = self._resolve(path)
        except ValueError as e:
            return f"Error: {e}"
        if not resolved.is_dir():
            return f"Error: Directory not found: {path}"

        try:
            names = sorted(os.listdir(resolved))
        except OSError as e:
            return f"Error listing directory: {e}"
        entries = [f"{n}/" if (resolved / n).is_dir() else n for n in names[:MAX_LIST_ENTRIES]]
        if len(names) > MAX_LIST_ENTRIES:
            entries.append(f"... (truncated at {MAX_LIST_ENTRIES} entries)")
        return "\n".join(entries) if entries else "(empty directory)"

    def execute_command(
        self, command: str, timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS, cwd: str = ""
    ) -> str:
        """Run a shell command with defaultShell and return its output.

        Commands whose executable appears in blockedCommands are refused.

        Args:
            command: Command line to run.
            timeout_ms: Kill the command after this many milliseconds.
            cwd: Working directory inside the allowed directories (default: home).
        """
        blocked = find_blocked_command(command, self._store.get("blockedCommands"))
        if blocked:
            return f"Error: Command not allowed: '{blocked}' is in blockedCommands."

        try:
            workdir = self._resolve(cwd) if cwd else Path.home()
        except ValueError as e:
            return f"Error: {e}"

        shell = self._store.get("defaultShell")
        try:
            proc = subprocess.run(
                _shell_argv(shell, command),
                cwd=workdir,
                capture_output=True,
                text=True,
                timeout=max(timeout_ms, 1) / 1000,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired:
            return f"Error: Command timed out after {timeout_ms} ms"
        except OSError as e:
            return f"Error executing command with {shell}: {e}"

        output = proc.stdout
        if proc.stderr:
            output += ("\n" if output else "") + f"[stderr]\n{proc.stderr}"
        if len(output) > MAX_COMMAND_OUTPUT:
            output = output[:MAX_COMMAND_OUTPUT] + f"\n... (truncated, {len(output):,} chars total)"
        return f"{output}\n[exit code: {proc.returncode}]"


# ── Factory ───────────────────────────────────────────────────────────────

GUARDED_TOOL_NAMES = frozenset({"read_file", "write_file", "list_directory", "execute_command"})


def register_guarded_tools(mcp: FastMCP, store: ConfigStore) -> GuardedTools:
    """Register the 4 config-guarded tools on an MCP server."""
    tools = GuardedTools(store)
    mcp.tool(tools.read_file, name="read_file")
    mcp.tool(tools.write_file, name="write_file")
    mcp.tool(tools.list_directory, name="list_directory")
    mcp.tool(tools.execute_command, name="execute_command")
    return tools
