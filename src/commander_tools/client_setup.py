"""
Register or remove this server in the Claude Desktop client configuration.

Backs the ``setup`` and ``remove`` maintenance verbs:

    desktop-commander setup    # add mcpServers["desktop-commander"]
    desktop-commander remove   # delete it again

The client config is backed up next to itself before every change.
"""

from __future__ import annotations

import json
import shutil
import sys
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from commander_tools.settings import CLIENT_CONFIG_FILE, SERVICE_NAME


# ANSI colors for terminal output
class Colors:
    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    NC = "\033[0m"  # No Color

    @classmethod
    def disable(cls):
        """Disable colors (for non-TTY output)."""
        cls.RED = cls.GREEN = cls.YELLOW = cls.NC = ""


@dataclass
class SetupResult:
    """Result of a setup or remove run."""

    success: bool
    message: str
    backup_path: Path | None = None
    """Copy of the client config taken before it was modified"""


def server_entry() -> dict[str, Any]:
    """The ``mcpServers`` entry that launches this server."""
    executable = shutil.which(SERVICE_NAME)
    if executable:
        return {"command": executable, "args": []}
    return {"command": sys.executable, "args": ["-m", "commander_tools"]}


def _load_client_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, encoding="utf-8-sig") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return data


def _backup(path: Path) -> Path | None:
    if not path.exists():
        return None
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup = path.with_name(f"{path.stem}.bak-{ts}{path.suffix}")
    shutil.copy2(path, backup)
    return backup


def _save_client_config(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def run_setup(
    client_config: Path = CLIENT_CONFIG_FILE,
    print_fn: Callable[[str], None] = print,
) -> SetupResult:
    """Add (or refresh) this server's entry in the client configuration."""
    if not sys.stdout.isatty():
        Colors.disable()
    try:
        data = _load_client_config(client_config)
        backup = _backup(client_config)
        servers = data.setdefault("mcpServers", {})
        if not isinstance(servers, dict):
            raise ValueError("'mcpServers' is not a JSON object")
        servers[SERVICE_NAME] = server_entry()
        _save_client_config(client_config, data)
    except (OSError, ValueError) as e:
        print_fn(f"{Colors.RED}Setup failed:{Colors.NC} {e}")
        return SetupResult(success=False, message=str(e))

    print_fn(f"{Colors.GREEN}Registered {SERVICE_NAME}{Colors.NC} in {client_config}")
    print_fn("Restart the client to load the server.")
    return SetupResult(success=True, message=f"Registered in {client_config}", backup_path=backup)


def run_uninstall(
    client_config: Path = CLIENT_CONFIG_FILE,
    print_fn: Callable[[str], None] = print,
) -> SetupResult:
    """Remove this server's entry from the client configuration."""
    if not sys.stdout.isatty():
        Colors.disable()
    try:
        data = _load_client_config(client_config)
        servers = data.get("mcpServers")
        if not isinstance(servers, dict) or SERVICE_NAME not in servers:
            print_fn(f"{Colors.YELLOW}{SERVICE_NAME} is not registered{Colors.NC} in {client_config}")
            return SetupResult(success=True, message="Nothing to remove")
        backup = _backup(client_config)
        del servers[SERVICE_NAME]
        _save_client_config(client_config, data)
    except (OSError, ValueError) as e:
        print_fn(f"{Colors.RED}Remove failed:{Colors.NC} {e}")
        return SetupResult(success=False, message=str(e))

    print_fn(f"{Colors.GREEN}Removed {SERVICE_NAME}{Colors.NC} from {client_config}")
    return SetupResult(success=True, message=f"Removed from {client_config}", backup_path=backup)
