"""Process-level settings read from the environment.

Everything here is resolved once at import time. The persisted server
configuration document lives in ``CONFIG_FILE``; see ``config_store``.
"""

import os
import sys
from pathlib import Path

SERVICE_NAME = "desktop-commander"
VERSION = "0.1.0"

HOME_DIR = Path(
    os.environ.get("DESKTOP_COMMANDER_HOME") or Path.home() / ".desktop-commander"
).expanduser()

CONFIG_FILE = Path(
    os.environ.get("DESKTOP_COMMANDER_CONFIG") or HOME_DIR / "config.json"
).expanduser()

LOG_LEVEL = (os.environ.get("DESKTOP_COMMANDER_LOG_LEVEL") or "INFO").upper()

# Empty disables the diagnostics reporter entirely.
TELEMETRY_URL = os.environ.get("DESKTOP_COMMANDER_TELEMETRY_URL", "").strip()


def _default_client_config() -> Path:
    """Location of the Claude Desktop config edited by ``setup`` / ``remove``."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
        return base / "Claude" / "claude_desktop_config.json"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    return Path.home() / ".config" / "Claude" / "claude_desktop_config.json"


CLIENT_CONFIG_FILE = Path(
    os.environ.get("DESKTOP_COMMANDER_CLIENT_CONFIG") or _default_client_config()
).expanduser()
