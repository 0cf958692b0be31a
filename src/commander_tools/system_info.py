"""Host platform details reported by ``get_config`` and used for defaults."""

from __future__ import annotations

import os
import platform
import sys
from pathlib import Path
from typing import Any

_PLATFORM_NAMES = {
    "win32": "Windows",
    "darwin": "macOS",
    "linux": "Linux",
}


def default_shell() -> str:
    """Shell used by ``execute_command`` when ``defaultShell`` is not configured."""
    if sys.platform == "win32":
        return "powershell.exe"
    return os.environ.get("SHELL") or "/bin/sh"


def _running_in_docker() -> bool:
    if Path("/.dockerenv").exists():
        return True
    try:
        with open("/proc/1/cgroup", encoding="utf-8") as f:
            return "docker" in f.read()
    except OSError:
        return False


def get_system_info() -> dict[str, Any]:
    home = str(Path.home())
    is_windows = sys.platform == "win32"
    if is_windows:
        example_paths = {"home": home, "temp": os.environ.get("TEMP", "C:\\Temp")}
    else:
        example_paths = {"home": home, "temp": "/tmp"}
    return {
        "platform": sys.platform,
        "platformName": _PLATFORM_NAMES.get(sys.platform, platform.system() or sys.platform),
        "defaultShell": default_shell(),
        "pathSeparator": os.sep,
        "isWindows": is_windows,
        "isMacOS": sys.platform == "darwin",
        "isLinux": sys.platform.startswith("linux"),
        "docker": _running_in_docker(),
        "examplePaths": example_paths,
    }
