"""
Persisted server configuration.

Owns the JSON document at ``settings.CONFIG_FILE`` (a flat object of
camelCase keys). The document is loaded once at startup and then mutated in
place, only through ``ConfigStore.write()``, which coerces loosely-typed input
(tool arguments usually arrive as strings) before validating it against the
declared schema of known keys.

Usage:
    store = ConfigStore()
    await store.load()                      # never raises
    result = await store.write("blockedCommands", "rm")
    store.read()["blockedCommands"]         # ["rm"]

Persistence failures never undo an in-memory change: the store is marked
dirty and the write reports ``WriteOutcome.UNSAVED``.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Annotated, Any

import anyio
from pydantic import Field, StrictBool, StrictInt, StrictStr, TypeAdapter, ValidationError

from commander_tools.errors import (
    ConfigError,
    ErrorKind,
    LoadResult,
    WriteOutcome,
    WriteResult,
)
from commander_tools.settings import CONFIG_FILE
from commander_tools.system_info import default_shell

logger = logging.getLogger(__name__)

# ── Schema ────────────────────────────────────────────────────────────────

ARRAY_KEYS = frozenset({"allowedDirectories", "blockedCommands"})

_PositiveInt = Annotated[StrictInt, Field(gt=0)]

KEY_SCHEMAS: dict[str, TypeAdapter[Any]] = {
    "allowedDirectories": TypeAdapter(list[StrictStr]),
    "blockedCommands": TypeAdapter(list[StrictStr]),
    "defaultShell": TypeAdapter(StrictStr),
    "telemetryEnabled": TypeAdapter(StrictBool),
    "fileReadLineLimit": TypeAdapter(_PositiveInt),
    "fileWriteLineLimit": TypeAdapter(_PositiveInt),
}

DEFAULT_BLOCKED_COMMANDS = [
    "mkfs",
    "format",
    "mount",
    "umount",
    "fdisk",
    "dd",
    "parted",
    "diskpart",
    "sudo",
    "su",
    "passwd",
    "adduser",
    "useradd",
    "usermod",
    "groupadd",
    "chsh",
    "visudo",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "init",
    "iptables",
    "firewall",
    "netsh",
    "sfc",
    "bcdedit",
    "reg",
    "net",
    "sc",
    "runas",
    "cipher",
    "takeown",
]

# Fallbacks for known keys missing from the document. Never written to disk.
DEFAULT_CONFIG: dict[str, Any] = {
    "blockedCommands": DEFAULT_BLOCKED_COMMANDS,
    "defaultShell": default_shell(),
    "allowedDirectories": [],
    "telemetryEnabled": True,
    "fileReadLineLimit": 1000,
    "fileWriteLineLimit": 50,
}


# ── Coercion ──────────────────────────────────────────────────────────────


def _string_form(value: Any) -> str:
    if isinstance(value, (bool, int, float, dict)):
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def _as_string_array(value: Any) -> Any:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if value is None:
        return []
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            # Malformed bracket input lands here too; keep it whole.
            return [value]
        return parsed if isinstance(parsed, list) else [value]
    return [_string_form(value)]


def coerce_config_value(key: str, raw_value: Any) -> Any:
    """Turn a loosely-typed input into the value that will be validated.

    1. Strings starting with ``[`` or ``{`` are parsed as JSON when they can
       be; otherwise they are kept verbatim.
    2. Array-typed keys (``ARRAY_KEYS``) are normalized to a list: lists are
       kept, other strings are parsed as a JSON array or wrapped as a single
       element, ``None`` becomes ``[]`` and any other value becomes a
       one-element list of its string form.

    Pure function: no I/O and no validation. Element types of an
    already-list value are left for ``validate_config_value`` to check.
    """
    value = raw_value
    if isinstance(value, str) and value.startswith(("[", "{")):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            logger.debug("Value for %s is not valid JSON, keeping string: %s", key, e)

    if key in ARRAY_KEYS:
        value = _as_string_array(value)
    return value


def validate_config_value(key: str, value: Any) -> Any:
    """Validate ``value`` for ``key`` and return the normalized copy to store.

    Raises ConfigError(VALIDATION_FAILED) when the value does not match.
    """
    if not isinstance(key, str) or not key.strip():
        raise ConfigError(ErrorKind.VALIDATION_FAILED, "Config key must be a non-empty string")

    adapter = KEY_SCHEMAS.get(key)
    if adapter is not None:
        try:
            return adapter.validate_python(value)
        except ValidationError as e:
            first = e.errors()[0]
            raise ConfigError(
                ErrorKind.VALIDATION_FAILED,
                f"Invalid value for {key}: {first['msg']}",
            ) from e

    try:
        return json.loads(json.dumps(value, allow_nan=False))
    except (TypeError, ValueError) as e:
        raise ConfigError(
            ErrorKind.VALIDATION_FAILED,
            f"Invalid value for {key}: not JSON-representable ({e})",
        ) from e


# ── Store ─────────────────────────────────────────────────────────────────


def _read_document(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8-sig") as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError(f"expected a JSON object, got {type(document).__name__}")
    return document


def _normalize_document(document: dict[str, Any]) -> dict[str, Any]:
    """Apply write-time coercion and validation to the known keys of a loaded document.

    Known keys that still fail validation are dropped, so ``get()`` serves
    the built-in default for them. Other keys are kept verbatim.
    """
    normalized = dict(document)
    for key in KEY_SCHEMAS.keys() & document.keys():
        try:
            normalized[key] = validate_config_value(key, coerce_config_value(key, document[key]))
        except ConfigError as e:
            logger.warning("Ignoring stored %s, using the default instead: %s", key, e)
            del normalized[key]
    return normalized


def _write_document(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ConfigStore:
    """The server configuration document and its durable copy.

    A single instance is created at startup and passed to every component
    that reads or changes settings. Writes are serialized in call order.
    """

    def __init__(self, path: Path | str | None = None):
        self._path = Path(path) if path is not None else CONFIG_FILE
        self._config: dict[str, Any] = {}
        self._dirty = False
        self._last_error: str | None = None
        self._write_lock = anyio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        """True while an in-memory change has not been written to disk."""
        return self._dirty

    @property
    def last_error(self) -> str | None:
        """Message of the most recent load or persistence failure, if any."""
        return self._last_error

    async def load(self) -> LoadResult:
        """Read the durable document, falling back to an empty one.

        Never raises. On failure the in-memory document is empty and the
        failure is recorded in ``last_error``.
        """
        try:
            document = await anyio.to_thread.run_sync(_read_document, self._path)
        except Exception as e:
            if isinstance(e, FileNotFoundError):
                message = f"Config file not found: {self._path}"
            else:
                message = f"Failed to load config from {self._path}: {e}"
            logger.warning("%s; using in-memory configuration only", message)
            self._config = {}
            self._last_error = message
            return LoadResult(ok=False, error_kind=ErrorKind.LOAD_FAILED, message=message)

        self._config = _normalize_document(document)
        self._last_error = None
        self._dirty = False
        logger.info("Loaded configuration from %s (%d keys)", self._path, len(self._config))
        return LoadResult(ok=True)

    def read(self) -> dict[str, Any]:
        """Return a copy of the current in-memory document."""
        return copy.deepcopy(self._config)

    def get(self, key: str, default: Any = None) -> Any:
        """Stored value for ``key``, else the built-in default for known keys."""
        if key in self._config:
            return copy.deepcopy(self._config[key])
        if key in DEFAULT_CONFIG:
            return copy.deepcopy(DEFAULT_CONFIG[key])
        return default

    async def write(self, key: str, raw_value: Any) -> WriteResult:
        """Coerce, validate, apply and persist one value.

        Returns a ``WriteResult``:
        - SAVED: applied and written to disk.
        - UNSAVED: applied in memory, persistence failed, ``dirty`` is set.
        - REJECTED: validation failed, the document is unchanged.
        """
        async with self._write_lock:
            value = coerce_config_value(key, raw_value)
            try:
                value = validate_config_value(key, value)
            except ConfigError as e:
                logger.warning("Rejected config value for %s: %s", key, e)
                return WriteResult(
                    outcome=WriteOutcome.REJECTED,
                    key=key,
                    value=value,
                    error_kind=e.kind,
                    message=str(e),
                )

            self._config[key] = value
            try:
                await self._persist()
            except ConfigError as e:
                logger.error("Config value for %s changed in memory but not saved: %s", key, e)
                return WriteResult(
                    outcome=WriteOutcome.UNSAVED,
                    key=key,
                    value=copy.deepcopy(value),
                    error_kind=e.kind,
                    message=str(e),
                )

            logger.info("Set config value %s", key)
            return WriteResult(outcome=WriteOutcome.SAVED, key=key, value=copy.deepcopy(value))

    async def save(self) -> None:
        """Retry persisting the current document.

        Raises ConfigError(PERSIST_FAILED) if the document cannot be written.
        """
        async with self._write_lock:
            await self._persist()

    async def _persist(self) -> None:
        snapshot = copy.deepcopy(self._config)
        try:
            await anyio.to_thread.run_sync(_write_document, self._path, snapshot)
        except (OSError, ValueError) as e:
            self._dirty = True
            self._last_error = f"Failed to save config to {self._path}: {e}"
            raise ConfigError(ErrorKind.PERSIST_FAILED, self._last_error) from e
        self._dirty = False
