"""Error kinds and result types shared by the config store and the server.

Expected failures travel as values (``LoadResult``, ``WriteResult``) so the
caller decides what to surface. ``ConfigError`` is only raised where a caller
explicitly asked for an exception, e.g. ``ConfigStore.save()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    LOAD_FAILED = "load_failed"
    VALIDATION_FAILED = "validation_failed"
    PERSIST_FAILED = "persist_failed"
    FRAMING_FAULT = "framing_fault"
    FATAL = "fatal"


class ConfigError(Exception):
    """A configuration operation failed with a known ``ErrorKind``."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass
class LoadResult:
    """Outcome of ``ConfigStore.load()``."""

    ok: bool
    """Whether the durable document was read and parsed."""

    error_kind: ErrorKind | None = None
    message: str = ""


class WriteOutcome(str, Enum):
    SAVED = "saved"
    UNSAVED = "unsaved"  # changed in memory, not persisted
    REJECTED = "rejected"


@dataclass
class WriteResult:
    """Outcome of ``ConfigStore.write()``."""

    outcome: WriteOutcome
    key: str
    value: Any = None
    """The coerced value that was (or would have been) stored."""

    error_kind: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        """True when the in-memory document now holds ``value``."""
        return self.outcome is not WriteOutcome.REJECTED

    @property
    def partial(self) -> bool:
        return self.outcome is WriteOutcome.UNSAVED
