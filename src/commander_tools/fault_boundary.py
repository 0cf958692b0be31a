"""
Process-wide fault boundary.

Every failure nobody else handled ends up here: uncaught exceptions on the
main thread or worker threads, exceptions the asyncio loop could not route
to an awaiting task, and whatever escapes the server's task group. Each one
is classified once:

- framing noise (malformed JSON on the transport): logged, process continues;
- anything else: logged, reported, process exits with status 1.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from commander_tools.errors import ErrorKind
from commander_tools.telemetry import DiagnosticsReporter

logger = logging.getLogger(__name__)

# The fatal path blocks before exiting; keep the report short.
FATAL_REPORT_TIMEOUT = 1.0

_FRAMING_MARKERS = ("Unexpected token", "Invalid JSON", "Expecting value", "Unterminated string")


def _terminate(status: int) -> None:
    for stream in (sys.stderr, sys.stdout):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
    os._exit(status)


def fault_message(exc: BaseException) -> str:
    # Task groups wrap even a single failure; report the failure itself.
    while isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return str(exc) or type(exc).__name__


def is_framing_fault(exc: BaseException) -> bool:
    """True when ``exc`` only reports malformed JSON framing."""
    if isinstance(exc, BaseExceptionGroup):
        return all(is_framing_fault(e) for e in exc.exceptions)
    if isinstance(exc, json.JSONDecodeError):
        return True
    if isinstance(exc, ValidationError):
        return any(err.get("type") == "json_invalid" for err in exc.errors())
    message = str(exc)
    return "JSON" in message and any(marker in message for marker in _FRAMING_MARKERS)


class FaultBoundary:
    """Classifies otherwise-unhandled faults and makes the shutdown decision."""

    def __init__(
        self,
        reporter: DiagnosticsReporter | None = None,
        exit_fn: Callable[[int], Any] = _terminate,
    ):
        self._reporter = reporter
        self._exit = exit_fn
        self._previous_excepthook: Callable[..., Any] | None = None
        self._previous_thread_excepthook: Callable[..., Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.framing_faults = 0

    def classify(self, exc: BaseException) -> ErrorKind:
        return ErrorKind.FRAMING_FAULT if is_framing_fault(exc) else ErrorKind.FATAL

    def handle(self, exc: BaseException, *, origin: str = "uncaught_exception") -> ErrorKind:
        """Log ``exc`` and, unless it is framing noise, terminate the process.

        ``origin`` names where the fault surfaced and is used as the reported
        event suffix (``run_server_<origin>``).
        """
        kind = self.classify(exc)
        message = fault_message(exc)
        if kind is ErrorKind.FRAMING_FAULT:
            self.framing_faults += 1
            logger.error("JSON parsing error (%s): %s", origin.replace("_", " "), message)
            return kind

        logger.critical(
            "Fatal %s: %s",
            origin.replace("_", " "),
            message,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        if self._reporter is not None:
            self._reporter.capture(
                f"run_server_{origin}", timeout=FATAL_REPORT_TIMEOUT, error=message
            )
        self._exit(1)
        return kind

    # ── Hooks ─────────────────────────────────────────────────────────────

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route uncaught faults from every source through ``handle``."""
        if self._previous_excepthook is None:
            self._previous_excepthook = sys.excepthook
            self._previous_thread_excepthook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._thread_excepthook
        if loop is not None:
            loop.set_exception_handler(self._loop_exception_handler)
            self._loop = loop

    def uninstall(self) -> None:
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            threading.excepthook = self._previous_thread_excepthook
            self._previous_excepthook = None
            self._previous_thread_excepthook = None
        if self._loop is not None:
            self._loop.set_exception_handler(None)
            self._loop = None

    def _excepthook(self, exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt) and self._previous_excepthook:
            self._previous_excepthook(exc_type, exc, tb)
            return
        self.handle(exc, origin="uncaught_exception")

    def _thread_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_value is None or issubclass(args.exc_type, SystemExit):
            return
        self.handle(args.exc_value, origin="uncaught_exception")

    def _loop_exception_handler(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        exc = context.get("exception")
        if exc is None:
            exc = RuntimeError(context.get("message", "Unhandled error in event loop"))
        self.handle(exc, origin="unhandled_rejection")
