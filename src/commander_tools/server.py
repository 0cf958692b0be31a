"""
Desktop Commander MCP server entry point.

Startup:
    1. ``setup`` / ``remove`` maintenance verbs short-circuit everything else.
    2. Load the ConfigStore (failure is logged, the server keeps going).
    3. Create the HandshakeGatedChannel on stdin/stdout.
    4. Install the process-wide FaultBoundary.
    5. Serve the FastMCP server over the channel; the peer's
       ``notifications/initialized`` opens the notification gate.

A failure in steps 2-5 writes one ``notifications/message`` error line
straight to stdout and exits with status 1.

Usage:
    desktop-commander            # serve over stdio
    desktop-commander setup      # register in the Claude Desktop config
    desktop-commander remove     # unregister
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

import anyio
import anyio.to_thread
from fastmcp import FastMCP
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext

from commander_tools.channel import HandshakeGatedChannel
from commander_tools.client_setup import SetupResult, run_setup, run_uninstall
from commander_tools.config_store import ConfigStore
from commander_tools.config_tools import register_config_tools
from commander_tools.errors import ErrorKind
from commander_tools.fault_boundary import FaultBoundary, fault_message
from commander_tools.guarded_tools import register_guarded_tools
from commander_tools.settings import LOG_LEVEL, SERVICE_NAME, VERSION
from commander_tools.telemetry import DiagnosticsReporter

logger = logging.getLogger(__name__)

INITIALIZED_NOTIFICATION = "notifications/initialized"

MAINTENANCE_VERBS: dict[str, Callable[[], SetupResult]] = {
    "setup": run_setup,
    "remove": run_uninstall,
}


def setup_logger():
    # stdout is the JSON-RPC transport; logs go to stderr only.
    package_logger = logging.getLogger("commander_tools")
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(f"[{SERVICE_NAME}] %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
        package_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


def startup_failure_notification(message: str, now: datetime | None = None) -> dict[str, Any]:
    """The error notification written to stdout when the server cannot start."""
    timestamp = (now or datetime.now(UTC)).isoformat()
    return {
        "jsonrpc": "2.0",
        "method": "notifications/message",
        "params": {
            "level": "error",
            "logger": SERVICE_NAME,
            "data": f"Failed to start server: {message} ({timestamp})",
        },
    }


class HandshakeMiddleware(Middleware):
    """Runs a callback once, after the peer's ``notifications/initialized``.

    Also records the client name/version from the ``initialize`` request so
    ``get_config`` can report it.
    """

    def __init__(self, on_initialized: Callable[[], Awaitable[None]]):
        self._on_initialized = on_initialized
        self._fired = False
        self.client_info: dict[str, Any] | None = None

    @property
    def fired(self) -> bool:
        return self._fired

    async def on_initialize(self, context: MiddlewareContext, call_next: CallNext) -> Any:
        params = getattr(context.message, "params", None)
        info = getattr(params, "client_info", None) or getattr(params, "clientInfo", None)
        if info is not None:
            self.client_info = {
                "name": getattr(info, "name", None),
                "version": getattr(info, "version", None),
            }
        return await call_next(context)

    async def on_notification(self, context: MiddlewareContext, call_next: CallNext) -> Any:
        result = await call_next(context)
        if context.method == INITIALIZED_NOTIFICATION and not self._fired:
            self._fired = True
            await self._on_initialized()
        return result


def build_server(
    store: ConfigStore,
    *,
    reporter: DiagnosticsReporter | None = None,
    current_client: Callable[[], dict[str, Any] | None] | None = None,
) -> FastMCP:
    """Create the FastMCP server with the configuration and guarded tools."""
    mcp = FastMCP(SERVICE_NAME, version=VERSION)
    register_config_tools(mcp, store, reporter=reporter, current_client=current_client)
    register_guarded_tools(mcp, store)
    return mcp


class Orchestrator:
    """Owns the process-wide collaborators and drives startup and serving."""

    def __init__(
        self,
        store: ConfigStore | None = None,
        *,
        stdin: anyio.AsyncFile[str] | None = None,
        stdout: anyio.AsyncFile[str] | None = None,
        reporter: DiagnosticsReporter | None = None,
        exit_fn: Callable[[int], Any] | None = None,
        verbs: dict[str, Callable[[], SetupResult]] | None = None,
    ):
        self.store = store if store is not None else ConfigStore()
        self.reporter = reporter if reporter is not None else DiagnosticsReporter(
            enabled=lambda: self.store.get("telemetryEnabled") is not False
        )
        if exit_fn is not None:
            self.boundary = FaultBoundary(self.reporter, exit_fn=exit_fn)
        else:
            self.boundary = FaultBoundary(self.reporter)
        self._stdin = stdin
        self._stdout = stdout
        self._verbs = verbs if verbs is not None else MAINTENANCE_VERBS
        self.channel: HandshakeGatedChannel | None = None
        self.middleware: HandshakeMiddleware | None = None
        self.mcp: FastMCP | None = None

    def current_client(self) -> dict[str, Any] | None:
        return self.middleware.client_info if self.middleware else None

    async def on_initialized(self) -> None:
        """Open the notification gate once the peer finished initializing."""
        if self.channel is not None and self.channel.enable_notifications():
            await self.channel.send_log("info", "Fully initialized, notifications enabled")

    async def run(self, argv: Sequence[str] = ()) -> int:
        """Run the maintenance verb in ``argv[0]`` or serve until stdin closes.

        Returns the process exit status.
        """
        verb = argv[0] if argv else None
        if verb in self._verbs:
            result = await anyio.to_thread.run_sync(self._verbs[verb])
            return 0 if result.success else 1

        serving = False
        try:
            loaded = await self.store.load()
            if not loaded.ok:
                logger.warning("Continuing without a saved configuration: %s", loaded.message)

            self.channel = HandshakeGatedChannel(self._stdin, self._stdout)
            self.boundary.install(asyncio.get_running_loop())
            await self.reporter.capture_async("run_server_start")

            self.mcp = build_server(
                self.store, reporter=self.reporter, current_client=self.current_client
            )
            self.middleware = HandshakeMiddleware(self.on_initialized)
            self.mcp.add_middleware(self.middleware)

            async with self.mcp._lifespan_manager():
                async with self.channel.connect() as (read_stream, write_stream):
                    serving = True
                    logger.info("Starting %s %s on stdio", SERVICE_NAME, VERSION)
                    await self.mcp._mcp_server.run(
                        read_stream,
                        write_stream,
                        self.mcp._mcp_server.create_initialization_options(),
                    )
        except Exception as e:
            if not serving:
                await self._report_startup_failure(e)
                return 1
            kind = self.boundary.handle(e, origin="fatal_error")
            return 0 if kind is ErrorKind.FRAMING_FAULT else 1
        finally:
            self.boundary.uninstall()

        logger.info("Input closed, shutting down")
        return 0

    async def _report_startup_failure(self, exc: BaseException) -> None:
        message = fault_message(exc)
        logger.error("Failed to start server: %s", message, exc_info=exc)
        line = json.dumps(startup_failure_notification(message)) + "\n"
        try:
            if self._stdout is not None:
                await self._stdout.write(line)
                await self._stdout.flush()
            else:
                sys.stdout.write(line)
                sys.stdout.flush()
        except (OSError, ValueError) as e:
            logger.error("Could not write startup failure notification: %s", e)
        await self.reporter.capture_async("run_server_failed_start_error", error=message)


def main() -> None:
    parser = argparse.ArgumentParser(description="Desktop Commander MCP Server")
    parser.add_argument(
        "command",
        nargs="?",
        choices=sorted(MAINTENANCE_VERBS),
        help="maintenance action to run instead of serving over stdio",
    )
    args, _ = parser.parse_known_args()

    setup_logger()
    orchestrator = Orchestrator()
    sys.exit(anyio.run(orchestrator.run, [args.command] if args.command else []))


if __name__ == "__main__":
    main()
