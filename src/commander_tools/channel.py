"""
Line-delimited JSON-RPC transport over stdin/stdout with a handshake gate.

The MCP protocol forbids server-initiated notifications before the client has
sent ``notifications/initialized``. The channel enforces that: until
``enable_notifications()`` is called, every outbound notification is dropped
(not queued). Responses, errors and server-to-client requests always pass.

Inbound lines that are not valid JSON-RPC are logged and skipped instead of
being handed to the server loop as errors. A JSON framing fault raised while
reading or writing one message is counted and logged, and the session goes
on with the next message.

Usage:
    channel = HandshakeGatedChannel()
    async with channel.connect() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, options)
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from io import TextIOWrapper
from typing import Any

import anyio
import anyio.lowlevel
import mcp.types as types
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from commander_tools.fault_boundary import fault_message, is_framing_fault
from commander_tools.settings import SERVICE_NAME

logger = logging.getLogger(__name__)

MAX_LOGGED_LINE = 200


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    GATED = "gated"
    OPEN = "open"


class HandshakeGatedChannel:
    """Stdio transport that suppresses notifications until the handshake completes.

    State only moves forward: CONNECTING -> GATED on ``connect()``, and
    GATED -> OPEN once on ``enable_notifications()``.
    """

    def __init__(
        self,
        stdin: anyio.AsyncFile[str] | None = None,
        stdout: anyio.AsyncFile[str] | None = None,
        *,
        logger_name: str = SERVICE_NAME,
    ):
        self._stdin = stdin
        self._stdout = stdout
        self._logger_name = logger_name
        self._state = ChannelState.CONNECTING
        self._write_lock = anyio.Lock()
        self.dropped_notifications = 0
        self.framing_faults = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def notifications_enabled(self) -> bool:
        return self._state is ChannelState.OPEN

    def enable_notifications(self) -> bool:
        """Open the gate. Returns True only for the call that opened it."""
        if self._state is ChannelState.OPEN:
            return False
        if self._state is ChannelState.CONNECTING:
            logger.warning("Ignoring request to enable notifications before the channel is connected")
            return False
        self._state = ChannelState.OPEN
        logger.info(
            "Handshake complete, notifications enabled (%d dropped before)",
            self.dropped_notifications,
        )
        return True

    # ── Outbound ──────────────────────────────────────────────────────────

    async def send(self, message: types.JSONRPCMessage) -> bool:
        """Write one message as a single line. Returns False if the gate dropped it."""
        if isinstance(message, types.JSONRPCNotification) and not self.notifications_enabled:
            self.dropped_notifications += 1
            logger.debug("Dropping %s notification sent before initialization", message.method)
            return False
        if self._stdout is None:
            raise RuntimeError("Channel is not connected")

        line = message.model_dump_json(by_alias=True, exclude_unset=True)
        async with self._write_lock:
            await self._stdout.write(line + "\n")
            await self._stdout.flush()
        return True

    async def send_log(self, level: types.LoggingLevel, data: Any) -> bool:
        """Send a ``notifications/message`` log entry to the client (gated)."""
        notification = types.JSONRPCNotification(
            jsonrpc="2.0",
            method="notifications/message",
            params={"level": level, "logger": self._logger_name, "data": data},
        )
        return await self.send(notification)

    # ── Inbound ───────────────────────────────────────────────────────────

    def parse_line(self, line: str) -> types.JSONRPCMessage | None:
        """Parse one inbound line, or return None for blank lines and noise."""
        text = line.strip()
        if not text:
            return None
        try:
            return types.jsonrpc_message_adapter.validate_json(text, by_name=False)
        except ValidationError as e:
            self.framing_faults += 1
            snippet = text if len(text) <= MAX_LOGGED_LINE else text[:MAX_LOGGED_LINE] + "..."
            logger.warning(
                "Ignoring malformed message on stdin (%s): %s",
                e.errors()[0].get("type", "invalid"),
                snippet,
            )
            return None

    def _absorb_framing_fault(self, exc: Exception, direction: str) -> None:
        """Count and log a framing fault so the session keeps running; re-raise anything else."""
        if not is_framing_fault(exc):
            raise exc
        self.framing_faults += 1
        logger.error("JSON parsing error on %s: %s", direction, fault_message(exc))

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def connect(
        self,
    ) -> AsyncIterator[
        tuple[
            MemoryObjectReceiveStream[SessionMessage | Exception],
            MemoryObjectSendStream[SessionMessage],
        ]
    ]:
        """Attach to stdin/stdout and yield the server loop's read/write streams."""
        if self._state is not ChannelState.CONNECTING:
            raise RuntimeError(f"Channel already connected (state: {self._state.value})")

        stdin = self._stdin
        if stdin is None:
            stdin = anyio.wrap_file(TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace"))
        if self._stdout is None:
            self._stdout = anyio.wrap_file(TextIOWrapper(sys.stdout.buffer, encoding="utf-8"))

        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

        async def stdin_reader() -> None:
            try:
                async with read_stream_writer:
                    async for line in stdin:
                        try:
                            message = self.parse_line(line)
                        except Exception as e:
                            self._absorb_framing_fault(e, "stdin")
                            continue
                        if message is None:
                            continue
                        await read_stream_writer.send(SessionMessage(message))
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                await anyio.lowlevel.checkpoint()

        async def stdout_writer() -> None:
            try:
                async with write_stream_reader:
                    async for session_message in write_stream_reader:
                        try:
                            await self.send(session_message.message)
                        except Exception as e:
                            self._absorb_framing_fault(e, "stdout")
            except anyio.ClosedResourceError:
                await anyio.lowlevel.checkpoint()

        async with anyio.create_task_group() as tg:
            tg.start_soon(stdin_reader)
            tg.start_soon(stdout_writer)
            self._state = ChannelState.GATED
            logger.debug("Channel attached to stdio, notifications gated")
            try:
                yield read_stream, write_stream
            finally:
                # The server loop is done with both ends; let the writer drain and stop.
                write_stream.close()
                read_stream.close()
