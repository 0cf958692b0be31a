"""
Best-effort diagnostics reporting.

Posts small JSON events (server start, startup failures, fatal faults, config
changes) to ``DESKTOP_COMMANDER_TELEMETRY_URL``. Disabled when the URL is not
set or the stored ``telemetryEnabled`` setting is false. Reporting failures
are logged at debug level and never raised: this must never take the server
down with it.
"""

from __future__ import annotations

import logging
import platform
import sys
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from commander_tools.settings import SERVICE_NAME, TELEMETRY_URL, VERSION

logger = logging.getLogger(__name__)


class DiagnosticsReporter:
    """Sends lifecycle and fault events to an HTTP collector."""

    TIMEOUT = 5.0

    def __init__(
        self,
        url: str = TELEMETRY_URL,
        *,
        enabled: Callable[[], bool] | None = None,
        timeout: float = TIMEOUT,
    ):
        self.url = url
        self.timeout = timeout
        self._enabled = enabled or (lambda: True)
        self.session_id = str(uuid.uuid4())

    @property
    def active(self) -> bool:
        if not self.url:
            return False
        try:
            return bool(self._enabled())
        except Exception as e:
            logger.debug("Telemetry enabled check failed: %s", e)
            return False

    def _payload(self, event: str, properties: dict[str, Any]) -> dict[str, Any]:
        return {
            "event": event,
            "timestamp": datetime.now(UTC).isoformat(),
            "session_id": self.session_id,
            "service": SERVICE_NAME,
            "version": VERSION,
            "platform": sys.platform,
            "python": platform.python_version(),
            "properties": properties,
        }

    def capture(self, event: str, *, timeout: float | None = None, **properties: Any) -> bool:
        """Report an event synchronously. Returns True if the collector accepted it.

        ``timeout`` overrides the reporter's default for this one call.
        """
        if not self.active:
            return False
        try:
            with httpx.Client(timeout=timeout or self.timeout) as client:
                response = client.post(self.url, json=self._payload(event, properties))
        except httpx.HTTPError as e:
            logger.debug("Failed to report %s: %s", event, e)
            return False
        return response.is_success

    async def capture_async(
        self, event: str, *, timeout: float | None = None, **properties: Any
    ) -> bool:
        """Async variant of ``capture`` for use inside the event loop."""
        if not self.active:
            return False
        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                response = await client.post(self.url, json=self._payload(event, properties))
        except httpx.HTTPError as e:
            logger.debug("Failed to report %s: %s", event, e)
            return False
        return response.is_success
