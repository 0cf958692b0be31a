"""
Desktop Commander: an MCP stdio server with a persisted configuration store.

The server answers JSON-RPC over stdin/stdout, keeps its settings in a small
JSON document, and withholds notifications until the client has finished the
initialization handshake.
"""

from .channel import ChannelState, HandshakeGatedChannel
from .config_store import ConfigStore, coerce_config_value, validate_config_value
from .errors import ConfigError, ErrorKind, LoadResult, WriteOutcome, WriteResult
from .fault_boundary import FaultBoundary
from .server import Orchestrator, build_server, main
from .settings import VERSION

__version__ = VERSION

__all__ = [
    "ChannelState",
    "ConfigError",
    "ConfigStore",
    "ErrorKind",
    "FaultBoundary",
    "HandshakeGatedChannel",
    "LoadResult",
    "Orchestrator",
    "WriteOutcome",
    "WriteResult",
    "build_server",
    "coerce_config_value",
    "main",
    "validate_config_value",
]
