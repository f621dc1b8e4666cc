"""Protocol constants and framing layout for the optimizer bridge.

Handles:
- Protocol constants (endpoint, schema version, limits)
- Binary frame header layout
- Endpoint formatting
"""

from __future__ import annotations

import struct

# =============================================================================
# Protocol Constants
# =============================================================================

# Default optimizer endpoint (loopback only)
DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 5590

# Wire schema version negotiated through the HEARTBEAT exchange
SCHEMA_VERSION: int = 1

# Reconnection settings
DEFAULT_RECONNECT_DELAY: float = 1.0  # seconds
DEFAULT_MAX_RECONNECT_DELAY: float = 10.0  # seconds
DEFAULT_MAX_RECONNECT_ATTEMPTS: int = 5
DEFAULT_RETRY_WINDOW: float = 5.0  # seconds

# Queue sizing
DEFAULT_QUEUE_CAPACITY: int = 256

# Session bookkeeping
DEFAULT_HEARTBEAT_TIMEOUT_TICKS: int = 100
DEDUP_WINDOW: int = 1024  # completed correlation ids remembered per session

# Largest accepted frame body
MAX_MESSAGE_SIZE: int = 10 * 1024 * 1024  # 10 MB

# Transport send loop poll interval when the outbound queue is empty
SEND_POLL_INTERVAL: float = 0.005  # seconds


# =============================================================================
# Frame Layout
# =============================================================================

# uint32 length prefix covering everything after it
LENGTH_PREFIX = struct.Struct(">I")

# uint16 version, uint8 kind, uint64 correlation id, uint64 sequence
ENVELOPE_HEADER = struct.Struct(">HBQQ")

UINT64_MAX: int = 2**64 - 1


def format_endpoint(host: str, port: int, *, bind: bool = True) -> str:
    """Build a ZeroMQ TCP endpoint string.

    Args:
        host: Host or interface address
        port: TCP port
        bind: Whether the endpoint is used for bind (wildcard allowed)

    Returns:
        The endpoint, e.g. "tcp://127.0.0.1:5590"
    """
    if bind and host in ("", "0.0.0.0"):
        return f"tcp://*:{port}"
    return f"tcp://{host}:{port}"
