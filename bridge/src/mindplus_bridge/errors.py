"""Exception hierarchy for the optimizer bridge.

Only FatalInitError is meant to reach the host. Everything else is handled
inside the bridge and surfaces as an ERROR envelope or a log entry.
"""

from __future__ import annotations

from enum import Enum


class DecodeFailure(str, Enum):
    """Reason a byte sequence could not be decoded into an Envelope."""

    TRUNCATED = "truncated"
    VERSION_MISMATCH = "version_mismatch"
    CORRUPT_PAYLOAD = "corrupt_payload"


class ErrorCode(str, Enum):
    """Codes carried in ERROR envelope payloads."""

    DECODE_ERROR = "decode_error"
    VERSION_MISMATCH = "version_mismatch"
    OVERFLOW = "overflow"
    UNKNOWN_ACTION = "unknown_action"
    MISSING_PARAMETER = "missing_parameter"
    TICK_ELAPSED = "tick_elapsed"
    UNKNOWN_ENTITY = "unknown_entity"
    ENTITY_LOOKUP_FAILED = "entity_lookup_failed"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    HANDSHAKE_REQUIRED = "handshake_required"
    SESSION_STALE = "session_stale"
    APPLY_FAILED = "apply_failed"


class BridgeError(Exception):
    """Base class for all bridge errors."""


class DecodeError(BridgeError):
    """Malformed wire data. The message is dropped, the connection kept."""

    def __init__(self, reason: DecodeFailure, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class CommandValidationError(BridgeError):
    """Well-formed command that cannot be applied to the simulation."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        super().__init__(message)


class TransportError(BridgeError):
    """Socket I/O failure. Triggers reconnect with backoff."""


class QueueOverflowError(BridgeError):
    """A bounded queue is at capacity."""


class FatalInitError(BridgeError):
    """The bridge could not start. Surfaced to the host."""
