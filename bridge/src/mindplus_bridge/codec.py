"""Envelope codec: length-prefixed binary frames with msgpack payloads.

Frame layout (big-endian)::

    uint32 length | uint16 version | uint8 kind | uint64 correlation_id
    | uint64 sequence | payload

``length`` counts every byte after the prefix. The payload is a msgpack map
validated against the pydantic model registered for the envelope kind.
"""

from __future__ import annotations

from typing import Any

import msgpack
from pydantic import ValidationError

from mindplus_bridge.errors import DecodeError, DecodeFailure
from mindplus_bridge.models import (
    PAYLOAD_MODELS,
    BaseBridgeModel,
    Envelope,
    MessageKind,
)
from mindplus_bridge.protocol import (
    ENVELOPE_HEADER,
    LENGTH_PREFIX,
    MAX_MESSAGE_SIZE,
    SCHEMA_VERSION,
)


def pack_payload(model: BaseBridgeModel) -> bytes:
    """Serialize a payload model to msgpack bytes.

    Args:
        model: The payload to serialize

    Returns:
        Deterministic msgpack encoding of the model's fields
    """
    return msgpack.packb(model.model_dump(mode="json"), use_bin_type=True)


def unpack_payload(kind: MessageKind, payload: bytes) -> BaseBridgeModel:
    """Deserialize and validate a payload for the given envelope kind.

    Args:
        kind: Envelope kind selecting the payload schema
        payload: msgpack bytes

    Returns:
        The validated payload model

    Raises:
        DecodeError: CORRUPT_PAYLOAD if the bytes are not valid msgpack or
            fail schema validation
    """
    try:
        data: Any = msgpack.unpackb(payload, raw=False)
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        raise DecodeError(DecodeFailure.CORRUPT_PAYLOAD, f"invalid msgpack: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError(
            DecodeFailure.CORRUPT_PAYLOAD,
            f"payload must be a map, got {type(data).__name__}",
        )

    try:
        return PAYLOAD_MODELS[kind].model_validate(data)
    except ValidationError as e:
        raise DecodeError(
            DecodeFailure.CORRUPT_PAYLOAD,
            f"{kind.name} payload failed validation: {e.error_count()} error(s)",
        ) from e


class EnvelopeCodec:
    """Encodes and decodes framed envelopes for one schema version.

    Attributes:
        version: The negotiated schema version accepted by decode
        max_message_size: Largest frame body accepted, in bytes
    """

    def __init__(
        self,
        version: int = SCHEMA_VERSION,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        self.version = version
        self.max_message_size = max_message_size

    def encode(self, envelope: Envelope) -> bytes:
        """Encode an envelope into a length-prefixed frame.

        Args:
            envelope: The envelope to encode

        Returns:
            The frame bytes
        """
        body_length = ENVELOPE_HEADER.size + len(envelope.payload)
        return b"".join(
            (
                LENGTH_PREFIX.pack(body_length),
                ENVELOPE_HEADER.pack(
                    envelope.version,
                    int(envelope.kind),
                    envelope.correlation_id,
                    envelope.sequence,
                ),
                envelope.payload,
            )
        )

    def decode(self, data: bytes) -> Envelope:
        """Decode a frame into an envelope, validating its payload.

        Args:
            data: Raw frame bytes

        Returns:
            The decoded Envelope

        Raises:
            DecodeError: TRUNCATED, VERSION_MISMATCH or CORRUPT_PAYLOAD
        """
        envelope, _ = self.decode_message(data)
        return envelope

    def decode_message(self, data: bytes) -> tuple[Envelope, BaseBridgeModel]:
        """Decode a frame into an envelope and its validated payload model.

        Args:
            data: Raw frame bytes

        Returns:
            Tuple of (envelope, payload model)

        Raises:
            DecodeError: TRUNCATED, VERSION_MISMATCH or CORRUPT_PAYLOAD
        """
        if len(data) < LENGTH_PREFIX.size:
            raise DecodeError(DecodeFailure.TRUNCATED, "missing length prefix")

        (declared,) = LENGTH_PREFIX.unpack_from(data, 0)
        if declared > self.max_message_size:
            raise DecodeError(
                DecodeFailure.CORRUPT_PAYLOAD,
                f"declared length {declared} exceeds {self.max_message_size}",
            )

        available = len(data) - LENGTH_PREFIX.size
        if available < declared or declared < ENVELOPE_HEADER.size:
            raise DecodeError(
                DecodeFailure.TRUNCATED,
                f"declared {declared} bytes, received {available}",
            )
        if available > declared:
            raise DecodeError(
                DecodeFailure.CORRUPT_PAYLOAD,
                f"{available - declared} trailing bytes after frame",
            )

        version, kind_value, correlation_id, sequence = ENVELOPE_HEADER.unpack_from(
            data, LENGTH_PREFIX.size
        )

        if version != self.version:
            raise DecodeError(
                DecodeFailure.VERSION_MISMATCH,
                f"expected version {self.version}, got {version}",
            )

        try:
            kind = MessageKind(kind_value)
        except ValueError as e:
            raise DecodeError(
                DecodeFailure.CORRUPT_PAYLOAD, f"unknown kind {kind_value}"
            ) from e

        payload = bytes(data[LENGTH_PREFIX.size + ENVELOPE_HEADER.size :])
        model = unpack_payload(kind, payload)

        envelope = Envelope(
            version=version,
            kind=kind,
            correlation_id=correlation_id,
            sequence=sequence,
            payload=payload,
        )
        return envelope, model

    def make_envelope(
        self,
        kind: MessageKind,
        model: BaseBridgeModel,
        *,
        correlation_id: int = 0,
        sequence: int = 0,
    ) -> Envelope:
        """Build an envelope for a payload model at this codec's version."""
        return Envelope(
            version=self.version,
            kind=kind,
            correlation_id=correlation_id,
            sequence=sequence,
            payload=pack_payload(model),
        )


_default_codec = EnvelopeCodec()


def encode(envelope: Envelope) -> bytes:
    """Encode an envelope with the default codec."""
    return _default_codec.encode(envelope)


def decode(data: bytes) -> Envelope:
    """Decode a frame with the default codec."""
    return _default_codec.decode(data)
