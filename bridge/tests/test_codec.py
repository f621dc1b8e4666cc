"""Tests for the envelope codec.

These tests verify the codec correctly:
1. Frames envelopes with a length prefix and a fixed header
2. Round-trips every payload kind
3. Classifies truncated, mismatched and corrupt frames
"""

from __future__ import annotations

import msgpack
import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from mindplus_bridge import codec as codec_module
from mindplus_bridge.codec import EnvelopeCodec, pack_payload, unpack_payload
from mindplus_bridge.errors import DecodeError, DecodeFailure, ErrorCode
from mindplus_bridge.models import (
    Ack,
    BaseBridgeModel,
    Command,
    EntityState,
    Envelope,
    ErrorReport,
    Heartbeat,
    MessageKind,
    Snapshot,
)
from mindplus_bridge.protocol import (
    ENVELOPE_HEADER,
    LENGTH_PREFIX,
    SCHEMA_VERSION,
    UINT64_MAX,
)


def _snapshot() -> Snapshot:
    return Snapshot(
        tick=40,
        timestamp=1_700_000_000_000,
        entities=(
            EntityState(entity_id=1, entity_type="zombie", x=1.5, y=64.0, z=-3.25),
            EntityState(
                entity_id=2,
                entity_type="villager",
                attributes={"health": 20.0, "baby": True, "profession": "farmer"},
            ),
        ),
    )


# =============================================================================
# Happy Path Tests
# =============================================================================


class TestRoundTrip:
    """Tests that decode inverts encode."""

    def test_command_round_trip(self, codec: EnvelopeCodec) -> None:
        """A command survives encode/decode with header fields intact."""
        command = Command(
            correlation_id=7,
            target_tick=120,
            action="move_entity",
            parameters={"entity_id": 3, "x": 1.0, "y": 2.0, "z": 3.0},
        )
        envelope = codec.make_envelope(
            MessageKind.COMMAND, command, correlation_id=7, sequence=3
        )

        decoded, model = codec.decode_message(codec.encode(envelope))

        assert decoded == envelope
        assert model == command

    def test_snapshot_round_trip(self, codec: EnvelopeCodec) -> None:
        """Entities and their attributes survive the round trip."""
        snapshot = _snapshot()
        envelope = codec.make_envelope(MessageKind.SNAPSHOT, snapshot, sequence=1)

        _, model = codec.decode_message(codec.encode(envelope))

        assert model == snapshot
        assert isinstance(model, Snapshot)
        assert model.entities[1].attributes["baby"] is True

    @pytest.mark.parametrize(
        ("kind", "model"),
        [
            (MessageKind.HEARTBEAT, Heartbeat(sent_at=5, goodbye=True)),
            (MessageKind.ERROR, ErrorReport(code=ErrorCode.OVERFLOW, message="full")),
            (MessageKind.ACK, Ack(tick=99)),
        ],
    )
    def test_small_payload_round_trip(
        self, codec: EnvelopeCodec, kind: MessageKind, model: BaseBridgeModel
    ) -> None:
        """Heartbeat, error and ack payloads round-trip."""
        envelope = codec.make_envelope(kind, model, correlation_id=4)

        decoded, decoded_model = codec.decode_message(codec.encode(envelope))

        assert decoded.kind is kind
        assert decoded_model == model

    def test_module_level_helpers(self) -> None:
        """encode/decode use the current schema version."""
        envelope = Envelope(
            version=SCHEMA_VERSION,
            kind=MessageKind.ACK,
            correlation_id=1,
            sequence=1,
            payload=pack_payload(Ack(tick=1)),
        )

        assert codec_module.decode(codec_module.encode(envelope)) == envelope

    @given(
        correlation_id=st.integers(min_value=0, max_value=UINT64_MAX),
        sequence=st.integers(min_value=0, max_value=UINT64_MAX),
        action=st.text(max_size=20),
        parameters=st.dictionaries(
            st.text(max_size=8),
            st.one_of(
                st.booleans(),
                st.integers(min_value=-(2**63), max_value=UINT64_MAX),
                st.floats(allow_nan=False, allow_infinity=False),
                st.text(max_size=8),
            ),
            max_size=5,
        ),
    )
    def test_any_command_round_trips(
        self,
        correlation_id: int,
        sequence: int,
        action: str,
        parameters: dict[str, object],
    ) -> None:
        """Any representable command decodes to an equal command."""
        codec = EnvelopeCodec()
        command = Command(
            correlation_id=correlation_id, action=action, parameters=parameters
        )
        envelope = codec.make_envelope(
            MessageKind.COMMAND,
            command,
            correlation_id=correlation_id,
            sequence=sequence,
        )

        decoded, model = codec.decode_message(codec.encode(envelope))

        assert decoded.correlation_id == correlation_id
        assert decoded.sequence == sequence
        assert model == command


class TestWireLayout:
    """Tests for the frame layout."""

    def test_length_prefix_counts_body(self, codec: EnvelopeCodec) -> None:
        """The big-endian prefix is the number of bytes that follow it."""
        frame = codec.encode(codec.make_envelope(MessageKind.ACK, Ack(tick=1)))

        (length,) = LENGTH_PREFIX.unpack_from(frame, 0)

        assert length == len(frame) - LENGTH_PREFIX.size

    def test_header_fields(self, codec: EnvelopeCodec) -> None:
        """Version, kind, correlation id and sequence follow the prefix."""
        frame = codec.encode(
            codec.make_envelope(
                MessageKind.ACK, Ack(tick=1), correlation_id=0xABCD, sequence=9
            )
        )

        header = ENVELOPE_HEADER.unpack_from(frame, LENGTH_PREFIX.size)

        assert header == (SCHEMA_VERSION, int(MessageKind.ACK), 0xABCD, 9)

    def test_payload_is_msgpack_map(self, codec: EnvelopeCodec) -> None:
        """The payload is a plain msgpack map of the model's fields."""
        frame = codec.encode(codec.make_envelope(MessageKind.ACK, Ack(tick=12)))

        payload = frame[LENGTH_PREFIX.size + ENVELOPE_HEADER.size :]

        assert msgpack.unpackb(payload) == {"tick": 12}

    def test_envelope_requires_payload(self) -> None:
        """An envelope without payload bytes cannot be built."""
        with pytest.raises(ValidationError):
            Envelope(version=SCHEMA_VERSION, kind=MessageKind.ACK)

    def test_envelope_rejects_empty_payload(self) -> None:
        with pytest.raises(ValidationError):
            Envelope(version=SCHEMA_VERSION, kind=MessageKind.ACK, payload=b"")


# =============================================================================
# Error Condition Tests
# =============================================================================


class TestDecodeErrors:
    """Tests for malformed frames."""

    def _frame(self, codec: EnvelopeCodec) -> bytes:
        return codec.encode(
            codec.make_envelope(MessageKind.HEARTBEAT, Heartbeat(sent_at=1))
        )

    def test_empty_frame_is_truncated(self, codec: EnvelopeCodec) -> None:
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(b"")
        assert exc_info.value.reason is DecodeFailure.TRUNCATED

    def test_missing_bytes_are_truncated(self, codec: EnvelopeCodec) -> None:
        """A frame cut short of its declared length is TRUNCATED."""
        frame = self._frame(codec)

        with pytest.raises(DecodeError) as exc_info:
            codec.decode(frame[:-1])
        assert exc_info.value.reason is DecodeFailure.TRUNCATED

    def test_body_shorter_than_header_is_truncated(self, codec: EnvelopeCodec) -> None:
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(LENGTH_PREFIX.pack(3) + b"abc")
        assert exc_info.value.reason is DecodeFailure.TRUNCATED

    def test_version_mismatch(self, codec: EnvelopeCodec) -> None:
        """A frame from another schema version is rejected as such."""
        other = EnvelopeCodec(version=SCHEMA_VERSION + 1)
        frame = other.encode(
            other.make_envelope(MessageKind.HEARTBEAT, Heartbeat(sent_at=1))
        )

        with pytest.raises(DecodeError) as exc_info:
            codec.decode(frame)
        assert exc_info.value.reason is DecodeFailure.VERSION_MISMATCH

    def test_trailing_bytes_are_corrupt(self, codec: EnvelopeCodec) -> None:
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(self._frame(codec) + b"\x00")
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD

    def test_unknown_kind_is_corrupt(self, codec: EnvelopeCodec) -> None:
        payload = msgpack.packb({})
        body = ENVELOPE_HEADER.pack(SCHEMA_VERSION, 99, 0, 0) + payload
        frame = LENGTH_PREFIX.pack(len(body)) + body

        with pytest.raises(DecodeError) as exc_info:
            codec.decode(frame)
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD

    def test_header_only_frame_is_corrupt(self, codec: EnvelopeCodec) -> None:
        """A frame whose body is just the header carries no payload map."""
        body = ENVELOPE_HEADER.pack(SCHEMA_VERSION, int(MessageKind.ACK), 0, 0)
        frame = LENGTH_PREFIX.pack(len(body)) + body

        with pytest.raises(DecodeError) as exc_info:
            codec.decode(frame)
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD

    def test_non_map_payload_is_corrupt(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            unpack_payload(MessageKind.ACK, msgpack.packb([1, 2, 3]))
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD

    def test_invalid_msgpack_is_corrupt(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            unpack_payload(MessageKind.ACK, b"\xc1")
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD

    def test_schema_violation_is_corrupt(self) -> None:
        """A well-formed map missing required fields fails validation."""
        with pytest.raises(DecodeError) as exc_info:
            unpack_payload(MessageKind.COMMAND, msgpack.packb({"action": "x"}))
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD

    def test_oversized_frame_is_corrupt(self) -> None:
        """Frames declaring more than max_message_size are refused."""
        small = EnvelopeCodec(max_message_size=64)
        frame = small.encode(small.make_envelope(MessageKind.SNAPSHOT, _snapshot()))

        with pytest.raises(DecodeError) as exc_info:
            small.decode(frame)
        assert exc_info.value.reason is DecodeFailure.CORRUPT_PAYLOAD
