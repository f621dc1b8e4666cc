"""Async optimizer-side client for the bridge.

A DEALER socket that:
1. Connects to the bridge's ROUTER socket
2. Completes the HEARTBEAT handshake, retrying with exponential backoff
3. Sends commands with fresh correlation ids and increasing sequences
4. Receives snapshots, acks, errors and heartbeat replies
5. Says goodbye on close
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from typing import Any

import zmq
import zmq.asyncio

from mindplus_bridge.codec import EnvelopeCodec
from mindplus_bridge.errors import DecodeError
from mindplus_bridge.models import (
    BaseBridgeModel,
    Command,
    Envelope,
    Heartbeat,
    MessageKind,
)
from mindplus_bridge.protocol import (
    DEFAULT_HOST,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_RECONNECT_DELAY,
    DEFAULT_PORT,
    DEFAULT_RECONNECT_DELAY,
    SCHEMA_VERSION,
    format_endpoint,
)

logger = logging.getLogger(__name__)

Message = tuple[Envelope, BaseBridgeModel]


class OptimizerClient:
    """DEALER client that talks to a bridge.

    Attributes:
        host: Bridge host to connect to
        port: Bridge port to connect to
        reconnect_delay: Base delay for handshake retries, in seconds
        max_reconnect_delay: Cap on the retry delay, in seconds
        max_reconnect_attempts: Handshake attempts before giving up
        handshake_timeout: Seconds to wait for each HEARTBEAT reply
    """

    def __init__(
        self,
        *,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        schema_version: int = SCHEMA_VERSION,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        handshake_timeout: float = 1.0,
        identity: bytes | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.codec = EnvelopeCodec(schema_version)
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.handshake_timeout = handshake_timeout
        self.identity = identity

        self._context: zmq.asyncio.Context | None = None
        self._socket: zmq.asyncio.Socket | None = None
        self._correlation_ids = itertools.count(1)
        self._sequence = 0
        self._backlog: deque[Message] = deque()
        self.handshaken = False

    @property
    def endpoint(self) -> str:
        return format_endpoint(self.host, self.port, bind=False)

    @property
    def is_connected(self) -> bool:
        """Check if the socket is open and the handshake completed."""
        return self._socket is not None and self.handshaken

    def _open(self) -> zmq.asyncio.Socket:
        if self._socket is None:
            if self._context is None:
                self._context = zmq.asyncio.Context()
            socket = self._context.socket(zmq.DEALER)
            socket.setsockopt(zmq.LINGER, 0)
            if self.identity is not None:
                socket.setsockopt(zmq.IDENTITY, self.identity)
            socket.connect(self.endpoint)
            self._socket = socket
        return self._socket

    async def _send(
        self, kind: MessageKind, model: BaseBridgeModel, correlation_id: int
    ) -> None:
        socket = self._open()
        self._sequence += 1
        envelope = self.codec.make_envelope(
            kind, model, correlation_id=correlation_id, sequence=self._sequence
        )
        await socket.send(self.codec.encode(envelope))

    async def connect(self) -> bool:
        """Send a HEARTBEAT and wait for the bridge to answer it.

        Returns:
            True if the bridge replied within handshake_timeout
        """
        correlation_id = await self.send_heartbeat()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.handshake_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "No handshake reply from %s within %.2fs",
                    self.endpoint,
                    self.handshake_timeout,
                )
                return False
            message = await self._recv(remaining)
            if message is None:
                continue
            envelope, _ = message
            if (
                envelope.kind is MessageKind.HEARTBEAT
                and envelope.correlation_id == correlation_id
            ):
                self.handshaken = True
                logger.info("Connected to bridge at %s", self.endpoint)
                return True
            self._backlog.append(message)

    async def connect_with_retry(self) -> bool:
        """Complete the handshake with exponential backoff retry.

        Backoff is reconnect_delay * 2^(attempt-1), bounded by
        max_reconnect_delay.

        Returns:
            True if the handshake succeeded, False if all attempts failed
        """
        attempt = 0

        while attempt < self.max_reconnect_attempts:
            if await self.connect():
                return True

            attempt += 1
            if attempt < self.max_reconnect_attempts:
                backoff = min(
                    self.reconnect_delay * (2 ** (attempt - 1)),
                    self.max_reconnect_delay,
                )
                logger.info(
                    "Handshake attempt %d/%d failed, retrying in %.2fs",
                    attempt,
                    self.max_reconnect_attempts,
                    backoff,
                )
                await asyncio.sleep(backoff)

        logger.error(
            "Failed to reach bridge after %d attempts", self.max_reconnect_attempts
        )
        return False

    async def send_heartbeat(self, goodbye: bool = False) -> int:
        """Send a HEARTBEAT.

        Args:
            goodbye: Ask the bridge to close this session

        Returns:
            The correlation id the reply will carry
        """
        correlation_id = next(self._correlation_ids)
        heartbeat = Heartbeat(sent_at=int(time.time() * 1000), goodbye=goodbye)
        await self._send(MessageKind.HEARTBEAT, heartbeat, correlation_id)
        return correlation_id

    async def send_command(
        self,
        action: str,
        parameters: dict[str, Any] | None = None,
        *,
        target_tick: int | None = None,
        correlation_id: int | None = None,
    ) -> int:
        """Send a COMMAND.

        Args:
            action: Action name, e.g. "set_render_distance"
            parameters: Action parameters
            target_tick: Reject the command if this tick has already passed
            correlation_id: Reuse a specific correlation id (a fresh one by default)

        Returns:
            The command's correlation id
        """
        if correlation_id is None:
            correlation_id = next(self._correlation_ids)
        command = Command(
            correlation_id=correlation_id,
            target_tick=target_tick,
            action=action,
            parameters=parameters or {},
        )
        await self._send(MessageKind.COMMAND, command, correlation_id)
        logger.debug("Sent %s as correlation id %d", action, correlation_id)
        return correlation_id

    async def _recv(self, timeout: float | None) -> Message | None:
        socket = self._open()
        try:
            if timeout is None:
                data = await socket.recv()
            else:
                data = await asyncio.wait_for(socket.recv(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        try:
            return self.codec.decode_message(data)
        except DecodeError as e:
            logger.warning("Dropping malformed message from bridge: %s", e)
            return None

    async def receive(self, timeout: float | None = None) -> Message | None:
        """Receive the next envelope and its payload model.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely

        Returns:
            (envelope, payload) or None on timeout
        """
        if self._backlog:
            return self._backlog.popleft()
        return await self._recv(timeout)

    async def wait_for(
        self,
        kind: MessageKind,
        *,
        correlation_id: int | None = None,
        timeout: float = 5.0,
    ) -> Message | None:
        """Receive until an envelope of a kind (and correlation id) arrives.

        Envelopes that do not match are discarded.

        Returns:
            The matching (envelope, payload), or None on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            message = await self.receive(remaining)
            if message is None:
                continue
            envelope, _ = message
            if envelope.kind is kind and (
                correlation_id is None or envelope.correlation_id == correlation_id
            ):
                return message

    async def close(self, goodbye: bool = True) -> None:
        """Close the socket, optionally telling the bridge first."""
        if self._socket is not None:
            linger = 0
            if goodbye and self.handshaken:
                await self.send_heartbeat(goodbye=True)
                linger = 100  # ms, lets the goodbye leave the socket
            self._socket.close(linger=linger)
            self._socket = None
        if self._context is not None:
            self._context.term()
            self._context = None
        self.handshaken = False
        self._backlog.clear()
        logger.info("Client closed")

    async def __aenter__(self) -> OptimizerClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
