"""ZeroMQ transport channel running on its own thread and event loop.

The channel owns a ROUTER socket that DEALER peers (optimizers) talk to.
It:
1. Opens the socket on start() and reports failure as FatalInitError
2. Receives frames, decodes them and routes them to the registry and the
   inbound queue, answering heartbeats and overflow directly
3. Drains the outbound queue, numbering messages per peer
4. Reconnects with exponential backoff after socket errors
5. Closes the socket on every exit path

Delivery is at-most-once: a ROUTER silently drops messages for peers it no
longer knows, and nothing is resent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

import zmq
import zmq.asyncio

from mindplus_bridge.codec import EnvelopeCodec
from mindplus_bridge.errors import (
    DecodeError,
    DecodeFailure,
    ErrorCode,
    FatalInitError,
    QueueOverflowError,
    TransportError,
)
from mindplus_bridge.models import (
    BaseBridgeModel,
    Command,
    Envelope,
    ErrorReport,
    Heartbeat,
    MessageKind,
)
from mindplus_bridge.protocol import (
    DEFAULT_HOST,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_RECONNECT_DELAY,
    DEFAULT_PORT,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_RETRY_WINDOW,
    SEND_POLL_INTERVAL,
    format_endpoint,
)
from mindplus_bridge.queues import (
    InboundCommand,
    InboundQueue,
    OutboundMessage,
    OutboundQueue,
)
from mindplus_bridge.session import SessionRegistry

if TYPE_CHECKING:
    from mindplus_bridge.config import BridgeConfig

logger = logging.getLogger(__name__)

Frame = tuple[bytes, bytes]


class ChannelState(str, Enum):
    """Lifecycle state of the transport channel."""

    STOPPED = "stopped"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class TransportChannel:
    """ROUTER socket transport between the bridge and optimizer peers.

    Attributes:
        host: Address to bind (or connect) to
        port: TCP port
        bind: Bind when True, connect when False
        reconnect_delay: Base delay for exponential backoff, in seconds
        max_reconnect_delay: Backoff cap, in seconds
        max_reconnect_attempts: Attempts before giving up
        retry_window: Outbound messages older than this are dropped, in seconds
        startup_timeout: How long start() waits for the socket to open
    """

    def __init__(
        self,
        inbound: InboundQueue,
        outbound: OutboundQueue,
        registry: SessionRegistry,
        *,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        bind: bool = True,
        codec: EnvelopeCodec | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        retry_window: float = DEFAULT_RETRY_WINDOW,
        startup_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inbound = inbound
        self._outbound = outbound
        self._registry = registry
        self.host = host
        self.port = port
        self.bind = bind
        self.codec = codec if codec is not None else EnvelopeCodec()
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.retry_window = retry_window
        self.startup_timeout = startup_timeout
        self._clock = clock

        self.state = ChannelState.STOPPED
        self.expired_count = 0
        self.decode_error_count = 0

        self._sequences: dict[bytes, int] = {}
        self._last_heard: dict[bytes, int] = {}
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._init_error: TransportError | None = None
        self._opened = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._context: zmq.asyncio.Context | None = None
        self._socket: zmq.asyncio.Socket | None = None

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        inbound: InboundQueue,
        outbound: OutboundQueue,
        registry: SessionRegistry,
    ) -> TransportChannel:
        """Create a channel from bridge configuration."""
        return cls(
            inbound,
            outbound,
            registry,
            host=config.host,
            port=config.port,
            bind=config.bind,
            codec=EnvelopeCodec(config.schema_version, config.max_message_size),
            reconnect_delay=config.reconnect_delay,
            max_reconnect_delay=config.max_reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            retry_window=config.retry_window_seconds,
        )

    @property
    def endpoint(self) -> str:
        """The ZeroMQ endpoint this channel binds or connects to."""
        return format_endpoint(self.host, self.port, bind=self.bind)

    @property
    def is_connected(self) -> bool:
        """Check if the socket is currently open."""
        return self.state is ChannelState.OPEN

    # ------------------------------------------------------------------
    # Lifecycle (called from the host thread)
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open the socket on a dedicated thread.

        Blocks until the socket is open or has failed to open.

        Raises:
            FatalInitError: If the socket cannot bind or connect
        """
        if self._thread is not None and self._thread.is_alive():
            return

        self._ready.clear()
        self._init_error = None
        self._opened = False
        self._thread = threading.Thread(
            target=self._thread_main,
            name="mindplus-bridge-transport",
            daemon=True,
        )
        self._thread.start()

        if not self._ready.wait(self.startup_timeout):
            self.stop()
            raise FatalInitError(
                f"Transport did not open {self.endpoint} "
                f"within {self.startup_timeout:.1f}s"
            )
        if self._init_error is not None:
            self._thread.join(timeout=self.startup_timeout)
            raise FatalInitError(
                f"Cannot open {self.endpoint}: {self._init_error}"
            ) from self._init_error
        if not self._opened:
            self._thread.join(timeout=self.startup_timeout)
            raise FatalInitError(
                f"Transport thread exited before opening {self.endpoint} "
                f"(state {self.state.value})"
            )
        logger.info("Transport started on %s", self.endpoint)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loops, abandon in-flight sends and close the socket."""
        thread = self._thread
        if thread is None:
            return

        loop, stop_event = self._loop, self._stop_event
        if thread.is_alive() and loop is not None and stop_event is not None:
            with contextlib.suppress(RuntimeError):  # loop already closed
                loop.call_soon_threadsafe(stop_event.set)
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Transport thread did not exit within %.1fs", timeout)
        self._thread = None
        logger.info("Transport stopped")

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._run())
        except Exception as e:
            logger.error(
                "Transport thread crashed: %s: %s",
                type(e).__name__,
                e,
                exc_info=True,
            )
            self.state = ChannelState.FAILED
        finally:
            # Unblock start() if the loop died before opening the socket
            self._ready.set()

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._context = zmq.asyncio.Context()
        try:
            try:
                self._open()
                self._opened = True
            except TransportError as e:
                self._init_error = e
                self.state = ChannelState.FAILED
                return
            finally:
                self._ready.set()

            while not self._stop_event.is_set():
                try:
                    await self._serve()
                except TransportError as e:
                    logger.warning("Transport error on %s: %s", self.endpoint, e)
                    self._registry.request_reset()
                    if not await self._reconnect():
                        break
        finally:
            self._close_socket()
            self._context.destroy(linger=0)
            self._context = None
            if self.state not in (ChannelState.FAILED, ChannelState.DISCONNECTED):
                self.state = ChannelState.CLOSED

    # ------------------------------------------------------------------
    # Socket management (transport thread)
    # ------------------------------------------------------------------

    def _open(self) -> None:
        """Create the ROUTER socket and bind or connect it.

        Raises:
            TransportError: If the socket cannot be opened
        """
        if self._context is None:
            raise TransportError("no ZeroMQ context")

        action = "bind" if self.bind else "connect"
        socket = None
        try:
            socket = self._context.socket(zmq.ROUTER)
            socket.setsockopt(zmq.LINGER, 0)
            socket.setsockopt(zmq.MAXMSGSIZE, self.codec.max_message_size + 4)
            if self.bind:
                socket.bind(self.endpoint)
            else:
                socket.connect(self.endpoint)
        except zmq.ZMQError as e:
            if socket is not None:
                socket.close(linger=0)
            raise TransportError(f"cannot {action} {self.endpoint}: {e}") from e

        self._socket = socket
        self.state = ChannelState.OPEN

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep for up to ``timeout`` seconds; True if stop was requested."""
        if self._stop_event is None:
            await asyncio.sleep(timeout)
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _reconnect(self) -> bool:
        """Reopen the socket with exponential backoff.

        Backoff is reconnect_delay * 2^(attempt-1), capped at
        max_reconnect_delay.

        Returns:
            True if the socket is open again, False if retries ran out or a
            stop was requested
        """
        self.state = ChannelState.RECONNECTING
        self._close_socket()

        for attempt in range(1, self.max_reconnect_attempts + 1):
            backoff = min(
                self.reconnect_delay * (2 ** (attempt - 1)), self.max_reconnect_delay
            )
            logger.info(
                "Reconnect attempt %d/%d in %.2fs",
                attempt,
                self.max_reconnect_attempts,
                backoff,
            )
            if await self._wait_for_stop(backoff):
                return False
            try:
                self._open()
            except TransportError as e:
                logger.warning("Reconnect attempt %d failed: %s", attempt, e)
                continue
            logger.info("Reconnected to %s after %d attempt(s)", self.endpoint, attempt)
            return True

        self.state = ChannelState.DISCONNECTED
        logger.warning(
            "Persistent disconnect: gave up on %s after %d attempts",
            self.endpoint,
            self.max_reconnect_attempts,
        )
        return False

    async def _serve(self) -> None:
        """Run the receive and send loops until a stop or a socket error.

        Raises:
            TransportError: If either loop hit a socket error
        """
        if self._stop_event is None:
            return
        tasks = {
            asyncio.create_task(self._receive_loop()),
            asyncio.create_task(self._send_loop()),
        }
        stop_task = asyncio.create_task(self._stop_event.wait())
        done, pending = await asyncio.wait(
            tasks | {stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            if task is not stop_task:
                task.result()

    async def _send(self, peer_id: bytes, frame: bytes) -> None:
        if self._socket is None:
            raise TransportError("socket is closed")
        try:
            await self._socket.send_multipart([peer_id, frame])
        except zmq.ZMQError as e:
            raise TransportError(f"send failed: {e}") from e

    async def _receive_loop(self) -> None:
        while True:
            if self._socket is None:
                raise TransportError("socket is closed")
            try:
                frames = await self._socket.recv_multipart()
            except zmq.ZMQError as e:
                raise TransportError(f"receive failed: {e}") from e

            if len(frames) != 2:
                logger.warning("Ignoring %d-part message", len(frames))
                continue
            peer_id, data = frames
            for reply_peer, reply in self.handle_frame(peer_id, data):
                await self._send(reply_peer, reply)

    async def _send_loop(self) -> None:
        while True:
            message = self._outbound.pop()
            if message is None:
                await asyncio.sleep(SEND_POLL_INTERVAL)
                continue
            for peer_id, frame in self.frame_outbound(message):
                await self._send(peer_id, frame)

    # ------------------------------------------------------------------
    # Message handling (transport thread, no socket access)
    # ------------------------------------------------------------------

    def _next_sequence(self, peer_id: bytes) -> int:
        sequence = self._sequences.get(peer_id, 0) + 1
        self._sequences[peer_id] = sequence
        return sequence

    def prune_peers(self) -> int:
        """Forget the sequence counters of peers the registry has released.

        A peer heard from after its release keeps its counter: that traffic
        opens a new session.

        Returns:
            Number of counters dropped
        """
        pruned = 0
        for peer_id, serial in self._registry.take_released():
            if self._last_heard.get(peer_id, 0) > serial:
                continue
            self._last_heard.pop(peer_id, None)
            if self._sequences.pop(peer_id, None) is not None:
                pruned += 1
        if pruned:
            logger.debug("Forgot %d released peer(s)", pruned)
        return pruned

    def _direct(
        self,
        peer_id: bytes,
        kind: MessageKind,
        model: BaseBridgeModel,
        correlation_id: int = 0,
    ) -> Frame:
        envelope = self.codec.make_envelope(
            kind,
            model,
            correlation_id=correlation_id,
            sequence=self._next_sequence(peer_id),
        )
        return peer_id, self.codec.encode(envelope)

    def handle_frame(self, peer_id: bytes, data: bytes) -> list[Frame]:
        """Route one received frame.

        Args:
            peer_id: ROUTER identity of the sender
            data: The frame bytes

        Returns:
            Replies to send straight back (heartbeat answers and errors)
        """
        self.prune_peers()
        try:
            envelope, model = self.codec.decode_message(data)
        except DecodeError as e:
            self.decode_error_count += 1
            if e.reason is DecodeFailure.VERSION_MISMATCH:
                logger.warning("Rejecting peer %s: %s", peer_id.hex(), e)
                self._registry.request_disconnect(peer_id)
                return [
                    self._direct(
                        peer_id,
                        MessageKind.ERROR,
                        ErrorReport(code=ErrorCode.VERSION_MISMATCH, message=str(e)),
                    )
                ]
            logger.warning("Dropping malformed message from %s: %s", peer_id.hex(), e)
            return []

        if isinstance(model, Heartbeat):
            if model.goodbye:
                logger.info("Peer %s said goodbye", peer_id.hex())
                self._registry.request_disconnect(peer_id)
                return []
            self._last_heard[peer_id] = self._registry.request_touch(
                peer_id, handshake=True
            )
            return [
                self._direct(
                    peer_id,
                    MessageKind.HEARTBEAT,
                    Heartbeat(sent_at=int(time.time() * 1000)),
                    correlation_id=envelope.correlation_id,
                )
            ]

        if isinstance(model, Command):
            if model.correlation_id != envelope.correlation_id:
                self.decode_error_count += 1
                logger.warning(
                    "Dropping command from %s: header correlation id %d "
                    "does not match payload %d",
                    peer_id.hex(),
                    envelope.correlation_id,
                    model.correlation_id,
                )
                return []
            self._last_heard[peer_id] = self._registry.request_touch(peer_id)
            self._sequences.setdefault(peer_id, 0)
            try:
                self._inbound.push(InboundCommand(peer_id, envelope.sequence, model))
            except QueueOverflowError as e:
                logger.warning("%s", e)
                return [
                    self._direct(
                        peer_id,
                        MessageKind.ERROR,
                        ErrorReport(code=ErrorCode.OVERFLOW, message=str(e)),
                        correlation_id=model.correlation_id,
                    )
                ]
            return []

        logger.warning(
            "Ignoring %s envelope from peer %s", envelope.kind.name, peer_id.hex()
        )
        return []

    def frame_outbound(self, message: OutboundMessage) -> list[Frame]:
        """Number and encode an outbound message for each recipient.

        Messages older than the retry window are dropped, as are copies for
        peers the transport has not heard from or has since forgotten.

        Args:
            message: The queued message

        Returns:
            One (peer_id, frame) pair per known recipient
        """
        self.prune_peers()
        age = self._clock() - message.created_at
        if age > self.retry_window:
            self.expired_count += 1
            logger.warning(
                "Dropping %s from tick %d: %.2fs old exceeds retry window %.2fs",
                message.kind.name,
                message.tick,
                age,
                self.retry_window,
            )
            return []

        frames: list[Frame] = []
        for peer_id in message.recipients:
            if peer_id not in self._sequences:
                # ROUTER cannot route to a peer it has not heard from
                logger.debug(
                    "Skipping %s for unknown peer %s", message.kind.name, peer_id.hex()
                )
                continue
            envelope = Envelope(
                version=self.codec.version,
                kind=message.kind,
                correlation_id=message.correlation_id,
                sequence=self._next_sequence(peer_id),
                payload=message.payload,
            )
            frames.append((peer_id, self.codec.encode(envelope)))
        return frames
