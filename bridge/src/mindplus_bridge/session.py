"""Session registry: peer liveness and correlation bookkeeping.

Provides:
- Session: per-peer state owned by the registry
- SessionRegistry: single-writer registry mutated only on the tick loop

The transport thread never mutates a Session. It queues requests with
request_touch / request_disconnect / request_reset, and the tick loop applies
them at the start of sweep_stale. Staleness is measured in ticks.
Peers whose sessions a sweep closes are handed back through take_released so
the transport can forget them.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum

from mindplus_bridge.errors import ErrorCode
from mindplus_bridge.protocol import DEDUP_WINDOW, DEFAULT_HEARTBEAT_TIMEOUT_TICKS

logger = logging.getLogger(__name__)

# Upper bound on queued transport requests between two sweeps
MAX_PENDING_REQUESTS = 4096


class SessionState(str, Enum):
    """Lifecycle state of a session."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    STALE = "stale"
    CLOSED = "closed"


class RequestKind(Enum):
    """Kinds of request the transport thread can queue for the registry."""

    TOUCH = "touch"
    DISCONNECT = "disconnect"
    RESET = "reset"


@dataclass(frozen=True, slots=True)
class RegistryRequest:
    """A registry mutation requested from the transport thread."""

    kind: RequestKind
    peer_id: bytes = b""
    handshake: bool = False
    serial: int = 0


@dataclass
class Session:
    """Server-side bookkeeping for one connected peer.

    Attributes:
        id: Registry-unique session id, never reused
        peer_id: Transport identity of the peer
        last_seen_tick: Tick on which traffic from the peer was last applied
        state: Lifecycle state
        pending_correlation_ids: Validated commands not yet completed
        stale_since: Tick on which the session became STALE, if it is STALE
        last_inbound_sequence: Highest command sequence accepted so far
        closed_reason: Why the session was closed
    """

    id: int
    peer_id: bytes
    last_seen_tick: int
    state: SessionState = SessionState.CONNECTING
    pending_correlation_ids: set[int] = field(default_factory=set)
    stale_since: int | None = None
    last_inbound_sequence: int = -1
    closed_reason: str = ""
    _completed: OrderedDict[int, None] = field(default_factory=OrderedDict, repr=False)

    def has_seen(self, correlation_id: int) -> bool:
        """Check whether a correlation id is pending or recently completed."""
        return (
            correlation_id in self.pending_correlation_ids
            or correlation_id in self._completed
        )


class SessionRegistry:
    """Tracks connected peers, their correlation ids and liveness.

    Request methods (request_*) are safe to call from any thread. Every
    other method must be called from the tick loop only.
    """

    def __init__(
        self,
        heartbeat_timeout_ticks: int = DEFAULT_HEARTBEAT_TIMEOUT_TICKS,
        dedup_window: int = DEDUP_WINDOW,
    ) -> None:
        self.heartbeat_timeout_ticks = heartbeat_timeout_ticks
        self.dedup_window = dedup_window
        self._sessions: dict[bytes, Session] = {}
        self._ids = itertools.count(1)
        self._closed: list[Session] = []
        self._requests: deque[RegistryRequest] = deque()
        self._requests_lock = threading.Lock()
        self._serial = 0
        self._released: deque[tuple[bytes, int]] = deque(maxlen=MAX_PENDING_REQUESTS)
        self.dropped_requests = 0

    # ------------------------------------------------------------------
    # Transport-side requests
    # ------------------------------------------------------------------

    def _enqueue(
        self, kind: RequestKind, peer_id: bytes = b"", handshake: bool = False
    ) -> int:
        with self._requests_lock:
            self._serial += 1
            request = RegistryRequest(kind, peer_id, handshake, self._serial)
            if self._requests and kind is RequestKind.TOUCH:
                last = self._requests[-1]
                if last.kind is RequestKind.TOUCH and last.peer_id == peer_id:
                    if handshake and not last.handshake:
                        self._requests[-1] = request
                    return request.serial
            full = len(self._requests) >= MAX_PENDING_REQUESTS
            if kind is RequestKind.TOUCH and full:
                self.dropped_requests += 1
                return request.serial
            self._requests.append(request)
            return request.serial

    def request_touch(self, peer_id: bytes, handshake: bool = False) -> int:
        """Record traffic from a peer. Applied on the next sweep.

        Args:
            peer_id: Transport identity of the peer
            handshake: True when the traffic was a version-checked HEARTBEAT

        Returns:
            The request serial, compared against take_released() serials
        """
        return self._enqueue(RequestKind.TOUCH, peer_id, handshake)

    def request_disconnect(self, peer_id: bytes) -> int:
        """Ask for a peer's session to be closed on the next sweep."""
        return self._enqueue(RequestKind.DISCONNECT, peer_id)

    def request_reset(self) -> None:
        """Mark every live session STALE on the next sweep.

        Queued by the transport after a socket failure: peers must
        reconnect and will get fresh sessions.
        """
        self._enqueue(RequestKind.RESET)

    def take_released(self) -> list[tuple[bytes, int]]:
        """Return and forget peers released since the last call.

        A peer is released when a sweep disconnects it or closes its session
        as stale. Each entry carries the serial of the last request that
        sweep could have seen; traffic with a higher serial arrived later
        and belongs to a new session.

        Safe to call from any thread.
        """
        with self._requests_lock:
            released = list(self._released)
            self._released.clear()
        return released

    def _release(self, peer_id: bytes, serial: int) -> None:
        with self._requests_lock:
            self._released.append((peer_id, serial))

    # ------------------------------------------------------------------
    # Tick-loop side
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> tuple[Session, ...]:
        """Live (not CLOSED) sessions."""
        return tuple(self._sessions.values())

    def get(self, peer_id: bytes) -> Session | None:
        """Get the live session for a peer, or None."""
        return self._sessions.get(peer_id)

    def _close(self, session: Session, reason: str) -> None:
        session.state = SessionState.CLOSED
        session.closed_reason = reason
        discarded = len(session.pending_correlation_ids)
        session.pending_correlation_ids.clear()
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]
        self._closed.append(session)
        logger.info(
            "Session %d closed (%s), discarded %d pending correlation id(s)",
            session.id,
            reason,
            discarded,
        )

    def register_or_touch(
        self, peer_id: bytes, now: int, handshake: bool = False
    ) -> Session:
        """Return the live session for a peer, creating one on first contact.

        A STALE session touched again is closed and replaced by a new
        session with a fresh id and an empty correlation space.

        Args:
            peer_id: Transport identity of the peer
            now: Current tick
            handshake: True when the traffic completed the version handshake

        Returns:
            The peer's live session
        """
        session = self._sessions.get(peer_id)
        if session is not None and session.state is SessionState.STALE:
            self._close(session, "replaced")
            session = None

        if session is None:
            session = Session(id=next(self._ids), peer_id=peer_id, last_seen_tick=now)
            self._sessions[peer_id] = session
            logger.info("Session %d opened for peer %s", session.id, peer_id.hex())

        session.last_seen_tick = now
        if handshake and session.state is SessionState.CONNECTING:
            session.state = SessionState.ACTIVE
            logger.info("Session %d active", session.id)
        return session

    def validate(
        self, correlation_id: int, peer_id: bytes, sequence: int | None = None
    ) -> bool:
        """Check that a command may be applied and record it as pending.

        Returns:
            True if admit() accepted the command
        """
        return self.admit(correlation_id, peer_id, sequence) is None

    def admit(
        self, correlation_id: int, peer_id: bytes, sequence: int | None = None
    ) -> ErrorCode | None:
        """Record a command as pending, or say why it cannot be applied.

        Args:
            correlation_id: The command's correlation id
            peer_id: Transport identity of the sender
            sequence: Envelope sequence, which must exceed the last accepted

        Returns:
            None if the command was recorded as pending, otherwise
            HANDSHAKE_REQUIRED or SESSION_STALE for a session that is not
            ACTIVE, DUPLICATE for a reused correlation id and OUT_OF_ORDER
            for a sequence at or below the last accepted one
        """
        session = self._sessions.get(peer_id)
        if session is None or session.state is SessionState.CONNECTING:
            return ErrorCode.HANDSHAKE_REQUIRED
        if session.state is not SessionState.ACTIVE:
            return ErrorCode.SESSION_STALE
        if session.has_seen(correlation_id):
            logger.warning(
                "Duplicate correlation id %d from session %d",
                correlation_id,
                session.id,
            )
            return ErrorCode.DUPLICATE
        if sequence is not None and sequence <= session.last_inbound_sequence:
            logger.warning(
                "Out of order sequence %d (last %d) from session %d",
                sequence,
                session.last_inbound_sequence,
                session.id,
            )
            return ErrorCode.OUT_OF_ORDER

        session.pending_correlation_ids.add(correlation_id)
        if sequence is not None:
            session.last_inbound_sequence = sequence
        return None

    def complete(self, peer_id: bytes, correlation_id: int) -> None:
        """Move a correlation id from pending into the dedup window."""
        session = self._sessions.get(peer_id)
        if session is None:
            return
        session.pending_correlation_ids.discard(correlation_id)
        session._completed[correlation_id] = None
        while len(session._completed) > self.dedup_window:
            session._completed.popitem(last=False)

    def sweep_stale(self, now: int) -> list[Session]:
        """Apply queued requests and advance session liveness.

        Sessions silent for longer than the heartbeat timeout become STALE;
        sessions already STALE before this sweep become CLOSED. Disconnected
        and stale-closed peers are queued for take_released().

        Args:
            now: Current tick

        Returns:
            Sessions closed since the previous sweep
        """
        with self._requests_lock:
            requests = list(self._requests)
            self._requests.clear()
            seen_serial = self._serial

        for request in requests:
            if request.kind is RequestKind.TOUCH:
                self.register_or_touch(request.peer_id, now, request.handshake)
            elif request.kind is RequestKind.DISCONNECT:
                session = self._sessions.get(request.peer_id)
                if session is not None:
                    self._close(session, "disconnect")
                self._release(request.peer_id, request.serial)
            elif request.kind is RequestKind.RESET:
                for session in self._sessions.values():
                    if session.state is not SessionState.STALE:
                        session.state = SessionState.STALE
                        session.stale_since = now
                logger.warning(
                    "Transport reset, %d session(s) marked stale", len(self._sessions)
                )

        for session in list(self._sessions.values()):
            if session.state is SessionState.STALE:
                if session.stale_since is not None and session.stale_since < now:
                    self._close(session, "stale")
                    self._release(session.peer_id, seen_serial)
            elif now - session.last_seen_tick > self.heartbeat_timeout_ticks:
                session.state = SessionState.STALE
                session.stale_since = now
                logger.info(
                    "Session %d stale (last seen tick %d, now %d)",
                    session.id,
                    session.last_seen_tick,
                    now,
                )

        closed = self._closed
        self._closed = []
        return closed

    def active_recipients(self) -> tuple[bytes, ...]:
        """Peer ids of every ACTIVE session, as an immutable copy."""
        return tuple(
            peer_id
            for peer_id, session in self._sessions.items()
            if session.state is SessionState.ACTIVE
        )
