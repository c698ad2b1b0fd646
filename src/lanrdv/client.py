from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Union

from .config import ClientConfig
from .net import UdpEndpoint
from .node import EventKind, Node, TimerKind
from .packet import Endpoint, Frame, MalformedMessage, MessageType, UnknownMessageType
from .timers import Scheduler

logger = logging.getLogger(__name__)


class ClientState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(slots=True)
class ClientSession:
    payload: dict[str, Any] = field(default_factory=dict)
    state: ClientState = ClientState.DISCONNECTED
    server: Optional[Endpoint] = None
    last_sent_seq: int = -1
    # request type still waiting for its ack, if any
    pending: Optional[MessageType] = None

    def next_seq(self) -> int:
        self.last_sent_seq += 1
        return self.last_sent_seq


class DiscoveryClient(Node):
    """Finds a server by broadcast, connects, and keeps the connection alive.

    Events: ``connection(server)``, ``close()``, ``message(endpoint, raw)``.
    """

    def __init__(self, config: ClientConfig | None = None, scheduler: Scheduler | None = None):
        super().__init__(scheduler)
        self.config = config or ClientConfig()
        self.session = ClientSession(payload=dict(self.config.payload))

    @property
    def state(self) -> ClientState:
        return self.session.state

    @property
    def server(self) -> Optional[Endpoint]:
        return self.session.server

    def start(self, udp: UdpEndpoint | None = None) -> None:
        if self.running:
            raise RuntimeError("client already started")
        self.config.validate()
        if udp is None:
            udp = UdpEndpoint.bound("0.0.0.0", self.config.local_port, broadcast=True)
        self._attach(udp)
        logger.info(
            "client started; local=%s:%d broadcast=%s:%d",
            *udp.local_address,
            self.config.broadcast_address,
            self.config.broadcast_port,
        )
        self._start_discovery()

    def stop(self) -> None:
        if not self.running:
            return
        was_connected = self.session.state is ClientState.CONNECTED
        self.session.state = ClientState.DISCONNECTED
        self.session.server = None
        self.session.pending = None
        self._shutdown()
        logger.info("client stopped")
        if was_connected:
            self._emit(EventKind.CLOSE)

    def send(self, raw: Union[bytes, str]) -> bool:
        server = self.session.server
        if server is None or not self.running:
            logger.warning("send() without a server; dropped")
            return False
        data = raw.encode("utf-8") if isinstance(raw, str) else raw
        self._sendto(data, server)
        return True

    # -- outbound

    def _start_discovery(self) -> None:
        self.session.state = ClientState.DISCOVERING
        self.session.server = None
        self._send_discover()
        self._arm(
            TimerKind.DISCOVER,
            self.config.discover_interval_ms / 1000.0,
            self._send_discover,
            periodic=True,
        )

    def _send_discover(self) -> None:
        seq = self.session.next_seq()
        self.session.pending = MessageType.DISCOVER_REQ
        logger.debug("discover; seq=%d", seq)
        target = (self.config.broadcast_address, self.config.broadcast_port)
        self._sendto(Frame.request(MessageType.DISCOVER_REQ, seq).to_bytes(), target)

    def _send_request(self, kind: MessageType) -> None:
        server = self.session.server
        if server is None:
            raise RuntimeError(f"{kind.value} with no server selected")
        seq = self.session.next_seq()
        self.session.pending = kind
        logger.debug("%s; seq=%d server=%s", kind.value, seq, server)
        self._sendto(Frame.request(kind, seq, self.session.payload).to_bytes(), server)
        self._arm(TimerKind.WATCHDOG, self.config.ack_timeout_ms / 1000.0, self._on_watchdog)

    def _send_keepalive(self) -> None:
        self._send_request(MessageType.KEEPALIVE_REQ)

    # -- inbound

    def handle_datagram(self, data: bytes, addr: Tuple[Any, ...]) -> None:
        source = Endpoint.of(addr)
        try:
            frame = Frame.from_bytes(data)
        except UnknownMessageType:
            self._emit(EventKind.MESSAGE, source, data)
            return
        except MalformedMessage as exc:
            logger.debug("malformed frame from %s: %s", source, exc)
            return

        if frame.type is MessageType.DISCOVER_ACK:
            self._on_discover_ack(frame, source)
        elif frame.type is MessageType.CONNECT_ACK:
            self._on_connect_ack(frame, source)
        elif frame.type is MessageType.KEEPALIVE_ACK:
            self._on_keepalive_ack(frame, source)
        elif frame.type is MessageType.ERROR:
            self._on_error(frame, source)
        else:
            logger.debug("ignoring %s from %s", frame.type.value, source)

    def _is_current(self, frame: Frame, source: Endpoint, awaiting: Optional[MessageType]) -> bool:
        s = self.session
        current = (
            s.pending is not None
            and (awaiting is None or s.pending is awaiting)
            and frame.seq == s.last_sent_seq
            and (s.server is None or source == s.server)
        )
        if not current:
            logger.debug(
                "stale %s seq=%d from %s; outstanding=%s seq=%d",
                frame.type.value,
                frame.seq,
                source,
                s.pending.value if s.pending else None,
                s.last_sent_seq,
            )
        return current

    def _on_discover_ack(self, frame: Frame, source: Endpoint) -> None:
        if not self._is_current(frame, source, MessageType.DISCOVER_REQ):
            return
        self._disarm(TimerKind.DISCOVER)
        self.session.server = source
        self.session.pending = None
        self.session.state = ClientState.CONNECTING
        logger.info("server discovered; server=%s", source)
        self._send_request(MessageType.CONNECT_REQ)

    def _on_connect_ack(self, frame: Frame, source: Endpoint) -> None:
        if not self._is_current(frame, source, MessageType.CONNECT_REQ):
            return
        self._disarm(TimerKind.WATCHDOG)
        self.session.pending = None
        self.session.state = ClientState.CONNECTED
        logger.info("connected; server=%s", source)
        # keepalive and watchdog go out before listeners run, so a failing
        # listener cannot leave the session connected with no timers armed
        self._send_keepalive()
        self._emit(EventKind.CONNECTION, source)

    def _on_keepalive_ack(self, frame: Frame, source: Endpoint) -> None:
        if not self._is_current(frame, source, MessageType.KEEPALIVE_REQ):
            return
        self._disarm(TimerKind.WATCHDOG)
        self.session.pending = None
        self._arm(TimerKind.KEEPALIVE, self.config.keepalive_interval_ms / 1000.0, self._send_keepalive)

    def _on_error(self, frame: Frame, source: Endpoint) -> None:
        if not self._is_current(frame, source, None):
            return
        offending = frame.payload.decode("utf-8", errors="replace") or "-"
        self._reset(f"error from server ({offending})")

    def _on_watchdog(self) -> None:
        pending = self.session.pending
        self._reset(f"no ack for {pending.value if pending else 'request'}")

    def _reset(self, reason: str) -> None:
        s = self.session
        was_connected = s.state is ClientState.CONNECTED
        self._disarm_all()
        logger.info("session reset; reason=%s state=%s seq=%d", reason, s.state.value, s.last_sent_seq)
        s.state = ClientState.DISCONNECTED
        s.server = None
        s.pending = None
        # burn a sequence so replies to the abandoned request can never match
        s.next_seq()
        if was_connected:
            self._emit(EventKind.CLOSE)
        if self.running:
            self._start_discovery()
