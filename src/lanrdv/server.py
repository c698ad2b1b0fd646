from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, Tuple, Union

from .config import ServerConfig
from .net import UdpEndpoint
from .node import EventKind, Node, TimerKind
from .packet import Endpoint, Frame, MalformedMessage, MessageType, UnknownMessageType, parse_payload
from .timers import Scheduler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientRecord:
    endpoint: Endpoint
    last_seen: float
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.endpoint.key


class DiscoveryServer(Node):
    """Answers discovery, registers clients, and evicts the silent ones.

    Events: ``connection(record, snapshot)``, ``close(record, snapshot)``,
    ``message(endpoint, raw)``. ``snapshot`` is a copy of the registry taken
    after the change.
    """

    def __init__(self, config: ServerConfig | None = None, scheduler: Scheduler | None = None):
        super().__init__(scheduler)
        self.config = config or ServerConfig()
        self._clients: dict[str, ClientRecord] = {}

    @property
    def clients(self) -> Mapping[str, ClientRecord]:
        return MappingProxyType(self._clients)

    @property
    def disconnect_timeout_s(self) -> float:
        return self.config.disconnect_timeout_ms / 1000.0

    def start(self, udp: UdpEndpoint | None = None) -> None:
        if self.running:
            raise RuntimeError("server already started")
        self.config.validate()
        if udp is None:
            udp = UdpEndpoint.bound(self.config.listen_host, self.config.listen_port)
        self._attach(udp)
        logger.info("server listening; local=%s:%d", *udp.local_address)
        self._arm(TimerKind.SWEEP, self.config.monitor_interval_ms / 1000.0, self.sweep, periodic=True)

    def stop(self) -> None:
        if not self.running:
            return
        self._shutdown()
        # nothing is persisted; a restarted server rebuilds the registry
        self._clients.clear()
        logger.info("server stopped")

    def send(self, raw: Union[bytes, str], port: int, address: str) -> None:
        data = raw.encode("utf-8") if isinstance(raw, str) else raw
        self._sendto(data, (address, port))

    def _reply(self, frame: Frame, to: Endpoint) -> None:
        self._sendto(frame.to_bytes(), to)

    # -- registry

    def _snapshot(self) -> dict[str, ClientRecord]:
        # detached copies: later keepalives must not show through old snapshots
        return {key: replace(record, payload=dict(record.payload)) for key, record in self._clients.items()}

    def _register(self, endpoint: Endpoint, payload: dict[str, Any]) -> ClientRecord:
        record = ClientRecord(endpoint=endpoint, last_seen=self.scheduler.now(), payload=payload)
        self._clients[endpoint.key] = record
        logger.info("client connected; endpoint=%s clients=%d", endpoint, len(self._clients))
        self._emit(EventKind.CONNECTION, record, self._snapshot())
        return record

    def _evict(self, key: str, reason: str) -> None:
        record = self._clients.pop(key, None)
        if record is None:
            return
        logger.info("client closed; endpoint=%s reason=%s clients=%d", key, reason, len(self._clients))
        self._emit(EventKind.CLOSE, record, self._snapshot())

    def sweep(self) -> int:
        """Evict every client silent for longer than the disconnect timeout."""
        now = self.scheduler.now()
        stale = [
            key
            for key, record in self._clients.items()
            if now - record.last_seen > self.disconnect_timeout_s
        ]
        for key in stale:
            self._evict(key, "timeout")
        return len(stale)

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

        if frame.type is MessageType.DISCOVER_REQ:
            self._on_discover_req(frame, source)
        elif frame.type is MessageType.CONNECT_REQ:
            self._on_connect_req(frame, source)
        elif frame.type is MessageType.KEEPALIVE_REQ:
            self._on_keepalive_req(frame, source)
        elif frame.type is MessageType.ERROR:
            self._on_error(frame, source)
        else:
            # acks are never addressed to a server; hand them to the host
            self._emit(EventKind.MESSAGE, source, data)

    def _on_discover_req(self, frame: Frame, source: Endpoint) -> None:
        logger.debug("discover; seq=%d from=%s", frame.seq, source)
        self._reply(Frame.ack(MessageType.DISCOVER_ACK, frame.seq), source)

    def _on_connect_req(self, frame: Frame, source: Endpoint) -> None:
        if source.key in self._clients:
            # unclean reconnection: close the old record, make the client start over
            self._evict(source.key, "reconnect")
            self._reply(Frame.error(frame.seq, frame.type), source)
            return
        self._register(source, parse_payload(frame.payload))
        self._reply(Frame.ack(MessageType.CONNECT_ACK, frame.seq), source)

    def _on_keepalive_req(self, frame: Frame, source: Endpoint) -> None:
        record = self._clients.get(source.key)
        if record is None:
            logger.debug("keepalive from unknown client %s; seq=%d", source, frame.seq)
            self._reply(Frame.error(frame.seq, frame.type), source)
            return
        record.last_seen = max(record.last_seen, self.scheduler.now())
        self._reply(Frame.ack(MessageType.KEEPALIVE_ACK, frame.seq), source)

    def _on_error(self, frame: Frame, source: Endpoint) -> None:
        self._evict(source.key, "error")
        self._reply(Frame.error(frame.seq, frame.type), source)
