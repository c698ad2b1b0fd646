from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass

from .constants import DEFAULT_BROADCAST_ADDRESS, DEFAULT_BROADCAST_PORT
from .net import UdpEndpoint
from .packet import Endpoint, Frame, MalformedMessage, MessageType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProbeResult:
    server: Endpoint
    rtt_ms: float


def probe_servers(
    *,
    broadcast_port: int = DEFAULT_BROADCAST_PORT,
    broadcast_address: str = DEFAULT_BROADCAST_ADDRESS,
    window_ms: int = 500,
    udp: UdpEndpoint | None = None,
) -> list[ProbeResult]:
    """Broadcast one DISCOVER_REQ and collect every server that answers it.

    Never registers anywhere: discovery has no side effects on servers.
    """
    own = udp is None
    if udp is None:
        udp = UdpEndpoint.bound("0.0.0.0", 0, broadcast=True)

    seq = random.randrange(0, 1 << 31)
    found: dict[str, ProbeResult] = {}
    try:
        start = time.monotonic()
        udp.sendto(Frame.request(MessageType.DISCOVER_REQ, seq).to_bytes(), (broadcast_address, broadcast_port))
        deadline = start + window_ms / 1000.0

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            udp.settimeout(remaining)
            try:
                raw, addr = udp.recvfrom()
            except (socket.timeout, TimeoutError):
                break
            except ConnectionResetError:
                continue

            try:
                frame = Frame.from_bytes(raw)
            except MalformedMessage:
                continue
            if frame.type is not MessageType.DISCOVER_ACK or frame.seq != seq:
                continue

            server = Endpoint.of(addr)
            if server.key not in found:
                rtt_ms = (time.monotonic() - start) * 1000
                found[server.key] = ProbeResult(server=server, rtt_ms=rtt_ms)
                logger.debug("probe answer; server=%s rtt_ms=%.2f", server, rtt_ms)
    finally:
        if own:
            udp.close()

    return sorted(found.values(), key=lambda r: r.rtt_ms)
