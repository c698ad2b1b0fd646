from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from .constants import BUFFER_SIZE

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    delay_ms: int = 0

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and random.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class UdpEndpoint:
    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def bound(
        cls,
        host: str,
        port: int,
        broadcast: bool = False,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            if broadcast:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        return cls(sock, impairment)

    @property
    def local_address(self) -> Tuple[str, int]:
        host, port = self.sock.getsockname()[:2]
        return host, port

    def settimeout(self, timeout_s: Optional[float]) -> None:
        self.sock.settimeout(timeout_s)

    def sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self.impairment.should_drop():
            logger.debug("dropped outbound %d bytes to %s:%d", len(data), addr[0], addr[1])
            return
        self.impairment.sleep_if_needed()
        try:
            self.sock.sendto(data, addr)
        except OSError as exc:
            # datagrams are fire-and-forget; the protocol's own retries cover loss
            logger.warning("send to %s:%d failed: %s", addr[0], addr[1], exc)

    def recvfrom(self, bufsize: int = BUFFER_SIZE) -> Tuple[bytes, Tuple[str, int]]:
        while True:
            data, addr = self.sock.recvfrom(bufsize)
            if self.impairment.should_drop():
                logger.debug("dropped inbound %d bytes from %s:%d", len(data), addr[0], addr[1])
                continue
            self.impairment.sleep_if_needed()
            return data, addr

    def close(self) -> None:
        self.sock.close()
