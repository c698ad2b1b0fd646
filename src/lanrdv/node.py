from __future__ import annotations

import enum
import logging
import socket
from typing import Any, Callable, Optional, Tuple

from .constants import MAX_POLL_S
from .net import UdpEndpoint
from .timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

Listener = Callable[..., None]


class EventKind(str, enum.Enum):
    CONNECTION = "connection"
    CLOSE = "close"
    MESSAGE = "message"


class TimerKind(str, enum.Enum):
    DISCOVER = "discover"
    KEEPALIVE = "keepalive"
    WATCHDOG = "watchdog"
    SWEEP = "sweep"


class Node:
    """Socket + timers + observers shared by client and server.

    Subclasses implement ``handle_datagram``. Everything runs on the thread
    that calls ``poll``/``serve_forever``.
    """

    def __init__(self, scheduler: Scheduler | None = None):
        self.scheduler = scheduler or Scheduler()
        self.udp: Optional[UdpEndpoint] = None
        self._timers: dict[TimerKind, TimerHandle] = {}
        self._listeners: dict[EventKind, list[Listener]] = {kind: [] for kind in EventKind}
        self._running = False

    # -- observers

    def on(self, kind: EventKind, callback: Listener) -> Listener:
        self._listeners[EventKind(kind)].append(callback)
        return callback

    def off(self, kind: EventKind, callback: Listener) -> None:
        self._listeners[EventKind(kind)].remove(callback)

    def _emit(self, kind: EventKind, *args: Any) -> None:
        for callback in list(self._listeners[kind]):
            callback(*args)

    # -- timers, one slot per kind

    def _arm(self, kind: TimerKind, delay_s: float, callback: Callable[[], None], periodic: bool = False) -> TimerHandle:
        self._disarm(kind)
        if periodic:
            handle = self.scheduler.call_every(delay_s, callback, name=kind.value)
        else:
            handle = self.scheduler.call_later(delay_s, callback, name=kind.value)
        self._timers[kind] = handle
        return handle

    def _disarm(self, kind: TimerKind) -> None:
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _disarm_all(self) -> None:
        for kind in list(self._timers):
            self._disarm(kind)

    def armed(self, kind: TimerKind) -> bool:
        handle = self._timers.get(kind)
        return handle is not None and handle.active

    # -- transport

    def _attach(self, udp: UdpEndpoint) -> None:
        self.udp = udp
        self._running = True

    def _sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self.udp is None:
            logger.debug("not started; dropping %d bytes to %s:%d", len(data), addr[0], addr[1])
            return
        self.udp.sendto(data, addr)

    def handle_datagram(self, data: bytes, addr: Tuple[Any, ...]) -> None:
        raise NotImplementedError

    @property
    def running(self) -> bool:
        return self._running

    def poll(self, timeout: Optional[float] = MAX_POLL_S) -> bool:
        """Wait for one datagram or the next timer, whichever comes first.

        Returns True if a datagram was dispatched.
        """
        if self.udp is None:
            raise RuntimeError("poll() before start()")

        wait = self.scheduler.time_until_next()
        if wait is None or (timeout is not None and wait > timeout):
            wait = timeout

        got = False
        self.udp.settimeout(wait)
        try:
            data, addr = self.udp.recvfrom()
        except (socket.timeout, TimeoutError, BlockingIOError):
            pass
        except ConnectionResetError:
            # ICMP port-unreachable surfacing on some platforms
            pass
        else:
            self.handle_datagram(data, addr)
            got = True

        if self._running:
            self.scheduler.run_due()
        return got

    def serve_forever(self, poll_interval: float = MAX_POLL_S) -> None:
        while self._running:
            try:
                self.poll(poll_interval)
            except OSError:
                if not self._running:
                    # socket closed underneath us by stop()
                    break
                raise

    def _shutdown(self) -> None:
        self._running = False
        self._disarm_all()
        if self.udp is not None:
            self.udp.close()
            self.udp = None
