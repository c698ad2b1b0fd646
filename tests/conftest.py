from __future__ import annotations

import socket
from collections import deque
from typing import Optional, Tuple

import pytest

from lanrdv.packet import Frame
from lanrdv.timers import Scheduler


class ManualClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeEndpoint:
    """Records outbound datagrams; serves queued inbound ones."""

    def __init__(self, local: Tuple[str, int] = ("0.0.0.0", 40000)):
        self.local_address = local
        self.sent: list[tuple[bytes, tuple]] = []
        self.inbox: deque[tuple[bytes, tuple]] = deque()
        self.closed = False
        self.timeout: Optional[float] = None

    def sendto(self, data: bytes, addr: tuple) -> None:
        self.sent.append((data, tuple(addr)))

    def settimeout(self, timeout_s: Optional[float]) -> None:
        self.timeout = timeout_s

    def recvfrom(self, bufsize: int = 4096) -> tuple[bytes, tuple]:
        if not self.inbox:
            raise socket.timeout("timed out")
        return self.inbox.popleft()

    def close(self) -> None:
        self.closed = True

    def take(self) -> list[tuple[bytes, tuple]]:
        out, self.sent = self.sent, []
        return out

    def last_frame(self) -> Frame:
        return Frame.from_bytes(self.sent[-1][0])


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> Scheduler:
    return Scheduler(clock=clock)


@pytest.fixture
def udp() -> FakeEndpoint:
    return FakeEndpoint()


@pytest.fixture
def advance(clock: ManualClock, scheduler: Scheduler):
    """Move the clock forward, firing every timer due on the way, in order."""

    def _advance(seconds: float) -> None:
        target = clock.now + seconds
        while True:
            deadline = scheduler.next_deadline()
            if deadline is None or deadline > target:
                break
            clock.now = max(clock.now, deadline)
            scheduler.run_due()
        clock.now = target

    return _advance
