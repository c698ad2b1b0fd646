from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional, Tuple


class MalformedMessage(ValueError):
    pass


class UnknownMessageType(MalformedMessage):
    """Leading token is not a protocol type; the datagram is not ours."""


class MessageType(str, enum.Enum):
    DISCOVER_REQ = "DISCOVER_REQ"
    DISCOVER_ACK = "DISCOVER_ACK"
    CONNECT_REQ = "CONNECT_REQ"
    CONNECT_ACK = "CONNECT_ACK"
    KEEPALIVE_REQ = "KEEPALIVE_REQ"
    KEEPALIVE_ACK = "KEEPALIVE_ACK"
    ERROR = "ERROR"


class Endpoint(NamedTuple):
    address: str
    port: int

    @property
    def key(self) -> str:
        return f"{self.address}:{self.port}"

    def __str__(self) -> str:
        return self.key

    @classmethod
    def of(cls, addr: Tuple[Any, ...]) -> "Endpoint":
        # recvfrom() may hand back 4-tuples on dual-stack sockets
        return cls(str(addr[0]), int(addr[1]))


@dataclass(frozen=True, slots=True)
class Frame:
    type: MessageType
    seq: int
    payload: bytes = b""

    def to_bytes(self) -> bytes:
        head = f"{self.type.value} {self.seq}".encode("utf-8")
        if not self.payload:
            return head
        return head + b" " + self.payload

    @staticmethod
    def from_bytes(raw: bytes) -> "Frame":
        parts = raw.split(b" ", 2)
        token = parts[0].decode("utf-8", errors="replace")
        try:
            kind = MessageType(token)
        except ValueError:
            raise UnknownMessageType(f"unknown message type: {token[:32]!r}") from None

        if len(parts) < 2:
            raise MalformedMessage(f"{kind.value}: missing sequence")
        seq_field = parts[1].strip()
        if not seq_field.isdigit():
            raise MalformedMessage(f"{kind.value}: bad sequence {seq_field[:32]!r}")

        payload = parts[2] if len(parts) == 3 else b""
        return Frame(type=kind, seq=int(seq_field), payload=payload)

    @staticmethod
    def request(kind: MessageType, seq: int, payload: Optional[dict[str, Any]] = None) -> "Frame":
        return Frame(type=kind, seq=seq, payload=b"" if payload is None else dump_payload(payload))

    @staticmethod
    def ack(kind: MessageType, seq: int) -> "Frame":
        return Frame(type=kind, seq=seq)

    @staticmethod
    def error(seq: int, offending: MessageType) -> "Frame":
        return Frame(type=MessageType.ERROR, seq=seq, payload=offending.value.encode("utf-8"))


def encode(kind: MessageType, seq: int, payload: Optional[bytes] = None) -> bytes:
    if seq < 0:
        raise ValueError(f"sequence must be non-negative: {seq}")
    return Frame(type=kind, seq=seq, payload=payload or b"").to_bytes()


def decode(raw: bytes) -> Frame:
    return Frame.from_bytes(raw)


def dump_payload(payload: dict[str, Any]) -> bytes:
    # compact separators keep the payload free of field delimiters
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def parse_payload(raw: bytes) -> dict[str, Any]:
    """Decode a request payload, falling back to ``{}`` on anything unusable."""
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}
