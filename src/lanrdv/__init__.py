"""LAN rendezvous over UDP (lanrdv)

Clients find a single server by broadcast, connect to it, and keep the
connection alive with sequence-stamped keepalives:
- text framing lives in ``packet``, independent of any socket
- both sides are single-threaded state machines driven by ``Node.poll``
- every retry/watchdog is an explicit, cancellable ``TimerHandle``
"""

from .client import ClientSession, ClientState, DiscoveryClient
from .config import ClientConfig, ConfigError, ServerConfig
from .node import EventKind
from .packet import Endpoint, Frame, MalformedMessage, MessageType, UnknownMessageType
from .server import ClientRecord, DiscoveryServer
from .timers import Scheduler, TimerHandle

__all__ = [
    "ClientConfig",
    "ClientRecord",
    "ClientSession",
    "ClientState",
    "ConfigError",
    "DiscoveryClient",
    "DiscoveryServer",
    "Endpoint",
    "EventKind",
    "Frame",
    "MalformedMessage",
    "MessageType",
    "Scheduler",
    "ServerConfig",
    "TimerHandle",
    "UnknownMessageType",
]
