from __future__ import annotations

BUFFER_SIZE = 4096

DEFAULT_BROADCAST_PORT = 58141
DEFAULT_BROADCAST_ADDRESS = "255.255.255.255"

DEFAULT_DISCOVER_INTERVAL_MS = 1000
DEFAULT_KEEPALIVE_INTERVAL_MS = 1000
DEFAULT_ACK_TIMEOUT_MS = 2000

DEFAULT_MONITOR_INTERVAL_MS = 1000
DEFAULT_DISCONNECT_TIMEOUT_MS = 4000

# upper bound on a single blocking recv so stop() is noticed promptly
MAX_POLL_S = 0.5
