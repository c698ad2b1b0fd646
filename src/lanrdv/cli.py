from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Mapping

from .client import DiscoveryClient
from .config import ClientConfig, ConfigError, ServerConfig
from .constants import (
    DEFAULT_ACK_TIMEOUT_MS,
    DEFAULT_BROADCAST_ADDRESS,
    DEFAULT_BROADCAST_PORT,
    DEFAULT_DISCONNECT_TIMEOUT_MS,
    DEFAULT_DISCOVER_INTERVAL_MS,
    DEFAULT_KEEPALIVE_INTERVAL_MS,
    DEFAULT_MONITOR_INTERVAL_MS,
)
from .net import Impairment, UdpEndpoint
from .node import EventKind, Node
from .packet import Endpoint
from .probe import probe_servers
from .server import ClientRecord, DiscoveryServer


def _emit(args: argparse.Namespace, payload: dict[str, Any]) -> None:
    print(json.dumps(payload) if args.json else payload, flush=True)


def _run(node: Node) -> int:
    try:
        node.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        node.stop()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    config = ServerConfig(
        listen_port=args.listen_port,
        listen_host=args.listen_host,
        monitor_interval_ms=args.monitor_interval_ms,
        disconnect_timeout_ms=args.disconnect_timeout_ms,
    )
    config.validate()
    server = DiscoveryServer(config)

    def clients_view(snapshot: Mapping[str, ClientRecord]) -> dict[str, Any]:
        return {key: record.payload for key, record in snapshot.items()}

    server.on(
        EventKind.CONNECTION,
        lambda record, snapshot: _emit(
            args,
            {"event": "connection", "client": record.key, "payload": record.payload, "clients": clients_view(snapshot)},
        ),
    )
    server.on(
        EventKind.CLOSE,
        lambda record, snapshot: _emit(
            args,
            {"event": "close", "client": record.key, "clients": clients_view(snapshot)},
        ),
    )
    server.on(
        EventKind.MESSAGE,
        lambda endpoint, raw: _emit(
            args,
            {"event": "message", "from": str(endpoint), "data": raw.decode("utf-8", errors="replace")},
        ),
    )

    udp = UdpEndpoint.bound(config.listen_host, config.listen_port, impairment=Impairment(args.loss_rate, args.delay_ms))
    server.start(udp)
    return _run(server)


def cmd_connect(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except ValueError as exc:
        raise ConfigError(f"--payload is not valid JSON: {exc}") from None

    config = ClientConfig(
        local_port=args.local_port,
        broadcast_port=args.broadcast_port,
        broadcast_address=args.broadcast_address,
        discover_interval_ms=args.discover_interval_ms,
        keepalive_interval_ms=args.keepalive_interval_ms,
        ack_timeout_ms=args.ack_timeout_ms,
        payload=payload,
    )
    config.validate()
    client = DiscoveryClient(config)

    def on_connection(server: Endpoint) -> None:
        _emit(args, {"event": "connection", "server": str(server)})
        if args.hello:
            client.send(args.hello)

    client.on(EventKind.CONNECTION, on_connection)
    client.on(EventKind.CLOSE, lambda: _emit(args, {"event": "close"}))
    client.on(
        EventKind.MESSAGE,
        lambda endpoint, raw: _emit(
            args,
            {"event": "message", "from": str(endpoint), "data": raw.decode("utf-8", errors="replace")},
        ),
    )

    udp = UdpEndpoint.bound("0.0.0.0", config.local_port, broadcast=True, impairment=Impairment(args.loss_rate, args.delay_ms))
    client.start(udp)
    return _run(client)


def cmd_probe(args: argparse.Namespace) -> int:
    results = probe_servers(
        broadcast_port=args.broadcast_port,
        broadcast_address=args.broadcast_address,
        window_ms=args.window_ms,
    )
    payload = {
        "role": "probe",
        "servers": [{"server": str(r.server), "rtt_ms": round(r.rtt_ms, 3)} for r in results],
    }
    print(json.dumps(payload, indent=2) if args.json else payload)
    return 0 if results else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="lanrdv", description="LAN discovery + keepalive over UDP.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--json", action="store_true")

    def add_impairment(x: argparse.ArgumentParser) -> None:
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate packet loss")
        x.add_argument("--delay-ms", type=int, default=0, help="simulate send/recv delay")

    def add_broadcast(x: argparse.ArgumentParser) -> None:
        x.add_argument("--broadcast-port", type=int, default=DEFAULT_BROADCAST_PORT)
        x.add_argument("--broadcast-address", default=DEFAULT_BROADCAST_ADDRESS)

    serve = sub.add_parser("serve", help="run the rendezvous server")
    add_common(serve)
    add_impairment(serve)
    serve.add_argument("--listen-host", default="0.0.0.0")
    serve.add_argument("--listen-port", type=int, default=DEFAULT_BROADCAST_PORT)
    serve.add_argument("--monitor-interval-ms", type=int, default=DEFAULT_MONITOR_INTERVAL_MS)
    serve.add_argument("--disconnect-timeout-ms", type=int, default=DEFAULT_DISCONNECT_TIMEOUT_MS)
    serve.set_defaults(func=cmd_serve)

    connect = sub.add_parser("connect", help="discover a server and stay connected")
    add_common(connect)
    add_impairment(connect)
    add_broadcast(connect)
    connect.add_argument("--local-port", type=int, default=0)
    connect.add_argument("--discover-interval-ms", type=int, default=DEFAULT_DISCOVER_INTERVAL_MS)
    connect.add_argument("--keepalive-interval-ms", type=int, default=DEFAULT_KEEPALIVE_INTERVAL_MS)
    connect.add_argument("--ack-timeout-ms", type=int, default=DEFAULT_ACK_TIMEOUT_MS)
    connect.add_argument("--payload", default="{}", help='JSON object sent with connect/keepalive, e.g. \'{"hostname":"h"}\'')
    connect.add_argument("--hello", default=None, help="raw message to send to the server on each connection")
    connect.set_defaults(func=cmd_connect)

    probe = sub.add_parser("probe", help="list servers answering a single broadcast")
    add_common(probe)
    add_broadcast(probe)
    probe.add_argument("--window-ms", type=int, default=500)
    probe.set_defaults(func=cmd_probe)

    args = p.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        return int(args.func(args))
    except (ConfigError, OSError) as exc:
        print(f"lanrdv: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
