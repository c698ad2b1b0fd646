from __future__ import annotations

import pytest

from lanrdv.client import ClientState, DiscoveryClient
from lanrdv.config import ClientConfig, ConfigError
from lanrdv.node import EventKind, TimerKind
from lanrdv.packet import Endpoint, Frame, MessageType, parse_payload

BROADCAST = ("255.255.255.255", 58141)
SERVER = ("192.168.1.10", 58141)
OTHER = ("192.168.1.99", 58141)


@pytest.fixture
def client(scheduler, udp):
    config = ClientConfig(
        broadcast_port=58141,
        discover_interval_ms=1000,
        keepalive_interval_ms=1000,
        ack_timeout_ms=2000,
        payload={"hostname": "h"},
    )
    c = DiscoveryClient(config, scheduler=scheduler)
    c.events = []
    c.on(EventKind.CONNECTION, lambda server: c.events.append(("connection", server)))
    c.on(EventKind.CLOSE, lambda: c.events.append(("close",)))
    c.on(EventKind.MESSAGE, lambda ep, raw: c.events.append(("message", ep, raw)))
    c.start(udp)
    yield c
    c.stop()


def connect(client, udp):
    """Drive the handshake from a fresh start: DISCOVER 0, CONNECT 1, KEEPALIVE 2."""
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    client.handle_datagram(b"CONNECT_ACK 1", SERVER)
    assert client.state is ClientState.CONNECTED
    udp.take()


def test_start_broadcasts_discover(client, udp):
    assert udp.sent == [(b"DISCOVER_REQ 0", BROADCAST)]
    assert client.state is ClientState.DISCOVERING
    assert client.armed(TimerKind.DISCOVER)


def test_discover_retries_with_fresh_sequence(client, udp, advance):
    advance(1.0)
    advance(1.0)
    assert [d for d, _ in udp.sent] == [b"DISCOVER_REQ 0", b"DISCOVER_REQ 1", b"DISCOVER_REQ 2"]
    assert all(addr == BROADCAST for _, addr in udp.sent)


def test_handshake_scenario(client, udp):
    udp.take()
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    assert client.state is ClientState.CONNECTING
    data, addr = udp.sent[-1]
    assert addr == SERVER
    assert data == b'CONNECT_REQ 1 {"hostname":"h"}'

    client.handle_datagram(b"CONNECT_ACK 1", SERVER)
    assert client.state is ClientState.CONNECTED
    assert client.events == [("connection", Endpoint(*SERVER))]

    # first keepalive goes out immediately
    ka = udp.last_frame()
    assert ka.type is MessageType.KEEPALIVE_REQ
    assert ka.seq == 2
    assert parse_payload(ka.payload) == {"hostname": "h"}


def test_only_current_discover_ack_advances(client, udp, advance):
    advance(1.0)  # outstanding discover is now seq 1
    for stale in (b"DISCOVER_ACK 0", b"DISCOVER_ACK 5", b"DISCOVER_ACK 2"):
        client.handle_datagram(stale, SERVER)
        assert client.state is ClientState.DISCOVERING
    assert all(Frame.from_bytes(d).type is MessageType.DISCOVER_REQ for d, _ in udp.sent)

    client.handle_datagram(b"DISCOVER_ACK 1", SERVER)
    assert client.state is ClientState.CONNECTING
    assert udp.last_frame().seq == 2


def test_discovery_stops_once_server_found(client, udp, advance):
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    udp.take()
    advance(1.5)
    assert udp.sent == []
    assert not client.armed(TimerKind.DISCOVER)


def test_stale_connect_ack_is_discarded(client, udp, advance):
    for _ in range(5):
        advance(1.0)
    client.handle_datagram(b"DISCOVER_ACK 5", SERVER)
    assert udp.last_frame().seq == 6

    client.handle_datagram(b"CONNECT_ACK 5", SERVER)
    assert client.state is ClientState.CONNECTING
    assert client.events == []
    assert client.session.last_sent_seq == 6

    client.handle_datagram(b"CONNECT_ACK 6", SERVER)
    assert client.state is ClientState.CONNECTED


def test_connect_timeout_restarts_discovery(client, udp, advance):
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    udp.take()
    advance(2.0)

    assert client.state is ClientState.DISCOVERING
    assert client.server is None
    assert udp.sent == [(b"DISCOVER_REQ 3", BROADCAST)]
    assert client.events == []

    # the reply to the abandoned connect must not count
    client.handle_datagram(b"CONNECT_ACK 1", SERVER)
    assert client.state is ClientState.DISCOVERING


def test_single_connection_event_per_cycle(client, udp):
    connect(client, udp)
    client.handle_datagram(b"CONNECT_ACK 1", SERVER)
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    assert client.events == [("connection", Endpoint(*SERVER))]
    assert client.state is ClientState.CONNECTED


def test_keepalive_cycle(client, udp, advance):
    connect(client, udp)
    client.handle_datagram(b"KEEPALIVE_ACK 2", SERVER)
    assert not client.armed(TimerKind.WATCHDOG)
    assert client.armed(TimerKind.KEEPALIVE)

    advance(1.0)
    assert udp.last_frame().type is MessageType.KEEPALIVE_REQ
    assert udp.last_frame().seq == 3
    assert udp.sent[-1][1] == SERVER

    # duplicate of an already answered ack changes nothing
    client.handle_datagram(b"KEEPALIVE_ACK 2", SERVER)
    assert client.armed(TimerKind.WATCHDOG)

    client.handle_datagram(b"KEEPALIVE_ACK 3", SERVER)
    advance(1.0)
    assert udp.last_frame().seq == 4
    assert client.state is ClientState.CONNECTED


def test_keepalive_timeout_closes_and_rediscovers(client, udp, advance):
    connect(client, udp)
    advance(2.0)
    assert client.events[-1] == ("close",)
    assert client.state is ClientState.DISCOVERING
    assert udp.sent == [(b"DISCOVER_REQ 4", BROADCAST)]


def test_matching_error_resets(client, udp):
    connect(client, udp)
    client.handle_datagram(b"ERROR 1 KEEPALIVE_REQ", SERVER)
    assert client.state is ClientState.CONNECTED

    client.handle_datagram(b"ERROR 2 KEEPALIVE_REQ", OTHER)
    assert client.state is ClientState.CONNECTED

    client.handle_datagram(b"ERROR 2 KEEPALIVE_REQ", SERVER)
    assert client.events[-1] == ("close",)
    assert client.state is ClientState.DISCOVERING
    assert udp.last_frame() == Frame(MessageType.DISCOVER_REQ, 4)


def test_error_while_connecting_resets_without_close(client, udp):
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    client.handle_datagram(b"ERROR 1 CONNECT_REQ", SERVER)
    assert client.state is ClientState.DISCOVERING
    assert client.events == []


def test_reply_from_other_endpoint_is_stale(client, udp):
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    client.handle_datagram(b"CONNECT_ACK 1", OTHER)
    assert client.state is ClientState.CONNECTING


def test_foreign_datagrams_pass_through(client, udp):
    udp.take()
    client.handle_datagram(b"hello world", OTHER)
    client.handle_datagram(b"CONNECT_ACK nope", SERVER)
    client.handle_datagram(b"DISCOVER_REQ 0", OTHER)
    assert client.events == [("message", Endpoint(*OTHER), b"hello world")]
    assert client.state is ClientState.DISCOVERING
    assert udp.sent == []


def test_send_requires_server(client, udp):
    assert client.send("ping") is False
    connect(client, udp)
    assert client.send("ping") is True
    assert udp.sent == [(b"ping", SERVER)]


def test_request_without_server_is_refused(client, udp):
    udp.take()
    with pytest.raises(RuntimeError):
        client._send_keepalive()
    assert udp.sent == []
    assert client.session.pending is MessageType.DISCOVER_REQ


def test_failing_connection_listener_leaves_keepalive_running(client, udp):
    def boom(server):
        raise ValueError("listener failed")

    client.on(EventKind.CONNECTION, boom)
    client.handle_datagram(b"DISCOVER_ACK 0", SERVER)
    with pytest.raises(ValueError):
        client.handle_datagram(b"CONNECT_ACK 1", SERVER)

    assert client.state is ClientState.CONNECTED
    ka = udp.last_frame()
    assert ka.type is MessageType.KEEPALIVE_REQ
    assert ka.seq == 2
    assert client.armed(TimerKind.WATCHDOG)


def test_one_timer_per_stage(client, udp, scheduler, advance):
    assert scheduler.pending() == 1
    advance(3.0)
    assert scheduler.pending() == 1
    client.handle_datagram(b"DISCOVER_ACK 3", SERVER)
    assert scheduler.pending() == 1
    client.handle_datagram(b"CONNECT_ACK 4", SERVER)
    assert scheduler.pending() == 1
    client.handle_datagram(b"KEEPALIVE_ACK 5", SERVER)
    assert scheduler.pending() == 1
    advance(10.0)  # keepalive, then watchdog reset, then rediscovery
    assert scheduler.pending() == 1


def test_sequence_strictly_increases(client, udp, advance):
    connect(client, udp)
    advance(2.0)
    client.handle_datagram(b"DISCOVER_ACK 4", SERVER)
    advance(2.0)
    seqs = [Frame.from_bytes(d).seq for d, _ in udp.sent]
    assert seqs == sorted(set(seqs))


def test_stop_cancels_everything(client, udp, scheduler, advance):
    connect(client, udp)
    client.stop()
    assert udp.closed
    assert scheduler.pending() == 0
    assert client.events[-1] == ("close",)
    assert client.state is ClientState.DISCONNECTED
    advance(10.0)
    assert udp.sent == []


def test_start_twice_is_an_error(client, udp):
    with pytest.raises(RuntimeError):
        client.start(udp)


def test_invalid_config_fails_start(scheduler, udp):
    c = DiscoveryClient(ClientConfig(ack_timeout_ms=0), scheduler=scheduler)
    with pytest.raises(ConfigError):
        c.start(udp)
    assert udp.sent == []
