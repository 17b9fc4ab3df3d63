import logging
import queue
import socket
import threading
import time

import pytest

from l4router.connection import wrap_connection
from l4router.handlers import NextHandler
from l4router.registry import register_module
from l4router.routes import MATCHING_TIMEOUT_DEFAULT
from l4router.server import (
    IDLE_TIMEOUT_DEFAULT,
    NetworkAddress,
    PacketConn,
    Server,
    parse_duration,
    parse_network_address,
)


class _Upper(NextHandler):
    def handle(self, cx, next_handler):
        data = cx.read(1024)
        cx.write(data.upper())


class _Failing(NextHandler):
    def handle(self, cx, next_handler):
        raise RuntimeError("handler exploded")


register_module("layer4.handlers.test_server_upper", lambda config: _Upper())
register_module("layer4.handlers.test_server_failing", lambda config: _Failing())


def _run_in_thread(func, *args):
    result = {}

    def target():
        try:
            func(*args)
        except BaseException as exc:
            result["error"] = exc

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, result


def _upper_server():
    server = Server(routes=[{"handle": [{"handler": "test_server_upper"}]}])
    server.provision(logging.getLogger("test.server"))
    return server


def test_parse_duration_units():
    assert parse_duration("3s") == 3.0
    assert parse_duration("500ms") == pytest.approx(0.5)
    assert parse_duration("1d") == 86400.0


def test_parse_duration_combined_equals_sum():
    assert parse_duration("1m30s") == parse_duration("90s")
    assert parse_duration("-2s") == -parse_duration("2s")
    assert parse_duration("0") == 0.0


@pytest.mark.parametrize("text", ["", "10", "5x", "s", "1.5.2s"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parse_network_address_udp():
    addr = parse_network_address("udp/127.0.0.1:53")
    assert addr == NetworkAddress(network="udp", host="127.0.0.1", start_port=53, end_port=53)


def test_parse_network_address_default_network_and_range():
    addr = parse_network_address(":8000-8010")
    assert addr.network == "tcp"
    assert addr.host == ""
    assert (addr.start_port, addr.end_port) == (8000, 8010)


def test_parse_network_address_ipv6_and_unix():
    assert parse_network_address("[::1]:443").host == "::1"
    unix = parse_network_address("unix//tmp/l4.sock")
    assert (unix.network, unix.host) == ("unix", "/tmp/l4.sock")


def test_parse_network_address_without_port():
    addr = parse_network_address("tcp/localhost")
    assert (addr.host, addr.start_port, addr.end_port) == ("localhost", 0, 0)


@pytest.mark.parametrize(
    "address",
    ["udp/127.0.0.1:53", "tcp/[::1]:443", "tcp4/0.0.0.0:80-90", "unix//tmp/x.sock"],
)
def test_network_address_string_round_trip(address):
    parsed = parse_network_address(address)
    assert parse_network_address(str(parsed)) == parsed


@pytest.mark.parametrize(
    "address", ["bogus/host:1", "tcp/host:99999", "tcp/host:10-5", "host:abc", "unix/"]
)
def test_parse_network_address_errors(address):
    with pytest.raises(ValueError):
        parse_network_address(address)


def test_provision_defaults():
    server = Server(listen=["127.0.0.1:0"])
    server.provision(None)
    assert server.idle_timeout == IDLE_TIMEOUT_DEFAULT
    assert server.matching_timeout == MATCHING_TIMEOUT_DEFAULT
    assert server.listen_addrs == [parse_network_address("127.0.0.1:0")]


def test_provision_keeps_explicit_timeouts():
    server = Server(idle_timeout=7.0, matching_timeout=2.0)
    server.provision(None)
    assert (server.idle_timeout, server.matching_timeout) == (7.0, 2.0)


def test_provision_expands_placeholders(monkeypatch):
    monkeypatch.setenv("L4R_TEST_PORT", "4242")
    server = Server(listen=["127.0.0.1:{env.L4R_TEST_PORT}"])
    server.provision(None)
    assert server.listen_addrs[0].start_port == 4242


def test_provision_rejects_bad_address():
    server = Server(listen=["tcp/127.0.0.1:1", "bogus/x:1"])
    with pytest.raises(ValueError, match="position 1"):
        server.provision(None)


def test_serve_requires_provision():
    with socket.socket() as sock:
        with pytest.raises(RuntimeError):
            Server().serve(sock)


def test_serve_stream_routes_connections():
    server = _upper_server()
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    thread, result = _run_in_thread(server.serve, listener)
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=2) as client:
            client.sendall(b"hello")
            assert client.recv(1024) == b"HELLO"
    finally:
        listener.close()
    thread.join(2)
    assert isinstance(result.get("error"), OSError)
    with pytest.raises(OSError):
        server.serve(listener)


def test_serve_packet_routes_datagrams():
    server = _upper_server()
    udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    udp.bind(("127.0.0.1", 0))
    thread, result = _run_in_thread(server.serve_packet, udp)
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as first, socket.socket(
            socket.AF_INET, socket.SOCK_DGRAM
        ) as second:
            first.settimeout(2)
            second.settimeout(2)
            first.sendto(b"ping", udp.getsockname())
            second.sendto(b"pong", udp.getsockname())
            assert first.recvfrom(1024)[0] == b"PING"
            assert second.recvfrom(1024)[0] == b"PONG"
    finally:
        udp.close()
    thread.join(2)
    assert isinstance(result.get("error"), OSError)
    with pytest.raises(OSError):
        server.serve_packet(udp)


class _FakeConn:
    def __init__(self):
        self.closed = False
        self.remote_addr = ("192.0.2.1", 1234)
        self.local_addr = ("192.0.2.2", 80)

    def read(self, size):
        return b""

    def write(self, data):
        return len(data)

    def close(self):
        self.closed = True

    def set_read_deadline(self, deadline):
        pass


def test_handle_logs_errors_and_closes(caplog):
    server = Server(routes=[{"handle": [{"handler": "test_server_failing"}]}])
    server.provision(logging.getLogger("test.server.failing"))
    conn = _FakeConn()
    with caplog.at_level(logging.ERROR, logger="test.server.failing"):
        server.handle(conn)
    assert conn.closed is True
    assert "handler exploded" in caplog.text


@pytest.fixture
def udp_pair():
    sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sender.bind(("127.0.0.1", 0))
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    receiver.settimeout(2)
    yield sender, receiver
    sender.close()
    receiver.close()


def test_packet_conn_reads_within_packet(udp_pair):
    sender, receiver = udp_pair
    packets = queue.Queue()
    closed = []
    pc = PacketConn(sender, receiver.getsockname(), packets, closed.append, 0.05)
    packets.put(b"abcdef")
    assert pc.read(4) == b"abcd"
    assert pc.read(10) == b"ef"
    packets.put(b"xy")
    packets.put(b"z")
    assert pc.read(10) == b"xy"
    assert pc.read(10) == b"z"
    assert closed == []


def test_packet_conn_idle_timeout_returns_eof(udp_pair):
    sender, receiver = udp_pair
    closed = []
    pc = PacketConn(sender, receiver.getsockname(), queue.Queue(), closed.append, 0.05)
    assert pc.read(10) == b""
    pc.close()
    assert closed == [pc]


def test_packet_conn_closed_by_server(udp_pair):
    sender, receiver = udp_pair
    packets = queue.Queue()
    pc = PacketConn(sender, receiver.getsockname(), packets, lambda conn: None, 5.0)
    packets.put(None)
    assert pc.read(10) == b""
    assert pc.read(10) == b""


def test_packet_conn_deadline(udp_pair):
    sender, receiver = udp_pair
    pc = PacketConn(sender, receiver.getsockname(), queue.Queue(), lambda conn: None, 5.0)
    pc.set_read_deadline(time.time() - 1)
    with pytest.raises(TimeoutError):
        pc.read(10)
    pc.set_read_deadline(time.time() + 0.05)
    with pytest.raises(TimeoutError):
        pc.read(10)


def test_packet_conn_write(udp_pair):
    sender, receiver = udp_pair
    pc = PacketConn(sender, receiver.getsockname(), queue.Queue(), lambda conn: None)
    assert pc.write(b"datagram") == len(b"datagram")
    data, addr = receiver.recvfrom(1024)
    assert data == b"datagram"
    assert addr == sender.getsockname()


def test_packet_conn_prefetch_records_frames(udp_pair):
    sender, receiver = udp_pair
    packets = queue.Queue()
    pc = PacketConn(sender, receiver.getsockname(), packets, lambda conn: None)
    cx = wrap_connection(pc, b"", None)
    assert cx.is_packet_conn is True
    packets.put(b"xyz")
    assert cx.has_more() is True
    cx.prefetch()
    assert cx.matching_bytes() == b"xyz"
    assert cx.has_more() is False