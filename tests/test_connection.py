import logging
import socket
import time
from datetime import timezone

import pytest

from l4router.connection import (
    CONN_WRAP_TIME_REPL_KEY,
    MAX_MATCHING_BYTES,
    ConsumedAllPrefetchedBytes,
    MatchingBufferFull,
    Replacer,
    SocketConn,
    wrap_connection,
)

LOGGER = logging.getLogger("test")


class FakeConn:
    def __init__(self, chunks=(), local=("127.0.0.1", 9000), remote=("192.0.2.7", 40000)):
        self.chunks = list(chunks)
        self.written = bytearray()
        self.closed = False
        self.deadline = None
        self.local_addr = local
        self.remote_addr = remote
        self.network = "tcp"

    def read(self, size):
        if not self.chunks:
            return b""
        chunk = self.chunks.pop(0)
        if len(chunk) > size:
            self.chunks.insert(0, chunk[size:])
            chunk = chunk[:size]
        return chunk

    def write(self, data):
        self.written.extend(data)
        return len(data)

    def close(self):
        self.closed = True

    def set_read_deadline(self, deadline):
        self.deadline = deadline


class FakePacketConn(FakeConn):
    def __init__(self, chunks=()):
        super().__init__(chunks)
        self.last_size = 0

    def read(self, size):
        data = super().read(size)
        self.last_size = len(data)
        return data

    def _last_frame_stat(self):
        return self.last_size, True

    def _has_pending(self):
        return bool(self.chunks)

    def _wait_for_packet(self, timeout):
        if not self.chunks:
            raise TimeoutError("no packet")


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def test_freeze_and_unfreeze(pair):
    inp, out = pair
    cx = wrap_connection(SocketConn(out), b"", LOGGER)
    matcher_data = b"foo"
    consume_data = b"bar"
    inp.sendall(matcher_data)
    inp.sendall(consume_data)

    cx.prefetch()

    cx.freeze()
    assert cx.read(len(matcher_data)) == matcher_data
    cx.unfreeze()

    cx.freeze()
    assert cx.read(len(matcher_data)) == matcher_data
    cx.unfreeze()

    assert cx.read(len(matcher_data)) == matcher_data
    assert cx.read(len(consume_data)) == consume_data


def test_matching_without_buffer_raises():
    cx = wrap_connection(FakeConn([b"x"]), b"", LOGGER)
    cx.freeze()
    with pytest.raises(ConsumedAllPrefetchedBytes):
        cx.read(1)


def test_matching_after_buffer_consumed_raises():
    cx = wrap_connection(FakeConn([b"ab"]), b"", LOGGER)
    cx.prefetch()
    cx.freeze()
    assert cx.read(10) == b"ab"
    with pytest.raises(ConsumedAllPrefetchedBytes):
        cx.read(1)


def test_prefetch_full_buffer_raises():
    cx = wrap_connection(FakeConn([b"x"]), bytes(MAX_MATCHING_BYTES), LOGGER)
    with pytest.raises(MatchingBufferFull):
        cx.prefetch()


def test_prefetch_on_closed_stream_raises_eof():
    cx = wrap_connection(FakeConn([]), b"", LOGGER)
    with pytest.raises(EOFError):
        cx.prefetch()


def test_matching_bytes_follow_offset():
    cx = wrap_connection(FakeConn([b"hello"]), b"", LOGGER)
    cx.prefetch()
    cx.freeze()
    assert cx.read(2) == b"he"
    assert cx.matching_bytes() == b"llo"
    cx.unfreeze()
    assert cx.matching_bytes() == b"hello"


def test_byte_counters():
    fake = FakeConn([b"hello"])
    cx = wrap_connection(fake, b"", LOGGER)
    cx.prefetch()
    assert cx.bytes_read == 5
    assert cx.write(b"abc") == 3
    assert cx.bytes_written == 3
    assert bytes(fake.written) == b"abc"


def test_vars_placeholder():
    cx = wrap_connection(FakeConn(), b"", LOGGER)
    cx.set_var("name", "value")
    assert cx.get_var("name") == "value"
    assert cx.replacer.replace_all("{l4.vars.name}", "") == "value"
    assert cx.replacer.replace_all("{l4.vars.unset}", "-") == "-"


def test_address_placeholders():
    cx = wrap_connection(FakeConn(), b"", LOGGER)
    assert cx.replacer.replace_all("{l4.conn.remote_addr}", "") == "192.0.2.7:40000"
    assert cx.replacer.replace_all("{l4.conn.local_addr}", "") == "127.0.0.1:9000"


def test_wrap_time_is_utc():
    cx = wrap_connection(FakeConn(), b"", LOGGER)
    assert cx.replacer.get(CONN_WRAP_TIME_REPL_KEY).tzinfo == timezone.utc


def test_wrap_keeps_buffer_and_vars():
    cx = wrap_connection(FakeConn([b"abc"]), b"", LOGGER)
    cx.prefetch()
    cx.set_var("k", 1)
    wrapped = cx.wrap(FakeConn([b"zz"]))
    assert wrapped.read(10) == b"abc"
    assert wrapped.read(10) == b"zz"
    assert wrapped.get_var("k") == 1
    assert wrapped.bytes_read == 5


def test_close_closes_underlying():
    fake = FakeConn()
    with wrap_connection(fake, b"", LOGGER):
        pass
    assert fake.closed is True


def test_set_read_deadline_forwards():
    fake = FakeConn()
    cx = wrap_connection(fake, b"", LOGGER)
    cx.set_read_deadline(123.0)
    assert fake.deadline == 123.0


def test_packet_reads_respect_frames():
    cx = wrap_connection(FakePacketConn([b"abc", b"def"]), b"", LOGGER)
    assert cx.is_packet_conn is True
    cx.prefetch()
    cx.prefetch()
    assert cx.read(10) == b"abc"
    assert cx.read(10) == b"def"


def test_has_more_and_wait_for_more_packet():
    cx = wrap_connection(FakePacketConn([b"a"]), b"", LOGGER)
    assert cx.has_more() is True
    cx.prefetch()
    assert cx.has_more() is False
    with pytest.raises(TimeoutError):
        cx.wait_for_more(0.01)


def test_stream_conn_wait_for_more_rejected():
    cx = wrap_connection(FakeConn(), b"", LOGGER)
    assert cx.has_more() is False
    with pytest.raises(ValueError):
        cx.wait_for_more(0.01)


def test_replacer_unknown_and_escapes(monkeypatch):
    repl = Replacer()
    repl.set("known", "v")
    repl.set("blank", "")
    monkeypatch.setenv("L4ROUTER_TEST_ENV", "from-env")
    assert repl.replace_all("a{known}b", "") == "avb"
    assert repl.replace_all("{nope}", "x") == "x"
    assert repl.replace_all("{blank}", "x") == "x"
    assert repl.replace_all(r"\{known}", "") == "{known}"
    assert repl.replace_all("{env.L4ROUTER_TEST_ENV}", "") == "from-env"
    assert repl.replace_all("open {only", "") == "open {only"


def test_replacer_get_and_map():
    repl = Replacer()
    with pytest.raises(KeyError):
        repl.get("custom.key")
    repl.map(lambda key: (key.upper(), True) if key.startswith("custom.") else (None, False))
    assert repl.get("custom.key") == "CUSTOM.KEY"
    assert "custom.x" in repl
    assert "other" not in repl


def test_socket_conn_deadline(pair):
    _, out = pair
    conn = SocketConn(out)
    conn.set_read_deadline(time.time() + 0.05)
    with pytest.raises(TimeoutError):
        conn.read(1)
    conn.set_read_deadline(time.time() - 1)
    with pytest.raises(TimeoutError):
        conn.read(1)


def test_socket_conn_roundtrip(pair):
    a, b = pair
    left, right = SocketConn(a), SocketConn(b)
    assert left.write(b"ping") == 4
    assert right.read(4) == b"ping"