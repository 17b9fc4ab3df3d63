"""Layer-4 connections that record prefetched bytes and can rewind them."""

from __future__ import annotations

import logging
import os
import platform
import re
import socket
import time
from datetime import datetime, timezone
from typing import Any, Callable

# Replacer prefixes and keys; names of context variables
APP_REPL_PREFIX = "l4."
CONN_REPL_PREFIX = APP_REPL_PREFIX + "conn."
REGEXP_REPL_PREFIX = APP_REPL_PREFIX + "regexp."
VARS_REPL_PREFIX = APP_REPL_PREFIX + "vars."

CONN_LOCAL_ADDR_REPL_KEY = CONN_REPL_PREFIX + "local_addr"
CONN_REMOTE_ADDR_REPL_KEY = CONN_REPL_PREFIX + "remote_addr"
CONN_WRAP_TIME_REPL_KEY = CONN_REPL_PREFIX + "wrap_time"

TLS_CONNECTION_STATES_VAR_NAME = "tls_connection_states"

VARS_CTX_KEY = "vars"
REPLACER_CTX_KEY = "replacer"
LISTENER_CTX_KEY = "listener"

# Large enough to fetch a post-quantum TLS ClientHello in one read.
PREFETCH_CHUNK_SIZE = 2048

# The most bytes prefetched during matching.
MAX_MATCHING_BYTES = 16 * 1024


class ConsumedAllPrefetchedBytes(Exception):
    """A matcher read every prefetched byte and needs more to decide."""

    def __init__(self, message: str = "consumed all prefetched bytes") -> None:
        super().__init__(message)


class MatchingBufferFull(Exception):
    """The matching buffer reached its size limit."""

    def __init__(self, message: str = "matching buffer is full") -> None:
        super().__init__(message)


Provider = Callable[[str], "tuple[Any, bool]"]

_PLACEHOLDER = re.compile(r"\\\{|\{([^}]*)\}")


def _format_address(addr: Any) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2 and isinstance(addr[0], str):
        host, port = addr[0], addr[1]
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{port}"
    return "" if addr is None else str(addr)


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", "replace")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, tuple):
        return _format_address(value)
    return str(value)


_GLOBALS: dict[str, Callable[[], Any]] = {
    "system.hostname": socket.gethostname,
    "system.slash": lambda: os.sep,
    "system.os": lambda: platform.system().lower(),
    "system.arch": platform.machine,
    "system.wd": os.getcwd,
    "time.now": datetime.now,
    "time.now.unix": lambda: int(time.time()),
    "time.now.unix_ms": lambda: int(time.time() * 1000),
    "time.now.year": lambda: datetime.now().year,
}


def _global_value(key: str) -> tuple[Any, bool]:
    if key.startswith("env."):
        return os.environ.get(key[len("env."):], ""), True
    getter = _GLOBALS.get(key)
    if getter is None:
        return None, False
    return getter(), True


class Replacer:
    """Placeholder values looked up by key and substituted into `{key}` text."""

    def __init__(self) -> None:
        self._static: dict[str, Any] = {}
        self._providers: list[Provider] = [_global_value, self._from_static]

    def _from_static(self, key: str) -> tuple[Any, bool]:
        if key in self._static:
            return self._static[key], True
        return None, False

    def set(self, key: str, value: Any) -> None:
        """Set a static value for `key`."""
        self._static[key] = value

    def get(self, key: str) -> Any:
        """Return the value for `key`; raise KeyError if no provider knows it."""
        for provider in self._providers:
            value, found = provider(key)
            if found:
                return value
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        try:
            self.get(key)
        except KeyError:
            return False
        return True

    def map(self, func: Provider) -> None:
        """Add a provider returning `(value, found)` for a key."""
        self._providers.append(func)

    def replace_all(self, text: str, empty: str) -> str:
        """Replace every placeholder; unknown or empty values become `empty`."""

        def substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            if key is None:
                return "{"
            try:
                value = _to_string(self.get(key))
            except KeyError:
                return empty
            return value or empty

        return _PLACEHOLDER.sub(substitute, text)


def _safe_address(getter: Callable[[], Any]) -> Any:
    try:
        return getter()
    except OSError:
        return None


def _network_of(sock: socket.socket) -> str:
    af_unix = getattr(socket, "AF_UNIX", None)
    if af_unix is not None and sock.family == af_unix:
        return "unix"
    if sock.type == socket.SOCK_DGRAM:
        return "udp"
    return "tcp"


class SocketConn:
    """A connected stream socket with a read deadline.

    Deadlines are absolute times as returned by time.time(); None clears it.
    """

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.local_addr = _safe_address(sock.getsockname)
        self.remote_addr = _safe_address(sock.getpeername)
        self.network = _network_of(sock)
        self._deadline: float | None = None

    def read(self, size: int) -> bytes:
        """Read up to `size` bytes; b"" means end of stream."""
        if self._deadline is None:
            self.sock.settimeout(None)
        else:
            remaining = self._deadline - time.time()
            if remaining <= 0:
                raise TimeoutError("read deadline exceeded")
            self.sock.settimeout(remaining)
        return self.sock.recv(size)

    def write(self, data: bytes) -> int:
        self.sock.settimeout(None)
        self.sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self.sock.close()

    def set_read_deadline(self, deadline: float | None) -> None:
        self._deadline = deadline


def _is_packet_conn(conn: Any) -> bool:
    # Packet-backed connections expose the frame bookkeeping hooks.
    return callable(getattr(conn, "_last_frame_stat", None))


class Connection:
    """A connection passing through handlers, able to record and rewind.

    Not safe for concurrent use.
    """

    def __init__(
        self,
        conn: Any,
        *,
        context: dict[str, Any] | None = None,
        logger: logging.Logger | None = None,
        buf: bytes | bytearray = b"",
        replacer: Replacer | None = None,
        variables: dict[str, Any] | None = None,
        is_packet_conn: bool = False,
    ) -> None:
        self.conn = conn
        self.logger = logger or logging.getLogger("l4router")
        self.replacer = replacer if replacer is not None else Replacer()
        self.vars = variables if variables is not None else {}
        self.context = (
            context
            if context is not None
            else {VARS_CTX_KEY: self.vars, REPLACER_CTX_KEY: self.replacer}
        )
        self.is_packet_conn = is_packet_conn
        self.bytes_read = 0
        self.bytes_written = 0
        self._buf = bytearray(buf)
        self._offset = 0
        self._frozen_offset = 0
        self._matching = False
        self._frame_sizes: list[int] = []

    @property
    def local_addr(self) -> Any:
        return getattr(self.conn, "local_addr", None)

    @property
    def remote_addr(self) -> Any:
        return getattr(self.conn, "remote_addr", None)

    @property
    def network(self) -> str:
        return getattr(self.conn, "network", "")

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def read(self, size: int) -> bytes:
        """Read from the recorded buffer first, then from the underlying conn."""
        buf = self._buf
        if self._matching and (not buf or len(buf) == self._offset):
            raise ConsumedAllPrefetchedBytes()

        if buf and self._offset < len(buf):
            data = b""
            if self.is_packet_conn:
                # never read past a frame boundary
                frame_offset = 0
                for frame_size in self._frame_sizes:
                    frame_end = frame_offset + frame_size
                    if frame_offset <= self._offset < frame_end:
                        end = min(frame_end, len(buf), self._offset + size)
                        data = bytes(buf[self._offset:end])
                        break
                    frame_offset = frame_end
            else:
                data = bytes(buf[self._offset:self._offset + size])
            self._offset += len(data)
            if not self._matching and self._offset == len(buf):
                self._offset = 0
                buf.clear()
            return data

        self._frame_sizes.clear()
        data = self.conn.read(size)
        self.bytes_read += len(data)
        return data

    def write(self, data: bytes) -> int:
        written = self.conn.write(data)
        self.bytes_written += written
        return written

    def close(self) -> None:
        self.conn.close()

    def set_read_deadline(self, deadline: float | None) -> None:
        self.conn.set_read_deadline(deadline)

    def wrap(self, conn: Any) -> Connection:
        """Wrap `conn` in a new Connection sharing this one's state and context."""
        wrapped = Connection(
            conn,
            context=self.context,
            logger=self.logger,
            buf=self._buf,
            replacer=self.replacer,
            variables=self.vars,
        )
        wrapped._offset = self._offset
        wrapped._matching = self._matching
        wrapped.bytes_read = self.bytes_read
        wrapped.bytes_written = self.bytes_written
        return wrapped

    def prefetch(self) -> None:
        """Read once from the underlying conn into the matching buffer."""
        if len(self._buf) >= MAX_MATCHING_BYTES:
            raise MatchingBufferFull()

        data = self.conn.read(PREFETCH_CHUNK_SIZE)
        self._buf.extend(data)
        self.bytes_read += len(data)
        if not data:
            raise EOFError("connection closed while prefetching")

        if self.is_packet_conn:
            frame_size, done = self.conn._last_frame_stat()
            if done:
                self._frame_sizes.append(frame_size)

        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(
                "prefetched remote=%s bytes=%d",
                _format_address(self.remote_addr),
                len(self._buf),
            )

    def has_more(self) -> bool:
        """Whether more packets are waiting; always False for stream conns."""
        return self.is_packet_conn and self.conn._has_pending()

    def wait_for_more(self, timeout: float | None) -> None:
        """Block until a packet is available or raise TimeoutError."""
        if not self.is_packet_conn:
            raise ValueError("wait_for_more is only for packet conns")
        self.conn._wait_for_packet(timeout)

    def freeze(self) -> None:
        """Enter matching mode, reading only from the recorded buffer."""
        self._matching = True
        self._frozen_offset = self._offset

    def unfreeze(self) -> None:
        """Leave matching mode and rewind to where freeze() was called."""
        self._matching = False
        self._offset = self._frozen_offset

    def set_var(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def get_var(self, key: str) -> Any:
        return self.vars.get(key)

    def matching_bytes(self) -> bytes:
        """Return a copy of the bytes currently available for matching."""
        return bytes(self._buf[self._offset:])


def wrap_connection(
    underlying: Any,
    buf: bytes | bytearray,
    logger: logging.Logger | None,
) -> Connection:
    """Wrap a raw connection into a Connection with a replacer and variables."""
    repl = Replacer()
    repl.set(CONN_REMOTE_ADDR_REPL_KEY, getattr(underlying, "remote_addr", None))
    repl.set(CONN_LOCAL_ADDR_REPL_KEY, getattr(underlying, "local_addr", None))
    repl.set(CONN_WRAP_TIME_REPL_KEY, datetime.now(timezone.utc))

    variables: dict[str, Any] = {}
    cx = Connection(
        underlying,
        context={VARS_CTX_KEY: variables, REPLACER_CTX_KEY: repl},
        logger=logger,
        buf=buf,
        replacer=repl,
        variables=variables,
        is_packet_conn=_is_packet_conn(underlying),
    )

    def vars_provider(key: str) -> tuple[Any, bool]:
        # variables are dynamic: always known, empty when unset
        if key.startswith(VARS_REPL_PREFIX):
            return cx.get_var(key[len(VARS_REPL_PREFIX):]), True
        return None, False

    repl.map(vars_provider)
    return cx