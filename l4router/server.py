"""Layer-4 servers: accept stream and packet traffic and route each connection."""

from __future__ import annotations

import logging
import queue
import re
import select
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from l4router.connection import Replacer, SocketConn, wrap_connection
from l4router.handlers import Handler, NopHandler
from l4router.routes import MATCHING_TIMEOUT_DEFAULT, RouteList

# Time before a packet connection association is removed, in seconds.
IDLE_TIMEOUT_DEFAULT = 30.0

# Large enough for the biggest datagram we consume, including jumbo frames.
UDP_BUFFER_SIZE = 9000

UNIX_NETWORKS = frozenset({"unix", "unixgram", "unixpacket"})
KNOWN_NETWORKS = frozenset({"tcp", "tcp4", "tcp6", "udp", "udp4", "udp6"}) | UNIX_NETWORKS

_POLL_INTERVAL = 0.1
_MAX_WAIT = 0.25

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h|d)"
_DURATION_RE = re.compile(rf"[-+]?(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(_DURATION_PART)


def parse_duration(text: str) -> float:
    """Parse a duration such as "1h30m", "500ms" or "2d" into seconds."""
    value = text.strip()
    if value in ("0", "+0", "-0"):
        return 0.0
    if not _DURATION_RE.fullmatch(value):
        raise ValueError(f"invalid duration {text!r}")
    sign = -1.0 if value.startswith("-") else 1.0
    total = sum(
        float(number) * _DURATION_UNITS[unit]
        for number, unit in _DURATION_PART_RE.findall(value)
    )
    return sign * total


@dataclass(frozen=True)
class NetworkAddress:
    """A network, a host (or socket path) and an inclusive port range."""

    network: str = "tcp"
    host: str = ""
    start_port: int = 0
    end_port: int = 0

    def __str__(self) -> str:
        if self.network in UNIX_NETWORKS:
            return f"{self.network}/{self.host}"
        if self.start_port == self.end_port:
            port = str(self.start_port)
        else:
            port = f"{self.start_port}-{self.end_port}"
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.network}/{host}:{port}"


def _split_host_port(text: str) -> tuple[str, str]:
    if text.startswith("["):
        end = text.find("]")
        if end != -1:
            tail = text[end + 1:]
            if not tail:
                return text[1:end], ""
            if tail.startswith(":") and ":" not in tail[1:]:
                return text[1:end], tail[1:]
        return text, ""
    host, sep, port = text.rpartition(":")
    if not sep or ":" in host:
        # no port, or an unbracketed IPv6 address
        return text, ""
    return host, port


def _parse_port(text: str, which: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise ValueError(f"invalid {which} port: {text!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"{which} port {port} out of range")
    return port


def parse_network_address(address: str) -> NetworkAddress:
    """Parse "[network/]host[:port[-port]]" or "unix//path" into a NetworkAddress."""
    text = address.strip()
    network = "tcp"
    before, sep, after = text.partition("/")
    if sep:
        network = before.strip().lower()
        text = after.strip()
    if network not in KNOWN_NETWORKS:
        raise ValueError(f"unsupported network '{network}' in address '{address}'")
    if network in UNIX_NETWORKS:
        if not text:
            raise ValueError(f"missing socket path in address '{address}'")
        return NetworkAddress(network=network, host=text)

    host, port = _split_host_port(text)
    if not port:
        return NetworkAddress(network=network, host=host)
    start_text, dash, end_text = port.partition("-")
    start = _parse_port(start_text, "start")
    end = _parse_port(end_text, "end") if dash else start
    if end < start:
        raise ValueError(f"end port must not be less than start port: {port}")
    return NetworkAddress(network=network, host=host, start_port=start, end_port=end)


class PacketConn:
    """A virtual connection carrying the datagrams of one downstream address.

    Packets arrive on `packets`; None there means the server has closed the
    association. Reads never span packets; writes go to the downstream.
    """

    network = "udp"

    def __init__(
        self,
        sock: socket.socket,
        addr: Any,
        packets: queue.Queue,
        on_close: Callable[[PacketConn], None],
        idle_timeout: float = IDLE_TIMEOUT_DEFAULT,
    ) -> None:
        self.sock = sock
        self.remote_addr = addr
        self.idle_timeout = idle_timeout
        self._packets = packets
        self._on_close = on_close
        self._pending: bytes | None = None
        self._last_size = 0
        self._deadline: float | None = None
        self._eof = False
        self._notified = False
        self._lock = threading.Lock()

    @property
    def local_addr(self) -> Any:
        try:
            return self.sock.getsockname()
        except OSError:
            return None

    def _deadline_exceeded(self) -> bool:
        deadline = self._deadline
        return deadline is not None and deadline < time.time()

    def _take(self, packet: bytes, size: int) -> bytes:
        self._last_size = len(packet)
        rest = packet[size:]
        self._pending = rest or None
        return packet[:size]

    def read(self, size: int) -> bytes:
        """Read from the current packet; b"" once idle or closed."""
        if self._pending is not None:
            data = self._pending[:size]
            self._pending = self._pending[size:] or None
            return data
        if self._eof:
            return b""
        if self._deadline_exceeded():
            raise TimeoutError("read deadline exceeded")

        idle_end = time.monotonic() + self.idle_timeout
        while True:
            waits = [idle_end - time.monotonic(), _MAX_WAIT]
            deadline = self._deadline
            if deadline is not None:
                waits.append(deadline - time.time())
            try:
                packet = self._packets.get(timeout=max(0.0, min(waits)))
            except queue.Empty:
                if self._deadline_exceeded():
                    raise TimeoutError("read deadline exceeded") from None
                if time.monotonic() >= idle_end:
                    break
                continue
            if packet is None:
                self._eof = True
                break
            return self._take(packet, size)

        # idle timeout simulates closure; tell the server early so that new
        # packets from this downstream start a new handler
        self._notify_closed()
        return b""

    def write(self, data: bytes) -> int:
        """Send `data` to the downstream address."""
        return self.sock.sendto(data, self.remote_addr)

    def close(self) -> None:
        """Release the pending packet and notify the server; the socket stays open."""
        self._pending = None
        self._notify_closed()

    def set_read_deadline(self, deadline: float | None) -> None:
        """Set an absolute time.time() deadline for reads; None clears it."""
        self._deadline = deadline

    def _notify_closed(self) -> None:
        with self._lock:
            if self._notified:
                return
            self._notified = True
        self._on_close(self)

    def _last_frame_stat(self) -> tuple[int, bool]:
        return self._last_size, self._pending is None

    def _has_pending(self) -> bool:
        return not self._packets.empty()

    def _wait_for_packet(self, timeout: float | None) -> None:
        if self._pending is not None or self._eof:
            return
        try:
            packet = self._packets.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no packet arrived in time") from None
        if packet is None:
            self._eof = True
            return
        self._pending = packet
        self._last_size = len(packet)


def _wait_readable(sock: socket.socket) -> bool:
    if sock.fileno() == -1:
        raise OSError("use of closed network connection")
    try:
        ready, _, _ = select.select([sock], [], [], _POLL_INTERVAL)
    except ValueError as exc:
        raise OSError("use of closed network connection") from exc
    return bool(ready)


@dataclass
class Server:
    """Listens on addresses and routes every connection through its routes."""

    listen: list[str] = field(default_factory=list)
    routes: RouteList = field(default_factory=RouteList)
    idle_timeout: float = 0.0
    matching_timeout: float = 0.0
    logger: logging.Logger | None = None
    listen_addrs: list[NetworkAddress] = field(
        default_factory=list, init=False, compare=False
    )
    _compiled_route: Handler | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not isinstance(self.routes, RouteList):
            self.routes = RouteList(self.routes)

    def provision(self, logger: logging.Logger | None) -> None:
        """Apply defaults, parse listen addresses and compile the routes."""
        self.logger = logger or self.logger or logging.getLogger("l4router.server")
        if self.idle_timeout <= 0:
            self.idle_timeout = IDLE_TIMEOUT_DEFAULT
        if self.matching_timeout <= 0:
            self.matching_timeout = MATCHING_TIMEOUT_DEFAULT

        repl = Replacer()
        addrs = []
        for position, address in enumerate(self.listen):
            address = repl.replace_all(address, "")
            try:
                addrs.append(parse_network_address(address))
            except ValueError as exc:
                raise ValueError(
                    f"parsing listener address '{address}' in position {position}: {exc}"
                ) from exc
        self.listen_addrs = addrs

        self.routes.provision()
        self._compiled_route = self.routes.compile(
            self.logger, self.matching_timeout, NopHandler()
        )

    def _require_provisioned(self) -> Handler:
        if self._compiled_route is None or self.logger is None:
            raise RuntimeError("server is not provisioned")
        return self._compiled_route

    def serve(self, sock: socket.socket) -> None:
        """Accept stream connections until `sock` fails; raise that error."""
        self._require_provisioned()
        assert self.logger is not None
        while True:
            try:
                if not _wait_readable(sock):
                    continue
                conn, _ = sock.accept()
            except TimeoutError as exc:
                self.logger.error("timeout accepting connection: %s", exc)
                continue
            threading.Thread(
                target=self.handle, args=(SocketConn(conn),), daemon=True
            ).start()

    def serve_packet(self, sock: socket.socket) -> None:
        """Demultiplex datagrams by downstream address until `sock` fails."""
        self._require_provisioned()
        events: queue.Queue = queue.Queue()

        def read_packets() -> None:
            while True:
                try:
                    if not _wait_readable(sock):
                        continue
                    data, addr = sock.recvfrom(UDP_BUFFER_SIZE)
                except TimeoutError:
                    continue
                except OSError as exc:
                    events.put(("error", exc))
                    return
                events.put(("packet", data, addr))

        threading.Thread(target=read_packets, name="l4router-udp", daemon=True).start()

        def on_close(conn: PacketConn) -> None:
            events.put(("closed", conn))

        conns: dict[Any, PacketConn] = {}
        while True:
            event = events.get()
            kind = event[0]
            if kind == "error":
                raise event[1]
            if kind == "closed":
                conn = event[1]
                # abort any active read on that connection
                conn._packets.put(None)
                if conns.get(conn.remote_addr) is conn:
                    del conns[conn.remote_addr]
                continue
            _, data, addr = event
            conn = conns.get(addr)
            if conn is None:
                conn = PacketConn(sock, addr, queue.Queue(), on_close, self.idle_timeout)
                conns[addr] = conn
                threading.Thread(target=self.handle, args=(conn,), daemon=True).start()
            conn._packets.put(data)

    def handle(self, conn: Any) -> None:
        """Route one connection, then close it."""
        try:
            route = self._require_provisioned()
            logger = self.logger
            assert logger is not None
            cx = wrap_connection(conn, b"", logger)
            network = getattr(conn, "network", "")
            logger.debug(
                "started handling connection network=%s local=%s remote=%s",
                network,
                cx.local_addr,
                cx.remote_addr,
            )
            start = time.monotonic()
            try:
                route.handle(cx)
            except Exception as exc:
                logger.error(
                    "handling connection network=%s local=%s remote=%s error=%s",
                    network,
                    cx.local_addr,
                    cx.remote_addr,
                    exc,
                )
            logger.debug(
                "stopped handling connection; connection stats network=%s local=%s "
                "remote=%s read=%d written=%d duration=%.6fs",
                network,
                cx.local_addr,
                cx.remote_addr,
                cx.bytes_read,
                cx.bytes_written,
                time.monotonic() - start,
            )
        finally:
            conn.close()