"""The layer-4 app: a set of servers started and stopped together."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import socket
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Mapping

import l4router.listener  # noqa: F401  registers the listener wrapper
from l4router.modules import clock, close, dns, echo  # noqa: F401  standard modules
from l4router.registry import ModuleError, register_module
from l4router.routes import RouteList
from l4router.server import UNIX_NETWORKS, NetworkAddress, Server, parse_duration

_PACKET_NETWORKS = frozenset({"udp", "udp4", "udp6", "unixgram"})


def _duration(value: Any, name: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ModuleError(f"'{name}' must be a duration")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ModuleError(f"'{name}': {exc}") from exc
    raise ModuleError(f"'{name}' must be a duration")


def _server_from_config(config: Any) -> Server:
    if not isinstance(config, Mapping):
        raise ModuleError(f"server config must be an object, got {config!r}")
    listen = config.get("listen") or []
    if not isinstance(listen, list) or not all(isinstance(a, str) for a in listen):
        raise ModuleError("'listen' must be a list of strings")
    routes = config.get("routes") or []
    if not isinstance(routes, list):
        raise ModuleError("'routes' must be a list")
    return Server(
        listen=list(listen),
        routes=RouteList(routes),
        idle_timeout=_duration(config.get("idle_timeout"), "idle_timeout"),
        matching_timeout=_duration(config.get("matching_timeout"), "matching_timeout"),
    )


def _family(addr: NetworkAddress) -> socket.AddressFamily:
    if addr.network.endswith("6") or ":" in addr.host:
        return socket.AF_INET6
    return socket.AF_INET


def _listen_all(addr: NetworkAddress) -> list[socket.socket]:
    """Open one socket per port of `addr`."""
    packet = addr.network in _PACKET_NETWORKS
    kind = socket.SOCK_DGRAM if packet else socket.SOCK_STREAM
    if addr.network in UNIX_NETWORKS:
        if addr.network == "unixpacket":
            kind = socket.SOCK_SEQPACKET
        sock = socket.socket(socket.AF_UNIX, kind)
        try:
            sock.bind(addr.host)
            if not packet:
                sock.listen()
        except OSError:
            sock.close()
            raise
        return [sock]

    family = _family(addr)
    opened: list[socket.socket] = []
    try:
        for port in range(addr.start_port, addr.end_port + 1):
            if packet:
                sock = socket.socket(family, socket.SOCK_DGRAM)
                opened.append(sock)
                sock.bind((addr.host, port))
            else:
                opened.append(socket.create_server((addr.host, port), family=family))
    except OSError:
        for sock in opened:
            sock.close()
        raise
    return opened


def _sock_name(sock: socket.socket) -> Any:
    try:
        return sock.getsockname()
    except OSError:
        return None


@dataclass
class App:
    """Servers keyed by a name of your choosing; their order does not matter."""

    servers: dict[str, Server] = field(default_factory=dict)
    logger: logging.Logger | None = None
    listeners: list[socket.socket] = field(default_factory=list, init=False, compare=False)
    packet_sockets: list[socket.socket] = field(
        default_factory=list, init=False, compare=False
    )
    _threads: list[threading.Thread] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    module_id: ClassVar[str] = "layer4"

    @classmethod
    def from_config(cls, config: Any) -> App:
        """Build the app from `{"servers": {name: server_config}}`."""
        config = config or {}
        if not isinstance(config, Mapping):
            raise ModuleError(f"app config must be an object, got {config!r}")
        servers = config.get("servers") or {}
        if not isinstance(servers, Mapping):
            raise ModuleError("'servers' must be an object")
        built = {}
        for name, server_config in servers.items():
            try:
                built[name] = _server_from_config(server_config)
            except ModuleError as exc:
                raise ModuleError(f"server '{name}': {exc}") from exc
        return cls(servers=built)

    def provision(self) -> None:
        """Provision every server."""
        if self.logger is None:
            self.logger = logging.getLogger("l4router")
        for name, server in self.servers.items():
            try:
                server.provision(self.logger)
            except Exception as exc:
                raise ModuleError(f"server '{name}': {exc}") from exc

    def _run(self, server: Server, serve: Callable[[socket.socket], None],
             sock: socket.socket, kind: str) -> None:
        logger = server.logger or logging.getLogger("l4router")
        address = _sock_name(sock)
        logger.debug("started handling %s socket address=%s", kind, address)
        error: BaseException | None = None
        try:
            serve(sock)
        except Exception as exc:
            error = exc
        logger.debug("stopped handling %s socket address=%s error=%s", kind, address, error)

    def start(self) -> None:
        """Open every listen address and serve it in the background."""
        for server in self.servers.values():
            for addr in server.listen_addrs:
                for sock in _listen_all(addr):
                    if sock.type == socket.SOCK_DGRAM:
                        self.packet_sockets.append(sock)
                        args = (server, server.serve_packet, sock, "packet connection")
                    else:
                        self.listeners.append(sock)
                        args = (server, server.serve, sock, "listener")
                    thread = threading.Thread(target=self._run, args=args, daemon=True)
                    self._threads.append(thread)
                    thread.start()

    def stop(self) -> None:
        """Close all packet sockets and listeners."""
        logger = self.logger or logging.getLogger("l4router")
        for kind, sockets in (
            ("packet connection", self.packet_sockets),
            ("listener", self.listeners),
        ):
            for sock in sockets:
                address = _sock_name(sock)
                try:
                    sock.close()
                except OSError as exc:
                    logger.error("closing %s socket address=%s error=%s", kind, address, exc)
            sockets.clear()
        for thread in self._threads:
            thread.join(1.0)
        self._threads.clear()


register_module(App.module_id, App.from_config)


def _app_config(config: Any) -> Any:
    if isinstance(config, Mapping) and "apps" in config:
        apps = config["apps"]
        if not isinstance(apps, Mapping):
            raise ModuleError("'apps' must be an object")
        return apps.get(App.module_id) or {}
    return config


def main(argv: list[str] | None = None) -> int:
    """Run the layer-4 app from a JSON configuration file."""
    parser = argparse.ArgumentParser(
        prog="l4router", description="Route raw TCP and UDP connections."
    )
    parser.add_argument("config", help="path to a JSON configuration file")
    parser.add_argument(
        "--validate",
        action="store_true",
        help="load and provision the configuration, then exit",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level (default: INFO)",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        with open(args.config, encoding="utf-8") as handle:
            config = json.load(handle)
        app = App.from_config(_app_config(config))
        app.provision()
    except (OSError, ValueError, ModuleError) as exc:
        print(f"l4router: {exc}", file=sys.stderr)
        return 1

    if args.validate:
        print("Valid configuration")
        return 0

    try:
        app.start()
    except OSError as exc:
        app.stop()
        print(f"l4router: {exc}", file=sys.stderr)
        return 1

    stop_event = threading.Event()
    try:
        signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    except ValueError:
        pass  # not in the main thread
    try:
        while not stop_event.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        app.stop()
    return 0