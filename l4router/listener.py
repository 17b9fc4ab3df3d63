"""A listener wrapper that routes accepted connections before handing them out."""

from __future__ import annotations

import logging
import os
import selectors
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

from l4router.connection import (
    LISTENER_CTX_KEY,
    TLS_CONNECTION_STATES_VAR_NAME,
    Connection,
    SocketConn,
    wrap_connection,
)
from l4router.handlers import Handler
from l4router.registry import register_module
from l4router.routes import MATCHING_TIMEOUT_DEFAULT, RouteList

_POLL_INTERVAL = 0.1


class _Hijacked(Exception):
    """A handler took over the connection; its lifetime is managed elsewhere."""


class _ListenerHandler(Handler):
    """Ends a route chain by handing the connection to the wrapping listener."""

    def handle(self, cx: Connection) -> None:
        cx.context[LISTENER_CTX_KEY]._pipe_connection(cx)


class _TLSConnection:
    """A connection carrying the innermost TLS connection state."""

    def __init__(self, conn: Connection, state: Any) -> None:
        self._conn = conn
        self.connection_state = state

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


class Layer4Listener:
    """Accepts from a listening socket, routes each connection, and hands out
    the ones that reach the end of the routes through accept()."""

    def __init__(
        self,
        sock: socket.socket,
        compiled_route: Handler,
        logger: logging.Logger | None = None,
        capacity: int | None = None,
    ) -> None:
        self.sock = sock
        self._compiled_route = compiled_route
        self._logger = logger or logging.getLogger("l4router.listener")
        self._capacity = capacity or os.cpu_count() or 1
        self._closed = False
        self._done = False
        self._cond = threading.Condition()
        self._queue: deque[Any] = deque()
        self._thread = threading.Thread(
            target=self._loop, name="l4router-listener", daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Stop accepting and close the underlying socket."""
        self._closed = True
        self.sock.close()

    def accept(self) -> Any:
        """Return the next routed connection; raise OSError once closed."""
        with self._cond:
            while not self._queue and not self._done:
                self._cond.wait()
            if self._done:
                raise OSError("use of closed network connection")
            conn = self._queue.popleft()
            self._cond.notify_all()
            return conn

    def _loop(self) -> None:
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(self.sock, selectors.EVENT_READ)
                while not self._closed:
                    try:
                        if not selector.select(_POLL_INTERVAL):
                            continue
                        conn, _ = self.sock.accept()
                    except TimeoutError as exc:
                        if self._closed:
                            break
                        self._logger.error("timeout accepting connection: %s", exc)
                        continue
                    except (OSError, ValueError):
                        break
                    threading.Thread(
                        target=self._handle, args=(conn,), daemon=True
                    ).start()
        except (OSError, ValueError):
            pass
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._cond:
            self._done = True
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        # release connections nobody will accept
        for conn in pending:
            conn.close()

    def _handle(self, sock: socket.socket) -> None:
        conn = SocketConn(sock)
        hijacked = False
        try:
            cx = wrap_connection(conn, b"", self._logger)
            cx.context[LISTENER_CTX_KEY] = self
            start = time.monotonic()
            try:
                self._compiled_route.handle(cx)
            except _Hijacked:
                hijacked = True
            except Exception as exc:
                self._logger.error("handling connection: %s", exc)
            self._logger.debug(
                "connection stats remote=%s read=%d written=%d duration=%.6fs",
                cx.remote_addr,
                cx.bytes_read,
                cx.bytes_written,
                time.monotonic() - start,
            )
        finally:
            if not hijacked:
                conn.close()

    def _pipe_connection(self, cx: Connection) -> None:
        states = cx.get_var(TLS_CONNECTION_STATES_VAR_NAME) or []
        item: Any = _TLSConnection(cx, states[-1]) if states else cx
        with self._cond:
            while len(self._queue) >= self._capacity and not self._done:
                self._cond.wait()
            if not self._done:
                self._queue.append(item)
                self._cond.notify_all()
                raise _Hijacked()
        item.close()
        raise _Hijacked()


@dataclass
class ListenerWrapper:
    """Wraps a listening socket so that connections pass through routes first.

    Stream sockets only. Connections that reach the end of the routes are
    returned by the wrapped listener's accept().
    """

    routes: RouteList = field(default_factory=RouteList)
    matching_timeout: float = 0.0
    logger: logging.Logger | None = None
    _compiled_route: Handler | None = field(
        default=None, init=False, repr=False, compare=False
    )

    module_id: ClassVar[str] = "caddy.listeners.layer4"

    def __post_init__(self) -> None:
        if not isinstance(self.routes, RouteList):
            self.routes = RouteList(self.routes)

    def provision(self) -> None:
        """Provision the routes and compile them."""
        if self.logger is None:
            self.logger = logging.getLogger("l4router.listener")
        if self.matching_timeout <= 0:
            self.matching_timeout = MATCHING_TIMEOUT_DEFAULT
        self.routes.provision()
        self._compiled_route = self.routes.compile(
            self.logger, self.matching_timeout, _ListenerHandler()
        )

    def wrap_listener(self, sock: socket.socket) -> Layer4Listener:
        """Start routing connections accepted from `sock`."""
        if self._compiled_route is None:
            self.provision()
        assert self._compiled_route is not None
        return Layer4Listener(sock, self._compiled_route, self.logger)


def _listener_wrapper_factory(config: Any) -> ListenerWrapper:
    config = config or {}
    if not isinstance(config, Mapping):
        raise TypeError(f"expected an object, got {type(config).__name__}")
    timeout = config.get("matching_timeout", 0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise TypeError("'matching_timeout' must be a number of seconds")
    return ListenerWrapper(
        routes=RouteList(config.get("routes") or []),
        matching_timeout=float(timeout),
    )


register_module(ListenerWrapper.module_id, _listener_wrapper_factory)