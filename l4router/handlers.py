"""Connection handlers and the middleware chain that joins them."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import reduce
from typing import TYPE_CHECKING, Any, Callable, Iterable

if TYPE_CHECKING:
    from l4router.connection import Connection


class Handler(ABC):
    """Handles a connection."""

    @abstractmethod
    def handle(self, cx: Connection) -> Any:
        """Handle `cx`; raise on failure."""


class NextHandler(ABC):
    """Handles a connection as one link in a middleware chain."""

    @abstractmethod
    def handle(self, cx: Connection, next_handler: Handler) -> Any:
        """Handle `cx`, optionally passing it on to `next_handler`."""


Middleware = Callable[[Handler], Handler]


@dataclass(frozen=True)
class HandlerFunc(Handler):
    """Turns a function of one connection into a Handler."""

    func: Callable[[Connection], Any]

    def handle(self, cx: Connection) -> Any:
        return self.func(cx)


@dataclass(frozen=True)
class NextHandlerFunc(NextHandler):
    """Turns a function of a connection and the next handler into a NextHandler."""

    func: Callable[[Connection, Handler], Any]

    def handle(self, cx: Connection, next_handler: Handler) -> Any:
        return self.func(cx, next_handler)


class NopHandler(Handler):
    """Does nothing with the connection, not even reading; ends every chain.

    Unused client data is deliberately not drained.
    """

    def handle(self, cx: Connection) -> None:
        return None


class ForwardNextHandler(NextHandler):
    """Passes the connection straight to the next handler."""

    def handle(self, cx: Connection, next_handler: Handler) -> Any:
        return next_handler.handle(cx)


def wrap_handler(handler: NextHandler) -> Middleware:
    """Turn a NextHandler into middleware that binds it to its successor."""

    def middleware(next_handler: Handler) -> Handler:
        return HandlerFunc(lambda cx: handler.handle(cx, next_handler))

    return middleware


def compile_handlers(handlers: Iterable[NextHandler]) -> Handler:
    """Chain `handlers` in order, ending with a NopHandler."""
    middleware = [wrap_handler(h) for h in handlers]
    return reduce(lambda nxt, mw: mw(nxt), reversed(middleware), NopHandler())