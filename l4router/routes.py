"""Routes: handler chains gated by matchers, evaluated in order."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from l4router.connection import Connection, ConsumedAllPrefetchedBytes
from l4router.handlers import (
    ForwardNextHandler,
    Handler,
    HandlerFunc,
    Middleware,
    NextHandler,
    wrap_handler,
)
from l4router.matchers import MatcherSets
from l4router.registry import ModuleError, load_module

HANDLERS_NAMESPACE = "layer4.handlers"
HANDLER_INLINE_KEY = "handler"

# Time connections have to complete the matching phase, in seconds.
MATCHING_TIMEOUT_DEFAULT = 3.0


class MatchingTimeout(Exception):
    """Matching was aborted because the matching timeout passed."""

    def __init__(self, message: str = "aborted matching according to timeout") -> None:
        super().__init__(message)


class _Status(Enum):
    NEEDS_MORE = "needs_more"
    NOT_MATCHED = "not_matched"
    MATCHED = "matched"


def _load_handler(raw: Any) -> NextHandler:
    if not isinstance(raw, Mapping):
        raise ModuleError(f"handler config must be an object, got {raw!r}")
    name = raw.get(HANDLER_INLINE_KEY)
    if not isinstance(name, str) or not name:
        raise ModuleError(
            f"module name not specified with key '{HANDLER_INLINE_KEY}' in {dict(raw)!r}"
        )
    config = {key: value for key, value in raw.items() if key != HANDLER_INLINE_KEY}
    handler = load_module(f"{HANDLERS_NAMESPACE}.{name}", config)
    if not callable(getattr(handler, "handle", None)):
        raise ModuleError(f"handler module '{name}' is not a layer4 connection handler")
    return handler


@dataclass
class Route:
    """Handlers run in order when the route's matchers match.

    Matchers within a set are AND'ed, sets are OR'ed; no sets match all.
    Each raw handler is an object naming its module under the "handler" key.
    """

    matcher_sets_raw: list[dict[str, Any]] = field(default_factory=list)
    handlers_raw: list[dict[str, Any]] = field(default_factory=list)
    matcher_sets: MatcherSets = field(
        default_factory=MatcherSets, init=False, repr=False, compare=False
    )
    handlers: list[NextHandler] = field(
        default_factory=list, init=False, repr=False, compare=False
    )
    _middleware: list[Middleware] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    def provision(self) -> None:
        """Load the matcher and handler modules."""
        try:
            self.matcher_sets = MatcherSets.from_config(self.matcher_sets_raw)
        except ModuleError as exc:
            raise ModuleError(f"loading matcher modules: {exc}") from exc
        self.handlers = [_load_handler(raw) for raw in self.handlers_raw]
        self._middleware = [wrap_handler(h) for h in self.handlers]


def _route_from_config(config: Any) -> Route:
    if not isinstance(config, Mapping):
        raise ModuleError(f"route config must be an object, got {config!r}")
    return Route(
        matcher_sets_raw=list(config.get("match") or []),
        handlers_raw=list(config.get("handle") or []),
    )


class RouteList(list):
    """Routes evaluated in sequence; matched routes run their handlers.

    Items may be Route values or `{"match": [...], "handle": [...]}` objects.
    """

    def __init__(self, routes: Iterable[Route | Mapping[str, Any]] = ()) -> None:
        super().__init__(
            r if isinstance(r, Route) else _route_from_config(r) for r in routes
        )

    def provision(self) -> None:
        """Provision every route."""
        for index, route in enumerate(self):
            try:
                route.provision()
            except Exception as exc:
                raise ModuleError(f"route {index}: {exc}") from exc

    def compile(
        self,
        logger: logging.Logger | None,
        matching_timeout: float,
        next_handler: Handler,
    ) -> Handler:
        """Build the handler that routes a connection; call after provision()."""
        return _CompiledRoutes(
            routes=tuple(self),
            logger=logger or logging.getLogger("l4router"),
            matching_timeout=matching_timeout,
            next_handler=next_handler,
        )


@dataclass(frozen=True)
class _CompiledRoutes(Handler):
    routes: tuple[Route, ...]
    logger: logging.Logger
    matching_timeout: float
    next_handler: Handler

    @staticmethod
    def _run_route(route: Route, cx: Connection) -> Connection | None:
        """Run the route's handlers; return the connection passed on, or None if terminal."""
        passed: list[Connection] = []
        handler: Handler = wrap_handler(ForwardNextHandler())(HandlerFunc(passed.append))
        for middleware in reversed(route._middleware):
            handler = middleware(handler)
        handler.handle(cx)
        return passed[-1] if passed else None

    def handle(self, cx: Connection) -> Any:
        routes = self.routes
        logger = self.logger
        deadline = time.time() + self.matching_timeout

        last_matched = -1
        # where a matcher may need more data; -1 means none does
        last_needs_more = -1
        status: dict[int, _Status] = {}

        while True:
            # the deadline protects against malicious or very slow clients
            cx.set_read_deadline(deadline)
            if last_needs_more != -1:
                try:
                    cx.prefetch()
                except TimeoutError:
                    logger.warning(
                        "matching connection remote=%s error=%s",
                        cx.remote_addr,
                        MatchingTimeout(),
                    )
                    return None
                except Exception as exc:
                    logger.error("matching connection remote=%s error=%s", cx.remote_addr, exc)
                    return None

            for index, route in enumerate(routes):
                if index <= last_matched:
                    continue
                if status.get(index) is _Status.NOT_MATCHED and index < last_needs_more:
                    continue

                try:
                    matched = route.matcher_sets.any_match(cx)
                except ConsumedAllPrefetchedBytes:
                    previous = last_needs_more
                    last_needs_more = index
                    status[index] = _Status.NEEDS_MORE
                    if previous == -1:
                        # first time more data is needed: go prefetch
                        break
                    continue
                except Exception as exc:
                    logger.error("matching connection remote=%s error=%s", cx.remote_addr, exc)
                    return None

                if matched:
                    # an earlier route still needs data; this is likely a catch-all
                    if not route.matcher_sets and last_needs_more != -1 and index > last_needs_more:
                        continue
                    status[index] = _Status.MATCHED
                    last_matched = index
                    last_needs_more = index + 1
                    cx.set_read_deadline(None)

                    passed_on = self._run_route(route, cx)
                    if passed_on is None:
                        return None
                    # the handlers may have wrapped the connection
                    cx = passed_on
                else:
                    if index >= last_needs_more:
                        last_needs_more = index + 1
                    status[index] = _Status.NOT_MATCHED

            if last_matched == len(routes) - 1:
                return self.next_handler.handle(cx)
            if last_needs_more != -1 and last_needs_more < len(routes):
                continue
            cx.set_read_deadline(None)
            return self.next_handler.handle(cx)