"""A handler that closes the connection."""

from __future__ import annotations

from typing import Any, ClassVar, Mapping

from l4router.connection import Connection
from l4router.handlers import Handler, NextHandler
from l4router.registry import register_module


class HandleClose(NextHandler):
    """Closes the connection and ends the chain."""

    module_id: ClassVar[str] = "layer4.handlers.close"

    def handle(self, cx: Connection, next_handler: Handler) -> None:
        cx.close()


def _close_factory(config: Any) -> HandleClose:
    if config is not None and not isinstance(config, Mapping):
        raise TypeError(f"expected an object, got {type(config).__name__}")
    return HandleClose()


register_module(HandleClose.module_id, _close_factory)