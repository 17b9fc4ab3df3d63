"""A handler that writes back whatever it reads."""

from __future__ import annotations

from typing import Any, ClassVar, Mapping

from l4router.connection import Connection
from l4router.handlers import Handler, NextHandler
from l4router.registry import register_module

_CHUNK_SIZE = 32 * 1024


class EchoHandler(NextHandler):
    """Copies the connection's input back to it until end of stream."""

    module_id: ClassVar[str] = "layer4.handlers.echo"

    def handle(self, cx: Connection, next_handler: Handler) -> None:
        while True:
            data = cx.read(_CHUNK_SIZE)
            if not data:
                return
            cx.write(data)


def _echo_factory(config: Any) -> EchoHandler:
    if config is not None and not isinstance(config, Mapping):
        raise TypeError(f"expected an object, got {type(config).__name__}")
    return EchoHandler()


register_module(EchoHandler.module_id, _echo_factory)