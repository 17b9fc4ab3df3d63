import logging
import socket

import pytest

from l4router.connection import SocketConn, wrap_connection
from l4router.handlers import HandlerFunc
from l4router.modules.close import HandleClose
from l4router.registry import ModuleError, load_module, module_ids
from l4router.routes import RouteList


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    b.settimeout(2.0)
    yield a, b
    a.close()
    b.close()


def _wrap(sock):
    return wrap_connection(SocketConn(sock), b"", logging.getLogger("l4router.test"))


def test_handle_closes_connection(pair):
    a, b = pair
    called = []
    HandleClose().handle(_wrap(a), HandlerFunc(called.append))
    assert b.recv(16) == b""
    assert called == []


def test_registered_under_handlers_namespace():
    loaded = load_module("layer4.handlers.close", {})
    assert "layer4.handlers.close" in module_ids("layer4.handlers")
    assert type(loaded) is HandleClose


def test_registry_rejects_non_object_config():
    with pytest.raises((ModuleError, TypeError, ValueError)):
        load_module("layer4.handlers.close", ["close"])


def test_close_route_is_terminal(pair):
    a, b = pair
    routes = RouteList([{"handle": [{"handler": "close"}]}])
    routes.provision()
    reached = []
    compiled = routes.compile(None, 1.0, HandlerFunc(reached.append))
    compiled.handle(_wrap(a))
    assert b.recv(16) == b""
    assert reached == []