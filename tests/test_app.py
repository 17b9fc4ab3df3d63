import json
import socket

import pytest

from l4router.app import App, main
from l4router.handlers import NextHandler
from l4router.registry import ModuleError, load_module, register_module
from l4router.server import parse_network_address


class _Upper(NextHandler):
    def handle(self, cx, next_handler):
        data = cx.read(1024)
        cx.write(data.upper())


register_module("layer4.handlers.test_app_upper", lambda config: _Upper())

UPPER_ROUTES = [{"handle": [{"handler": "test_app_upper"}]}]


def test_from_config_builds_servers():
    app = App.from_config(
        {
            "servers": {
                "web": {
                    "listen": ["127.0.0.1:0"],
                    "routes": UPPER_ROUTES,
                    "idle_timeout": "10s",
                    "matching_timeout": 2,
                }
            }
        }
    )
    server = app.servers["web"]
    assert server.listen == ["127.0.0.1:0"]
    assert server.idle_timeout == 10.0
    assert server.matching_timeout == 2.0
    assert len(server.routes) == 1


def test_from_config_empty():
    assert App.from_config(None).servers == {}


@pytest.mark.parametrize(
    "config",
    [
        [],
        {"servers": []},
        {"servers": {"a": {"listen": "127.0.0.1:0"}}},
        {"servers": {"a": {"idle_timeout": "forever"}}},
        {"servers": {"a": {"matching_timeout": True}}},
    ],
)
def test_from_config_errors(config):
    with pytest.raises(ModuleError):
        App.from_config(config)


def test_provision_names_failing_server():
    app = App.from_config({"servers": {"bad": {"listen": ["bogus/x:1"]}}})
    with pytest.raises(ModuleError, match="server 'bad'"):
        app.provision()


def test_provision_parses_listen_addresses():
    app = App.from_config({"servers": {"s": {"listen": ["udp/127.0.0.1:0"]}}})
    app.provision()
    assert app.servers["s"].listen_addrs == [parse_network_address("udp/127.0.0.1:0")]


def test_load_module_builds_provisioned_app():
    app = load_module("layer4", {"servers": {"s": {"listen": ["127.0.0.1:0"]}}})
    assert isinstance(app, App)
    assert app.servers["s"].listen_addrs[0].host == "127.0.0.1"


def test_start_and_stop_tcp():
    app = App.from_config({"servers": {"s": {"listen": ["127.0.0.1:0"], "routes": UPPER_ROUTES}}})
    app.provision()
    app.start()
    try:
        assert len(app.listeners) == 1
        port = app.listeners[0].getsockname()[1]
        with socket.create_connection(("127.0.0.1", port), timeout=2) as client:
            client.sendall(b"abc")
            assert client.recv(1024) == b"ABC"
    finally:
        app.stop()
    assert app.listeners == []
    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1).close()


def test_start_and_stop_udp():
    app = App.from_config(
        {"servers": {"s": {"listen": ["udp/127.0.0.1:0"], "routes": UPPER_ROUTES}}}
    )
    app.provision()
    app.start()
    try:
        assert len(app.packet_sockets) == 1
        target = app.packet_sockets[0].getsockname()
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.settimeout(2)
            client.sendto(b"udp", target)
            assert client.recvfrom(1024)[0] == b"UDP"
    finally:
        app.stop()
    assert app.packet_sockets == []


def _write_config(tmp_path, config):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return str(path)


def test_main_validate_ok(tmp_path, capsys):
    path = _write_config(tmp_path, {"servers": {"s": {"listen": ["127.0.0.1:0"]}}})
    assert main([path, "--validate"]) == 0
    assert "Valid configuration" in capsys.readouterr().out


def test_main_validate_apps_wrapper(tmp_path):
    path = _write_config(
        tmp_path, {"apps": {"layer4": {"servers": {"s": {"listen": ["127.0.0.1:0"]}}}}}
    )
    assert main([path, "--validate"]) == 0


def test_main_rejects_invalid_config(tmp_path, capsys):
    path = _write_config(tmp_path, {"servers": {"bad": {"listen": ["bogus/x:1"]}}})
    assert main([path, "--validate"]) == 1
    assert "server 'bad'" in capsys.readouterr().err


def test_main_rejects_malformed_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert main([str(path), "--validate"]) == 1


def test_main_missing_file(tmp_path):
    assert main([str(tmp_path / "missing.json"), "--validate"]) == 1