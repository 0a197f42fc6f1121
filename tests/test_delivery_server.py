from __future__ import annotations

import contextlib
import re
import socket
from urllib.parse import unquote

import pytest
import requests
from bs4 import BeautifulSoup

from bmk.ports import PortInUseError
from bmk.server import DeliveryServer, DeliveryServerError, ServerConfig

HOST = "127.0.0.1"


def _free_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind((HOST, 0))
        return sock.getsockname()[1]


@contextlib.contextmanager
def _running(config: ServerConfig):
    server = DeliveryServer(config)
    server.start()
    try:
        yield server
    finally:
        server.close()


def test_start_listens_on_requested_port() -> None:
    port = _free_port()
    with _running(ServerConfig(port=port, host=HOST, stretching=1)) as server:
        assert server.is_started()
        assert server.phase == "listening"
        assert server.current_port == port
        assert server.origin == f"http://{HOST}:{port}"
        response = requests.get(f"{server.origin}/", timeout=5)
        assert response.status_code == 503


def test_end_to_end_index_link_loads_script() -> None:
    with _running(ServerConfig(port=3300, fallback_port=True, host=HOST, stretching=10)) as server:
        server.set_bookmarklet_sources([("x.js", "1+1")])
        index = requests.get(f"{server.origin}/", timeout=5)
        assert index.status_code == 200
        anchors = BeautifulSoup(index.text, "html.parser").select("li a")
        assert len(anchors) == 1
        code = unquote(anchors[0]["href"][len("javascript:") :])
        match = re.search(r'u=s\.src="([^"]+)&id="', code)
        assert match is not None
        script = requests.get(f"{match.group(1)}&id=123-4567890", timeout=5)
        assert script.status_code == 200
        assert script.headers["content-type"].startswith("text/javascript")
        assert script.text == "1+1"


def test_second_server_on_same_port_fails() -> None:
    port = _free_port()
    with _running(ServerConfig(port=port, host=HOST, stretching=1)):
        second = DeliveryServer(ServerConfig(port=port, host=HOST, stretching=1))
        with pytest.raises(PortInUseError):
            second.start()
        assert second.phase == "stopped"
        assert not second.is_started()


def test_fallback_moves_to_next_free_port() -> None:
    port = _free_port()
    with _running(ServerConfig(port=port, host=HOST, stretching=1)):
        with _running(ServerConfig(port=port, fallback_port=True, host=HOST, stretching=1)) as second:
            assert second.current_port is not None
            assert port < second.current_port < port + 20
            assert requests.get(f"{second.origin}/", timeout=5).status_code == 503


def test_close_stops_listening_and_is_idempotent() -> None:
    port = _free_port()
    server = DeliveryServer(ServerConfig(port=port, host=HOST, stretching=1))
    server.start()
    server.close()
    assert not server.is_started()
    assert server.phase == "closed"
    server.close()
    with pytest.raises(requests.ConnectionError):
        requests.get(f"http://{HOST}:{port}/", timeout=2)


def test_closed_server_cannot_restart() -> None:
    server = DeliveryServer(ServerConfig(port=_free_port(), host=HOST, stretching=1))
    server.close()
    with pytest.raises(DeliveryServerError):
        server.start()


def test_start_twice_is_rejected() -> None:
    with _running(ServerConfig(port=_free_port(), host=HOST, stretching=1)) as server:
        with pytest.raises(DeliveryServerError):
            server.start()
        assert server.is_started()


def test_origin_requires_started_server() -> None:
    server = DeliveryServer(ServerConfig(host=HOST))
    assert not server.is_started()
    with pytest.raises(DeliveryServerError):
        server.origin
