import os
import uuid

import pytest

from rxdm.connection import UnixSocketMessage
from rxdm.messages import RxdmError
from rxdm.server import UnixSocketServer
from rxdm.socket_client import UnixSocketClient


@pytest.fixture(autouse=True)
def _abstract_sockets(monkeypatch):
    monkeypatch.delenv("FILE_BASED_UDS_PATH_PREFIX", raising=False)


def _path():
    return f"rxdm_test_client_{os.getpid()}_{uuid.uuid4().hex[:12]}"


def _echo(client, request):
    return UnixSocketMessage(text=b"echo:" + (request.text or b"")), False


def _read_fd(client, request):
    try:
        data = os.read(request.fd, 16)
    finally:
        os.close(request.fd)
    return UnixSocketMessage(text=data), False


def _close_after_reply(client, request):
    return UnixSocketMessage(text=request.text), True


def test_request_round_trip():
    path = _path()
    with UnixSocketServer(path, _echo) as server:
        server.start()
        with UnixSocketClient(path) as client:
            client.connect()
            first = client.make_request(UnixSocketMessage(text=b"ping"))
            second = client.make_request(UnixSocketMessage(text=b"again"))
    assert first.text == b"echo:ping"
    assert second.text == b"echo:again"


def test_descriptor_travels_with_request():
    path = _path()
    read_end, write_end = os.pipe()
    os.write(write_end, b"hi")
    os.close(write_end)
    try:
        with UnixSocketServer(path, _read_fd) as server:
            server.start()
            with UnixSocketClient(path) as client:
                client.connect()
                response = client.make_request(UnixSocketMessage(text=b"x", fd=read_end))
    finally:
        os.close(read_end)
    assert response.text == b"hi"


def test_request_after_server_closed_connection_fails():
    path = _path()
    with UnixSocketServer(path, _close_after_reply) as server:
        server.start()
        with UnixSocketClient(path) as client:
            client.connect()
            reply = client.make_request(UnixSocketMessage(text=b"bye"))
            assert reply.text == b"bye"
            with pytest.raises(RxdmError):
                client.make_request(UnixSocketMessage(text=b"more"))


def test_connect_without_server_fails():
    client = UnixSocketClient(_path(), connect_timeout=0.5)
    with pytest.raises(RxdmError):
        client.connect()


def test_empty_path_is_rejected():
    with pytest.raises(RxdmError):
        UnixSocketClient("").connect()


def test_request_before_connect_fails():
    with pytest.raises(RxdmError):
        UnixSocketClient(_path()).make_request(UnixSocketMessage(text=b"x"))