from __future__ import annotations

import socket
import threading

import pytest

from o2mon.config import PlcSettings
from o2mon.errors import PlcConnectionError, PlcTimeoutError
from o2mon.plc.transport import ConnectionState, PlcTransport


class FakeSocket:
    def __init__(self, chunks: list):
        self._chunks = chunks
        self.sent: list[bytes] = []
        self.closed = False
        self.timeouts: list[float] = []

    def settimeout(self, value: float) -> None:
        self.timeouts.append(value)

    def sendall(self, data: bytes) -> None:
        self.sent.append(data)

    def recv(self, _size: int) -> bytes:
        if not self._chunks:
            raise socket.timeout()
        item = self._chunks.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


def _settings(**kwargs) -> PlcSettings:
    base = dict(host="127.0.0.1", port=500, response_timeout=0.1, poll_step=0.01, write_settle=0.03)
    base.update(kwargs)
    return PlcSettings(**base)


def test_exchange_returns_first_chunk_and_closes() -> None:
    fake = FakeSocket([socket.timeout(), b"\x02014600138800\x03", b"ignored"])
    calls = []

    def connector(address, timeout):
        calls.append((address, timeout))
        return fake

    transport = PlcTransport(_settings(connect_timeout=0.25), connector=connector)
    assert transport.exchange(b"req") == b"\x02014600138800\x03"
    assert fake.sent == [b"req"]
    assert fake.closed
    assert calls == [(("127.0.0.1", 500), 0.25)]
    assert transport.state is ConnectionState.CONNECTED


def test_exchange_times_out_without_response() -> None:
    fake = FakeSocket([])
    transport = PlcTransport(_settings(), connector=lambda *_a, **_k: fake)
    with pytest.raises(PlcTimeoutError):
        transport.exchange(b"req")
    assert fake.closed
    assert transport.state is ConnectionState.ERROR
    assert isinstance(transport.last_exception, PlcTimeoutError)


def test_exchange_peer_close_is_connection_error() -> None:
    fake = FakeSocket([b""])
    transport = PlcTransport(_settings(), connector=lambda *_a, **_k: fake)
    with pytest.raises(PlcConnectionError):
        transport.exchange(b"req")
    assert fake.closed


def test_connect_timeout_maps_to_timeout_error() -> None:
    def connector(*_args, **_kwargs):
        raise socket.timeout("timed out")

    transport = PlcTransport(_settings(), connector=connector)
    with pytest.raises(PlcTimeoutError):
        transport.exchange(b"req")
    assert transport.state is ConnectionState.ERROR


def test_refused_connection_sets_error_state() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()

    transport = PlcTransport(_settings(port=port))
    with pytest.raises(PlcConnectionError):
        transport.exchange(b"req")
    assert transport.state is ConnectionState.ERROR
    assert transport.last_exception is not None


def test_send_tolerates_silence_and_close() -> None:
    silent = FakeSocket([])
    transport = PlcTransport(_settings(), connector=lambda *_a, **_k: silent)
    assert transport.send(b"write") is None
    assert silent.sent == [b"write"]
    assert transport.state is ConnectionState.CONNECTED
    assert transport.last_exception is None

    closing = FakeSocket([b""])
    transport = PlcTransport(_settings(), connector=lambda *_a, **_k: closing)
    assert transport.send(b"write") is None
    assert closing.closed

    acking = FakeSocket([b"\x0201\x03"])
    transport = PlcTransport(_settings(), connector=lambda *_a, **_k: acking)
    assert transport.send(b"write") == b"\x0201\x03"


def test_exchange_against_local_server() -> None:
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]
    received: list[bytes] = []

    def serve() -> None:
        conn, _ = server.accept()
        with conn:
            received.append(conn.recv(1024))
            conn.sendall(b"\x020146001388d1\x03")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        transport = PlcTransport(_settings(port=port, response_timeout=1.0))
        assert transport.exchange(b"\x02014602R0210074\x03") == b"\x020146001388d1\x03"
    finally:
        thread.join(timeout=1.0)
        server.close()
    assert received == [b"\x02014602R0210074\x03"]
