from __future__ import annotations

import enum
import logging
import socket
import time
from typing import Callable, Optional

from ..config import PlcSettings
from ..errors import PlcConnectionError, PlcTimeoutError

logger = logging.getLogger(__name__)

RECV_BUFSIZE = 1024


class ConnectionState(enum.IntEnum):
    DISCONNECTED = 0
    CONNECTED = 1
    ERROR = 2


Connector = Callable[..., socket.socket]


class PlcTransport:
    """
    One TCP session per exchange: connect, send, wait for one inbound chunk,
    close. The PLC accepts a single transaction per connection, so nothing is
    pooled and nothing is retried here.
    """

    def __init__(
        self,
        settings: PlcSettings,
        connector: Optional[Connector] = None,
    ) -> None:
        self.settings = settings
        self._connector = connector or socket.create_connection
        self.state = ConnectionState.DISCONNECTED
        self.last_exception: Optional[Exception] = None

    @property
    def address(self) -> tuple[str, int]:
        return (self.settings.host, int(self.settings.port))

    def exchange(self, request: bytes, timeout: Optional[float] = None) -> bytes:
        response_timeout = self.settings.response_timeout if timeout is None else timeout
        sock = self._open()
        try:
            self._send(sock, request)
            data = self._receive_one(sock, response_timeout)
            logger.debug("PLC response %r (%d bytes)", data, len(data))
            return data
        finally:
            self._close(sock)

    def send(self, request: bytes, settle: Optional[float] = None) -> Optional[bytes]:
        """Send *request* and give the PLC *settle* seconds to acknowledge.

        Returns the acknowledgement when one arrives; silence is not an error.
        """
        settle_time = self.settings.write_settle if settle is None else settle
        sock = self._open()
        try:
            self._send(sock, request)
            try:
                ack = self._receive_one(sock, settle_time, allow_close=True)
            except PlcTimeoutError:
                self.state = ConnectionState.CONNECTED
                self.last_exception = None
                return None
            return ack or None
        finally:
            self._close(sock)

    def _open(self) -> socket.socket:
        try:
            sock = self._connector(self.address, timeout=self.settings.connect_timeout)
        except socket.timeout as exc:
            self._fail(exc)
            raise PlcTimeoutError(f"Connection timeout to {self.address[0]}:{self.address[1]}") from exc
        except OSError as exc:
            self._fail(exc)
            raise PlcConnectionError(f"Connection error to {self.address[0]}:{self.address[1]}: {exc}") from exc
        self.state = ConnectionState.CONNECTED
        self.last_exception = None
        logger.debug("PLC connected to %s:%s", *self.address)
        return sock

    def _send(self, sock: socket.socket, request: bytes) -> None:
        try:
            sock.sendall(request)
        except OSError as exc:
            self._fail(exc)
            raise PlcConnectionError(f"Failed to send request: {exc}") from exc

    def _receive_one(self, sock: socket.socket, timeout: float, allow_close: bool = False) -> bytes:
        step = max(min(self.settings.poll_step, timeout), 0.001)
        deadline = time.monotonic() + timeout
        sock.settimeout(step)
        while True:
            try:
                data = sock.recv(RECV_BUFSIZE)
            except socket.timeout:
                if time.monotonic() >= deadline:
                    exc = PlcTimeoutError(f"No response within {timeout:.3f}s")
                    self._fail(exc)
                    raise exc from None
                continue
            except OSError as exc:
                self._fail(exc)
                raise PlcConnectionError(f"Receive failed: {exc}") from exc
            if not data and not allow_close:
                exc = PlcConnectionError("Connection closed by PLC before responding")
                self._fail(exc)
                raise exc
            return data

    def _fail(self, exc: Exception) -> None:
        self.state = ConnectionState.ERROR
        self.last_exception = exc
        logger.debug("PLC transport error (%s:%s): %s", self.address[0], self.address[1], exc)

    @staticmethod
    def _close(sock: socket.socket) -> None:
        try:
            sock.close()
        except OSError:
            logger.debug("Error closing PLC socket", exc_info=True)
