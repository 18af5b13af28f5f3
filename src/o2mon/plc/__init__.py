"""
PLC side of the monitor: the ASCII/LRC register protocol, the one-shot TCP
transport, the register service with its single in-flight guard, and the
polling scheduler that keeps chamber raw values fresh.
"""

from .frames import (
    ResponseDecoder,
    build_read_frame,
    build_write_frame,
    decode_response,
    lrc,
)
from .poller import PollingScheduler
from .registers import RegisterService
from .transport import ConnectionState, PlcTransport

__all__ = [
    "ResponseDecoder",
    "build_read_frame",
    "build_write_frame",
    "decode_response",
    "lrc",
    "PollingScheduler",
    "RegisterService",
    "ConnectionState",
    "PlcTransport",
]
