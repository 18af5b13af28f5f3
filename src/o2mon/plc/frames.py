from __future__ import annotations

import logging
from typing import Dict, List

from ..errors import ValidationError

STX = 0x02
ETX = 0x03

STATION = b"01"
FN_READ = b"4602"
FN_WRITE = b"4701"
RESPONSE_SIGNATURE = bytes([STX]) + STATION + b"4"

HEADER_LEN = 7
ADDRESS_LEN = 6
RESPONSE_HEADER_LEN = 6
TRAILER_LEN = 3  # LRC pair + ETX
SAMPLE_WIDTH = 4

SENSOR_BLOCK_ADDRESS = "R02100"
MAX_REGISTER_VALUE = 0xFFFF


def lrc(data: bytes) -> str:
    """Low byte of the byte sum, as two lowercase hex characters."""
    return f"{sum(data) & 0xFF:02x}"


def _encode_address(address: str) -> bytes:
    try:
        encoded = address.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ValidationError(f"Register address '{address}' must be ASCII") from exc
    if len(encoded) != ADDRESS_LEN:
        raise ValidationError(
            f"Register address '{address}' must be {ADDRESS_LEN} characters, got {len(encoded)}"
        )
    return encoded


def _seal(body: bytes) -> bytes:
    return body + lrc(body).encode("ascii") + bytes([ETX])


def build_read_frame(address: str = SENSOR_BLOCK_ADDRESS) -> bytes:
    body = bytes([STX]) + STATION + FN_READ + _encode_address(address)
    return _seal(body)


def build_write_frame(address: str, value: int) -> bytes:
    value = int(value)
    if not 0 <= value <= MAX_REGISTER_VALUE:
        raise ValidationError(f"Register value {value} outside 0..{MAX_REGISTER_VALUE}")
    body = (
        bytes([STX])
        + STATION
        + FN_WRITE
        + _encode_address(address)
        + f"{value:04X}".encode("ascii")
    )
    return _seal(body)


def has_signature(frame: bytes) -> bool:
    return bytes(frame[: len(RESPONSE_SIGNATURE)]) == RESPONSE_SIGNATURE


def lrc_matches(frame: bytes) -> bool:
    if len(frame) < TRAILER_LEN + 1:
        return False
    body = bytes(frame[:-TRAILER_LEN])
    received = bytes(frame[-TRAILER_LEN:-1]).decode("ascii", errors="replace")
    return received.lower() == lrc(body)


def decode_response(frame: bytes) -> List[int]:
    """
    Decode the sample block of a response frame.

    A frame without the response signature, or with a non-hex payload, yields no
    samples; the caller treats that like a missing response.
    """
    if not has_signature(frame):
        return []
    payload = bytes(frame[RESPONSE_HEADER_LEN : len(frame) - TRAILER_LEN])
    count = len(payload) // SAMPLE_WIDTH
    samples: List[int] = []
    for index in range(count):
        group = payload[index * SAMPLE_WIDTH : (index + 1) * SAMPLE_WIDTH]
        try:
            samples.append(int(group.decode("ascii"), 16))
        except (UnicodeDecodeError, ValueError):
            return []
    return samples


class ResponseDecoder:
    """
    Wraps :func:`decode_response` with running counters. LRC mismatches are
    counted but the samples are still returned; the PLC side never enforced it.
    """

    def __init__(self) -> None:
        self._stats: Dict[str, int] = {
            "frames": 0,
            "signature_errors": 0,
            "payload_errors": 0,
            "lrc_mismatches": 0,
        }
        self._log = logging.getLogger(__name__)

    def decode(self, frame: bytes) -> List[int]:
        if not has_signature(frame):
            self._stats["signature_errors"] += 1
            self._log.debug("Discarding response with bad signature: %r", bytes(frame[:8]))
            return []
        if not lrc_matches(frame):
            self._stats["lrc_mismatches"] += 1
            self._log.debug("LRC mismatch in response %r", bytes(frame))
        samples = decode_response(frame)
        if not samples:
            self._stats["payload_errors"] += 1
            return []
        self._stats["frames"] += 1
        return samples

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
