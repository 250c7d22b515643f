"""CLAMIR wire protocol.

Framing and payload codecs shared by the client channels and the simulated
device. All multi-byte fields are little-endian.

Command channel:
- Request: opcode (u16) + payload length (u16) + payload
- Response: echoed opcode (u16) + status (i16) + payload length (u16) + payload

Image channel:
- Request: IMAGE_REQUEST header with an empty payload
- Response: one frame, 60 x i32 raw header + 4096 x i16 pixels (see clamir_frame)
"""

from __future__ import annotations

from typing import Any

import struct

from clamir_params import Parameter
from clamir_params import ValueKind


DEFAULT_IP = "192.168.1.77"
COMMAND_PORT = 5000
IMAGE_PORT = 5001

IMAGE_REQUEST = 0x0300

REQUEST_HEADER = struct.Struct("<HH")  # opcode, payload length
RESPONSE_HEADER = struct.Struct("<HhH")  # opcode echo, status, payload length

MAX_PAYLOAD = 64  # largest payload any catalog entry uses is 8 bytes


class ProtocolError(Exception):
    """Raised when bytes on the wire do not match the protocol."""

    pass


# =============================================================================
# Framing (Pure Functions)
# =============================================================================


def build_request(opcode: int, payload: bytes = b"") -> bytes:
    """Build a command request.

    Args:
        opcode: 16-bit command opcode.
        payload: Encoded value (empty for gets and triggers).

    Returns:
        Header + payload bytes.
    """
    return REQUEST_HEADER.pack(opcode, len(payload)) + payload


def parse_request_header(data: bytes) -> tuple[int, int]:
    """Split a request header into (opcode, payload length)."""
    if len(data) != REQUEST_HEADER.size:
        raise ProtocolError(f"Request header is {len(data)} bytes")
    opcode, length = REQUEST_HEADER.unpack(data)
    if length > MAX_PAYLOAD:
        raise ProtocolError(f"Payload length {length} exceeds {MAX_PAYLOAD}")
    return opcode, length


def build_response(opcode: int, status: int, payload: bytes = b"") -> bytes:
    """Build a command response (used by the simulated device)."""
    return RESPONSE_HEADER.pack(opcode, status, len(payload)) + payload


def parse_response_header(data: bytes, expected_opcode: int) -> tuple[int, int]:
    """Validate a response header against the request it answers.

    Args:
        data: Exactly RESPONSE_HEADER.size bytes.
        expected_opcode: Opcode of the request that was sent.

    Returns:
        Tuple of (status, payload length).

    Raises:
        ProtocolError: On short header, opcode mismatch or oversize payload.
    """
    if len(data) != RESPONSE_HEADER.size:
        raise ProtocolError(f"Response header is {len(data)} bytes")
    opcode, status, length = RESPONSE_HEADER.unpack(data)
    if opcode != expected_opcode:
        raise ProtocolError(
            f"Response for opcode 0x{opcode:04X}, expected 0x{expected_opcode:04X}"
        )
    if length > MAX_PAYLOAD:
        raise ProtocolError(f"Payload length {length} exceeds {MAX_PAYLOAD}")
    return status, length


# =============================================================================
# Value Codecs (Pure Functions)
# =============================================================================


def encode_value(param: Parameter, value: Any) -> bytes:
    """Encode an already validated value into the parameter's payload.

    Args:
        param: Catalog entry.
        value: Value as returned by ``param.validate``.

    Returns:
        Payload bytes of exactly ``param.payload_size``.
    """
    if param.kind is ValueKind.TRIGGER:
        return b""
    if param.kind is ValueKind.MULTI:
        return struct.pack(param.fmt, *(int(v) for v in value))
    if param.kind is ValueKind.TEXT:
        return struct.pack(param.fmt, value.encode("ascii"))
    if param.kind is ValueKind.FLOAT:
        return struct.pack(param.fmt, param.quantize(value))
    return struct.pack(param.fmt, int(value))


def decode_value(param: Parameter, payload: bytes) -> Any:
    """Decode a get response payload.

    Args:
        param: Catalog entry the request was issued for.
        payload: Response payload.

    Returns:
        int, float, bool, str or the parameter's NamedTuple.

    Raises:
        ProtocolError: If the payload size does not match the kind.
    """
    if len(payload) != param.payload_size:
        raise ProtocolError(
            f"{param.name}: payload is {len(payload)} bytes, "
            f"expected {param.payload_size}"
        )
    fields = struct.unpack(param.fmt, payload)
    if param.kind is ValueKind.MULTI:
        return param.decode_fields(fields)
    (value,) = fields
    if param.kind is ValueKind.TEXT:
        return value.rstrip(b"\x00").decode("ascii", errors="replace")
    if param.kind is ValueKind.FLOAT:
        return param.quantize(value)
    if param.kind is ValueKind.BOOL:
        return bool(value)
    return value
