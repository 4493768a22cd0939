"""Request framing: a varint header length, an ``RpcHeader`` and the arguments.

``RpcHeader`` uses the protocol-buffer wire format with fields
``service_name`` (1, bytes), ``method_name`` (2, bytes) and
``args_size`` (3, uint32).
"""

from __future__ import annotations

from dataclasses import dataclass

_UINT32_MASK = 0xFFFFFFFF
_MAX_VARINT_BYTES = 10

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH = 2
_WIRE_START_GROUP = 3
_WIRE_END_GROUP = 4
_WIRE_FIXED32 = 5


class WireError(ValueError):
    """Raised when bytes on the wire cannot be decoded."""


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a base-128 varint."""
    if value < 0:
        raise ValueError(f"varint value must be non-negative, got {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def read_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a varint at ``offset``; return the value and the next offset."""
    result = 0
    shift = 0
    position = offset
    for _ in range(_MAX_VARINT_BYTES):
        if position >= len(data):
            raise WireError("truncated varint")
        byte = data[position]
        position += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, position
        shift += 7
    raise WireError("varint is too long")


def _key(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def _length_delimited(field_number: int, payload: bytes) -> bytes:
    return _key(field_number, _WIRE_LENGTH) + encode_varint(len(payload)) + payload


def _read_length_delimited(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = read_varint(data, offset)
    end = offset + length
    if end > len(data):
        raise WireError("truncated length-delimited field")
    return bytes(data[offset:end]), end


def _skip_field(data: bytes, offset: int, wire_type: int) -> int:
    if wire_type == _WIRE_VARINT:
        return read_varint(data, offset)[1]
    if wire_type == _WIRE_LENGTH:
        return _read_length_delimited(data, offset)[1]
    widths = {_WIRE_FIXED64: 8, _WIRE_FIXED32: 4}
    if wire_type in widths:
        end = offset + widths[wire_type]
        if end > len(data):
            raise WireError("truncated fixed-width field")
        return end
    raise WireError(f"unsupported wire type {wire_type}")


def _decode_text(raw: bytes, field: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as error:
        raise WireError(f"{field} is not valid UTF-8") from error


@dataclass
class RpcHeader:
    """Names the service and method of a call and the size of its arguments."""

    service_name: str = ""
    method_name: str = ""
    args_size: int = 0

    def serialize(self) -> bytes:
        """Encode the header; fields at their default value are omitted."""
        if not 0 <= self.args_size <= _UINT32_MASK:
            raise ValueError(f"args_size out of uint32 range: {self.args_size}")
        out = bytearray()
        if self.service_name:
            out += _length_delimited(1, self.service_name.encode("utf-8"))
        if self.method_name:
            out += _length_delimited(2, self.method_name.encode("utf-8"))
        if self.args_size:
            out += _key(3, _WIRE_VARINT) + encode_varint(self.args_size)
        return bytes(out)

    @classmethod
    def parse(cls, data: bytes) -> RpcHeader:
        """Decode a header, skipping fields it does not know."""
        header = cls()
        offset = 0
        while offset < len(data):
            tag, offset = read_varint(data, offset)
            field_number, wire_type = tag >> 3, tag & 7
            if tag == 0 or wire_type == _WIRE_END_GROUP:
                break
            if wire_type == _WIRE_START_GROUP:
                raise WireError("groups are not supported")
            if field_number == 1 and wire_type == _WIRE_LENGTH:
                raw, offset = _read_length_delimited(data, offset)
                header.service_name = _decode_text(raw, "service_name")
            elif field_number == 2 and wire_type == _WIRE_LENGTH:
                raw, offset = _read_length_delimited(data, offset)
                header.method_name = _decode_text(raw, "method_name")
            elif field_number == 3 and wire_type == _WIRE_VARINT:
                value, offset = read_varint(data, offset)
                header.args_size = value & _UINT32_MASK
            else:
                offset = _skip_field(data, offset, wire_type)
        return header


def frame_request(header: RpcHeader, args: bytes) -> bytes:
    """Build the bytes sent for a call: header length, header, arguments."""
    header_bytes = header.serialize()
    return encode_varint(len(header_bytes)) + header_bytes + bytes(args)


def split_request(data: bytes) -> tuple[RpcHeader, bytes]:
    """Split a framed request into its header and its ``args_size`` argument bytes."""
    header_size, offset = read_varint(data)
    header_size &= _UINT32_MASK
    end = offset + header_size
    if end > len(data):
        raise WireError("truncated request header")
    header = RpcHeader.parse(data[offset:end])
    args = bytes(data[end:end + header.args_size])
    if len(args) != header.args_size:
        raise WireError(
            f"expected {header.args_size} argument bytes, got {len(args)}"
        )
    return header, args