import pytest

from raftkv.wire import (
    RpcHeader,
    WireError,
    encode_varint,
    frame_request,
    read_varint,
    split_request,
)


def test_encode_varint_known_value():
    assert encode_varint(300) == b"\xac\x02"


@pytest.mark.parametrize("value", [0, 1, 127, 128, 16383, 16384, 2**32 - 1, 2**63])
def test_varint_round_trip(value):
    encoded = encode_varint(value)
    assert read_varint(encoded) == (value, len(encoded))


def test_read_varint_at_offset():
    data = b"xy" + encode_varint(5000) + b"z"
    value, offset = read_varint(data, 2)
    assert value == 5000
    assert data[offset:] == b"z"


def test_negative_varint_rejected():
    with pytest.raises(ValueError):
        encode_varint(-1)


def test_truncated_varint_raises():
    with pytest.raises(WireError):
        read_varint(encode_varint(300)[:1])


def test_overlong_varint_raises():
    with pytest.raises(WireError):
        read_varint(b"\xff" * 11)


def test_header_wire_bytes():
    header = RpcHeader("raftRpc", "AppendEntries", 5)
    assert header.serialize() == b"\n\x07raftRpc\x12\x0dAppendEntries\x18\x05"


def test_default_header_serializes_empty():
    assert RpcHeader().serialize() == b""


def test_header_round_trip():
    header = RpcHeader("kvServerRpc", "PutAppend", 70000)
    assert RpcHeader.parse(header.serialize()) == header


def test_parse_skips_unknown_fields():
    header = RpcHeader("svc", "m", 9)
    extra = encode_varint((9 << 3) | 0) + encode_varint(12345)
    extra += encode_varint((10 << 3) | 2) + encode_varint(3) + b"abc"
    assert RpcHeader.parse(header.serialize() + extra) == header


def test_parse_truncated_field_raises():
    data = RpcHeader("service", "method", 1).serialize()
    with pytest.raises(WireError):
        RpcHeader.parse(data[:4])


def test_args_size_out_of_range():
    with pytest.raises(ValueError):
        RpcHeader("a", "b", 2**32).serialize()


def test_frame_and_split_round_trip():
    args = b"\x00\x01binary\x00args"
    header = RpcHeader("raftRpc", "RequestVote", len(args))
    framed = frame_request(header, args)
    assert split_request(framed) == (header, args)


def test_frame_starts_with_header_length():
    header = RpcHeader("s", "m", 2)
    framed = frame_request(header, b"ab")
    size, offset = read_varint(framed)
    assert size == len(header.serialize())
    assert framed[offset:offset + size] == header.serialize()


def test_split_ignores_trailing_bytes():
    header = RpcHeader("s", "m", 3)
    framed = frame_request(header, b"abc") + b"garbage"
    assert split_request(framed)[1] == b"abc"


def test_split_truncated_args_raises():
    header = RpcHeader("s", "m", 10)
    with pytest.raises(WireError):
        split_request(frame_request(header, b"short"))


def test_split_truncated_header_raises():
    framed = frame_request(RpcHeader("service", "method", 0), b"")
    with pytest.raises(WireError):
        split_request(framed[:5])