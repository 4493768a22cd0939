"""Messages exchanged between Raft peers and between clerks and key/value servers.

Every message is encoded in the protocol-buffer wire format. Field numbers
follow declaration order. Integers are ``int32``, strings are UTF-8 bytes and
fields at their default value are left out.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, TypeVar

from .wire import WireError, encode_varint, read_varint

_UINT64 = 1 << 64
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH = 2
_WIRE_START_GROUP = 3
_WIRE_END_GROUP = 4
_WIRE_FIXED32 = 5

_KIND_WIRE_TYPES = {
    "int": _WIRE_VARINT,
    "bool": _WIRE_VARINT,
    "str": _WIRE_LENGTH,
    "repeated": _WIRE_LENGTH,
}

M = TypeVar("M", bound="Message")


class AppState(IntEnum):
    """Network state reported in an AppendEntries reply."""

    DISCONNECTED = 0
    APP_NORMAL = 1


class VoteState(IntEnum):
    """Why a vote was or was not granted."""

    KILLED = 0
    VOTED = 1
    EXPIRE = 2
    NORMAL = 3


def _int(number: int) -> Any:
    return field(default=0, metadata={"number": number, "kind": "int"})


def _bool(number: int) -> Any:
    return field(default=False, metadata={"number": number, "kind": "bool"})


def _str(number: int) -> Any:
    return field(default="", metadata={"number": number, "kind": "str"})


def _repeated(number: int, element_type: type) -> Any:
    return field(
        default_factory=list,
        metadata={"number": number, "kind": "repeated", "type": element_type},
    )


def _key(number: int, wire_type: int) -> bytes:
    return encode_varint((number << 3) | wire_type)


def _length_delimited(number: int, payload: bytes) -> bytes:
    return _key(number, _WIRE_LENGTH) + encode_varint(len(payload)) + payload


def _read_length_delimited(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = read_varint(data, offset)
    end = offset + length
    if end > len(data):
        raise WireError("truncated length-delimited field")
    return data[offset:end], end


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


def _encode_int32(value: int) -> bytes:
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"value out of int32 range: {value}")
    return encode_varint(value % _UINT64)


def _decode_int32(raw: int) -> int:
    value = raw & 0xFFFFFFFF
    return value - (1 << 32) if value > _INT32_MAX else value


class Message:
    """Base of all wire messages; subclasses are dataclasses with tagged fields."""

    def serialize(self) -> bytes:
        """Encode the message in the protocol-buffer wire format."""
        out = bytearray()
        for item in dataclasses.fields(self):
            number = item.metadata["number"]
            kind = item.metadata["kind"]
            value = getattr(self, item.name)
            if kind == "int":
                if value:
                    out += _key(number, _WIRE_VARINT) + _encode_int32(int(value))
            elif kind == "bool":
                if value:
                    out += _key(number, _WIRE_VARINT) + encode_varint(1)
            elif kind == "str":
                if value:
                    out += _length_delimited(number, value.encode("utf-8"))
            else:
                for element in value:
                    out += _length_delimited(number, element.serialize())
        return bytes(out)

    @classmethod
    def parse(cls: type[M], data: bytes) -> M:
        """Decode a message, skipping fields it does not know."""
        data = bytes(data)
        by_number = {item.metadata["number"]: item for item in dataclasses.fields(cls)}
        values: dict[str, Any] = {}
        offset = 0
        while offset < len(data):
            tag, offset = read_varint(data, offset)
            number, wire_type = tag >> 3, tag & 7
            if number == 0 or wire_type in (_WIRE_START_GROUP, _WIRE_END_GROUP):
                raise WireError(f"invalid tag {tag}")
            item = by_number.get(number)
            if item is None or _KIND_WIRE_TYPES[item.metadata["kind"]] != wire_type:
                offset = _skip_field(data, offset, wire_type)
                continue
            kind = item.metadata["kind"]
            if kind == "int":
                raw, offset = read_varint(data, offset)
                values[item.name] = _decode_int32(raw)
            elif kind == "bool":
                raw, offset = read_varint(data, offset)
                values[item.name] = raw != 0
            elif kind == "str":
                raw_bytes, offset = _read_length_delimited(data, offset)
                try:
                    values[item.name] = raw_bytes.decode("utf-8")
                except UnicodeDecodeError as error:
                    raise WireError(f"{item.name} is not valid UTF-8") from error
            else:
                raw_bytes, offset = _read_length_delimited(data, offset)
                element = item.metadata["type"].parse(raw_bytes)
                values.setdefault(item.name, []).append(element)
        return cls(**values)


@dataclass
class LogEntry(Message):
    """One entry of the replicated log."""

    command: str = _str(1)
    log_term: int = _int(2)
    log_index: int = _int(3)


@dataclass
class AppendEntriesArgs(Message):
    """Heartbeat or log replication request sent by the leader."""

    term: int = _int(1)
    leader_id: int = _int(2)
    prev_log_index: int = _int(3)
    prev_log_term: int = _int(4)
    entries: list[LogEntry] = _repeated(5, LogEntry)
    leader_commit: int = _int(6)


@dataclass
class AppendEntriesReply(Message):
    """A follower's answer to an AppendEntries request."""

    term: int = _int(1)
    success: bool = _bool(2)
    update_next_index: int = _int(3)
    app_state: int = _int(4)


@dataclass
class RequestVoteArgs(Message):
    """A candidate's request for a vote."""

    term: int = _int(1)
    candidate_id: int = _int(2)
    last_log_index: int = _int(3)
    last_log_term: int = _int(4)


@dataclass
class RequestVoteReply(Message):
    """A peer's answer to a vote request."""

    term: int = _int(1)
    vote_granted: bool = _bool(2)
    vote_state: int = _int(3)


@dataclass
class InstallSnapshotRequest(Message):
    """The leader's snapshot sent to a lagging follower."""

    leader_id: int = _int(1)
    term: int = _int(2)
    last_snapshot_include_index: int = _int(3)
    last_snapshot_include_term: int = _int(4)
    data: str = _str(5)


@dataclass
class InstallSnapshotResponse(Message):
    """A follower's answer to a snapshot installation."""

    term: int = _int(1)


@dataclass
class GetArgs(Message):
    """A clerk's read request."""

    key: str = _str(1)
    client_id: str = _str(2)
    request_id: int = _int(3)


@dataclass
class GetReply(Message):
    """The result of a read request."""

    err: str = _str(1)
    value: str = _str(2)


@dataclass
class PutAppendArgs(Message):
    """A clerk's write request; ``op`` is ``"Put"`` or ``"Append"``."""

    key: str = _str(1)
    value: str = _str(2)
    op: str = _str(3)
    client_id: str = _str(4)
    request_id: int = _int(5)


@dataclass
class PutAppendReply(Message):
    """The result of a write request."""

    err: str = _str(1)