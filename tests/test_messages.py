import pytest

from raftkv.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    AppState,
    GetArgs,
    GetReply,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    LogEntry,
    PutAppendArgs,
    PutAppendReply,
    RequestVoteArgs,
    RequestVoteReply,
    VoteState,
)
from raftkv.wire import WireError


def test_log_entry_wire_bytes():
    entry = LogEntry(command="set", log_term=2, log_index=7)
    assert entry.serialize() == b"\n\x03set\x10\x02\x18\x07"


def test_default_message_serializes_to_nothing():
    assert AppendEntriesArgs().serialize() == b""
    assert AppendEntriesArgs.parse(b"") == AppendEntriesArgs()


@pytest.mark.parametrize(
    "message",
    [
        AppendEntriesArgs(
            term=3,
            leader_id=1,
            prev_log_index=4,
            prev_log_term=2,
            entries=[LogEntry("a", 3, 5), LogEntry("b", 3, 6)],
            leader_commit=4,
        ),
        AppendEntriesReply(term=3, success=True, update_next_index=-100, app_state=AppState.APP_NORMAL),
        RequestVoteArgs(term=5, candidate_id=2, last_log_index=9, last_log_term=4),
        RequestVoteReply(term=5, vote_granted=True, vote_state=VoteState.NORMAL),
        InstallSnapshotRequest(1, 7, 20, 6, "snapshot data"),
        InstallSnapshotResponse(term=7),
        GetArgs(key="k", client_id="client-1", request_id=3),
        GetReply(err="OK", value="v"),
        PutAppendArgs(key="k", value="v", op="Append", client_id="c", request_id=12),
        PutAppendReply(err="ErrWrongLeader"),
    ],
)
def test_round_trip(message):
    assert type(message).parse(message.serialize()) == message


def test_negative_int_uses_ten_byte_varint():
    encoded = AppendEntriesReply(update_next_index=-100).serialize()
    assert len(encoded) == 11
    assert AppendEntriesReply.parse(encoded).update_next_index == -100


def test_enum_values_survive_round_trip():
    reply = RequestVoteReply.parse(RequestVoteReply(vote_state=VoteState.EXPIRE).serialize())
    assert reply.vote_state == VoteState.EXPIRE
    ae = AppendEntriesReply.parse(AppendEntriesReply(app_state=AppState.DISCONNECTED).serialize())
    assert ae.app_state == AppState.DISCONNECTED


def test_unknown_fields_are_skipped():
    data = GetArgs(key="k").serialize() + b"\x78\x05"
    assert GetArgs.parse(data) == GetArgs(key="k")


def test_wrong_wire_type_for_known_field_is_skipped():
    # field 1 (key) sent as a varint instead of bytes
    data = b"\x08\x01" + GetArgs(client_id="c").serialize()
    assert GetArgs.parse(data) == GetArgs(client_id="c")


def test_truncated_data_raises():
    data = PutAppendArgs(key="key", value="value").serialize()
    with pytest.raises(WireError):
        PutAppendArgs.parse(data[:-2])


def test_invalid_utf8_raises():
    with pytest.raises(WireError):
        GetReply.parse(b"\x0a\x01\xff")


def test_zero_tag_raises():
    with pytest.raises(WireError):
        GetReply.parse(b"\x00\x01")


def test_out_of_range_int_raises():
    with pytest.raises(ValueError):
        RequestVoteArgs(term=1 << 40).serialize()


def test_nested_entries_preserve_order():
    entries = [LogEntry(str(i), 1, i) for i in range(1, 6)]
    parsed = AppendEntriesArgs.parse(AppendEntriesArgs(entries=entries).serialize())
    assert [e.log_index for e in parsed.entries] == [1, 2, 3, 4, 5]
    assert parsed.entries == entries