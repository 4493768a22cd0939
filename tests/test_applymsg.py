from dataclasses import replace

from raftkv.applymsg import ApplyMsg


def test_defaults_mark_nothing_valid():
    msg = ApplyMsg()
    assert msg.command_valid is False
    assert msg.snapshot_valid is False
    assert (msg.command_index, msg.snapshot_term, msg.snapshot_index) == (-1, -1, -1)
    assert msg.command == ""
    assert msg.snapshot == ""


def test_command_message_fields():
    msg = ApplyMsg(command_valid=True, command="op", command_index=4)
    assert msg.command_valid is True
    assert msg.command == "op"
    assert msg.command_index == 4
    assert msg.snapshot_valid is False


def test_snapshot_message_fields():
    msg = ApplyMsg(snapshot_valid=True, snapshot="state", snapshot_term=2, snapshot_index=9)
    assert msg.snapshot == "state"
    assert (msg.snapshot_term, msg.snapshot_index) == (2, 9)
    assert msg.command_valid is False


def test_equality_and_replace():
    msg = ApplyMsg(command_valid=True, command="a", command_index=1)
    assert replace(msg, command_index=1) == msg
    assert replace(msg, command_index=2).command_index == 2
    assert msg.command_index == 1